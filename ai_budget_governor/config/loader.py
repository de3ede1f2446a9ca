"""
Configuration management and loading.

Handles governance policy: plan caps, cost rates, rate limiting and the
model selection matrix.
"""

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_budget_governor.storage.models import SubscriptionTier

DEFAULT_RATE_LIMIT_WINDOW_MS = 5000
DEFAULT_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class CostRates:
    """Estimated backend cost per request class."""
    text_input_per_1k: Decimal
    text_output_per_1k: Decimal
    image: Decimal

    def __post_init__(self):
        """Validate cost rates are positive."""
        if self.text_input_per_1k <= 0:
            raise ValueError("text_input_per_1k must be > 0")
        if self.text_output_per_1k <= 0:
            raise ValueError("text_output_per_1k must be > 0")
        if self.image <= 0:
            raise ValueError("image cost must be > 0")


@dataclass(frozen=True)
class HealthRoute:
    """Models and image quality used at one health level."""
    text_model: str
    image_model: Optional[str] = None
    image_resolution: Optional[str] = None


@dataclass(frozen=True)
class RoutingConfig:
    """Model selection matrix over green/yellow/red health levels."""
    green: HealthRoute
    yellow: HealthRoute
    red: HealthRoute
    cached_image_fallback: bool = True

    def __post_init__(self):
        """Validate the matrix is total for admitted request classes."""
        for level in ("green", "yellow"):
            route = getattr(self, level)
            if not route.image_model or not route.image_resolution:
                raise ValueError(f"routing.{level} requires image and image_resolution")


@dataclass(frozen=True)
class GovernanceConfig:
    """Complete governance policy."""
    plan_caps: Dict[SubscriptionTier, Decimal]
    costs: CostRates
    routing: RoutingConfig
    rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN

    def __post_init__(self):
        """Validate every tier has a positive cap."""
        missing = set(SubscriptionTier) - set(self.plan_caps)
        if missing:
            raise ValueError(f"Missing plan caps for: {sorted(t.value for t in missing)}")
        for tier, cap in self.plan_caps.items():
            if cap <= 0:
                raise ValueError(f"plan cap for {tier.value} must be > 0")
        if self.rate_limit_window_ms < 0:
            raise ValueError("rate_limit window_ms cannot be negative")
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")

    def cap_for(self, tier: SubscriptionTier) -> Decimal:
        """Get the budget cap for a tier, using the free cap if not specified."""
        return self.plan_caps.get(tier, self.plan_caps[SubscriptionTier.FREE])


def default_governance_config() -> GovernanceConfig:
    """Built-in policy used when no configuration file is supplied."""
    return GovernanceConfig(
        plan_caps={
            SubscriptionTier.FREE: Decimal("0.02"),
            SubscriptionTier.PRO_MONTHLY: Decimal("3.00"),
            SubscriptionTier.PRO_YEARLY: Decimal("30.00"),
        },
        costs=CostRates(
            text_input_per_1k=Decimal("0.0001"),
            text_output_per_1k=Decimal("0.0003"),
            image=Decimal("0.004"),
        ),
        routing=RoutingConfig(
            green=HealthRoute("gpt-4o", "dall-e-3", "1024x1024"),
            yellow=HealthRoute("gpt-4o", "dall-e-2", "512x512"),
            red=HealthRoute("gpt-4o-mini"),
        ),
    )


def load_governance_config(path: str) -> GovernanceConfig:
    """Load and validate governance configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to budget caps being skipped or requests being misrouted.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GovernanceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Governance config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'plans', 'costs', 'routing', 'rate_limit', 'tokens'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    for section in ('plans', 'costs', 'routing'):
        if section not in raw_config:
            raise ValueError(f"Missing required '{section}' section")

    plans_data = _section(raw_config, 'plans')
    allowed_tiers = {tier.value for tier in SubscriptionTier}
    unknown_tiers = set(plans_data.keys()) - allowed_tiers
    if unknown_tiers:
        raise ValueError(f"Unknown plan tiers: {unknown_tiers}")
    plan_caps = {}
    for tier in SubscriptionTier:
        if tier.value not in plans_data:
            raise ValueError(f"Missing required plan cap '{tier.value}'")
        plan_caps[tier] = _positive_decimal(plans_data[tier.value], f"plans.{tier.value}")

    costs_data = _section(raw_config, 'costs')
    _check_keys(costs_data, {'text_input_per_1k', 'text_output_per_1k', 'image'}, "costs")
    costs = CostRates(
        text_input_per_1k=_positive_decimal(costs_data['text_input_per_1k'], "costs.text_input_per_1k"),
        text_output_per_1k=_positive_decimal(costs_data['text_output_per_1k'], "costs.text_output_per_1k"),
        image=_positive_decimal(costs_data['image'], "costs.image"),
    )

    routing = _parse_routing(_section(raw_config, 'routing'))

    window_ms = DEFAULT_RATE_LIMIT_WINDOW_MS
    if 'rate_limit' in raw_config:
        rate_data = _section(raw_config, 'rate_limit')
        _check_keys(rate_data, {'window_ms'}, "rate_limit", required=set())
        if 'window_ms' in rate_data:
            window_ms = _non_negative_int(rate_data['window_ms'], "rate_limit.window_ms")

    chars_per_token = DEFAULT_CHARS_PER_TOKEN
    if 'tokens' in raw_config:
        tokens_data = _section(raw_config, 'tokens')
        _check_keys(tokens_data, {'chars_per_token'}, "tokens", required=set())
        if 'chars_per_token' in tokens_data:
            chars_per_token = _non_negative_int(tokens_data['chars_per_token'], "tokens.chars_per_token")

    return GovernanceConfig(
        plan_caps=plan_caps,
        costs=costs,
        routing=routing,
        rate_limit_window_ms=window_ms,
        chars_per_token=chars_per_token,
    )


def _parse_routing(data: Dict[str, Any]) -> RoutingConfig:
    """Parse and validate the model selection matrix.

    Args:
        data: Routing configuration data

    Returns:
        Validated RoutingConfig

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(
        data,
        {'green', 'yellow', 'red', 'cached_image_fallback'},
        "routing",
        required={'green', 'yellow', 'red'},
    )

    routes = {}
    for level in ('green', 'yellow', 'red'):
        level_data = data[level]
        path = f"routing.{level}"
        if not isinstance(level_data, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        # Red denies image requests, so it only needs a text model
        required = {'text'} if level == 'red' else {'text', 'image', 'image_resolution'}
        _check_keys(level_data, {'text', 'image', 'image_resolution'}, path, required=required)
        routes[level] = HealthRoute(
            text_model=_non_empty_str(level_data['text'], f"{path}.text"),
            image_model=(
                _non_empty_str(level_data['image'], f"{path}.image")
                if 'image' in level_data else None
            ),
            image_resolution=(
                _non_empty_str(level_data['image_resolution'], f"{path}.image_resolution")
                if 'image_resolution' in level_data else None
            ),
        )

    fallback = data.get('cached_image_fallback', True)
    if not isinstance(fallback, bool):
        raise ValueError("'routing.cached_image_fallback' must be a boolean")

    return RoutingConfig(
        green=routes['green'],
        yellow=routes['yellow'],
        red=routes['red'],
        cached_image_fallback=fallback,
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict[str, Any], allowed: set, path: str, required: Optional[set] = None) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    for key in sorted(allowed if required is None else required):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")


def _positive_decimal(value: Any, path: str) -> Decimal:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return Decimal(str(value))


def _non_negative_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"'{path}' must be a non-negative integer")
    return value


def _non_empty_str(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value
