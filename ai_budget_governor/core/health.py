"""
Budget health evaluation.

Maps spend against a plan cap onto a discrete health level.
"""

from decimal import Decimal
from enum import Enum
from typing import Mapping, Union

from ai_budget_governor.storage.models import SubscriptionTier

# Thresholds in percent of cap, highest first. Lower bounds are inclusive.
BLACK_THRESHOLD = Decimal("100")
RED_THRESHOLD = Decimal("80")
YELLOW_THRESHOLD = Decimal("50")


class HealthLevel(Enum):
    """Budget health, from nominal to exhausted."""
    GREEN = "green"    # nominal
    YELLOW = "yellow"  # elevated
    RED = "red"        # critical
    BLACK = "black"    # exhausted


def usage_percent(cost_used: Union[Decimal, float, int], cap: Union[Decimal, float, int]) -> Decimal:
    """Percentage of cap consumed.

    Raises:
        ValueError: If cost_used is negative or cap is not positive
    """
    cost = _to_decimal(cost_used)
    cap_value = _to_decimal(cap)
    if cost < 0:
        raise ValueError("cost_used cannot be negative")
    if cap_value <= 0:
        raise ValueError("cap must be > 0")
    return cost / cap_value * 100


def evaluate_health(
    tier: SubscriptionTier,
    cost_used: Union[Decimal, float, int],
    caps: Mapping[SubscriptionTier, Decimal],
) -> HealthLevel:
    """Evaluate budget health for a tier.

    Tiers without a cap entry are evaluated against the free cap.

    Args:
        tier: Subscription tier of the user
        cost_used: Spend in the current billing cycle
        caps: Budget cap per tier

    Returns:
        The first matching level, checked from black down to green
    """
    cap = caps.get(tier, caps[SubscriptionTier.FREE])
    pct = usage_percent(cost_used, cap)

    if pct >= BLACK_THRESHOLD:
        return HealthLevel.BLACK
    if pct >= RED_THRESHOLD:
        return HealthLevel.RED
    if pct >= YELLOW_THRESHOLD:
        return HealthLevel.YELLOW
    return HealthLevel.GREEN


def _to_decimal(value: Union[Decimal, float, int]) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as 0.1 rather than its binary expansion
    return Decimal(str(value))
