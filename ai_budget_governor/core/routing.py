"""
Routing decisions under a budget.

Combines budget health with the requested capability to pick a model and
quality level, or to deny the request.

Decision Order:
1. Exhausted budget (black) - deny every request class
2. Critical budget (red) - deny image requests, cheapest text model
3. Elevated budget (yellow) - full text model, reduced image quality
4. Nominal budget (green) - full quality for both classes
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ai_budget_governor.config.loader import RoutingConfig

from .errors import DENIAL_ERRORS, DenialReason
from .health import HealthLevel


class RequestClass(Enum):
    """Billable capability categories."""
    TEXT = "text"
    IMAGE = "image"


@dataclass(frozen=True)
class RoutingDecision:
    """Admission decision for a single request."""
    model: Optional[str]
    can_proceed: bool
    health: HealthLevel
    image_resolution: Optional[str] = None
    is_cached: bool = False  # servable from a cached fallback instead of the backend
    denial: Optional[DenialReason] = None

    def raise_for_denial(self) -> None:
        """Raise the matching GovernanceDenial if the request was not admitted."""
        if self.denial is not None:
            error = DENIAL_ERRORS[self.denial]()
            error.decision = self
            raise error


def profile_unavailable() -> RoutingDecision:
    """Fail-safe decision when no accounting data can be read."""
    return RoutingDecision(
        model=None,
        can_proceed=False,
        health=HealthLevel.BLACK,
        denial=DenialReason.PROFILE_NOT_FOUND,
    )


def rate_limited(health: HealthLevel) -> RoutingDecision:
    """Decision for a request that arrived inside the rate-limit window."""
    return RoutingDecision(
        model=None,
        can_proceed=False,
        health=health,
        denial=DenialReason.RATE_LIMITED,
    )


def decide(health: HealthLevel, request_class: RequestClass, routing: RoutingConfig) -> RoutingDecision:
    """Select a model and quality for a request at the given budget health.

    Args:
        health: Current budget health of the user
        request_class: Capability being requested
        routing: Model selection matrix

    Returns:
        RoutingDecision, admitted or denied
    """
    if health == HealthLevel.BLACK:
        return RoutingDecision(
            model=None,
            can_proceed=False,
            health=health,
            is_cached=request_class == RequestClass.IMAGE and routing.cached_image_fallback,
            denial=DenialReason.BUDGET_EXCEEDED,
        )

    route = {
        HealthLevel.GREEN: routing.green,
        HealthLevel.YELLOW: routing.yellow,
        HealthLevel.RED: routing.red,
    }[health]

    if request_class == RequestClass.TEXT:
        return RoutingDecision(model=route.text_model, can_proceed=True, health=health)

    if health == HealthLevel.RED:
        return RoutingDecision(
            model=None,
            can_proceed=False,
            health=health,
            denial=DenialReason.TIER_RESTRICTED,
        )

    return RoutingDecision(
        model=route.image_model,
        can_proceed=True,
        health=health,
        image_resolution=route.image_resolution,
    )
