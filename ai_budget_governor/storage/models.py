"""
Data models for storage layer.

Defines the per-user cost profile and the helpers used to load it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_UP, Decimal
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

# Costs are persisted as integer nano-units so increments stay exact
COST_QUANTUM = Decimal("0.000000001")
NANOS_PER_UNIT = 1_000_000_000


class SubscriptionTier(Enum):
    """Subscription plans. Each maps to exactly one budget cap."""
    FREE = "free"
    PRO_MONTHLY = "pro_monthly"
    PRO_YEARLY = "pro_yearly"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionTier":
        """Parse a stored tier, falling back to FREE for unknown values."""
        try:
            return cls(value)
        except ValueError:
            logger.warning("Unknown subscription tier %r, treating as free", value)
            return cls.FREE


@dataclass(frozen=True)
class CostProfile:
    """Spend record for a single user in the current billing cycle.

    Defaults are applied once when the row is loaded, so consumers never
    need to guess at missing values.
    """
    user_id: str
    subscription_tier: SubscriptionTier
    cost_used: Decimal
    billing_cycle_start: datetime
    last_request_at: Optional[datetime] = None
    image_gens_count: int = 0

    def __post_init__(self):
        """Validate accumulators are non-negative."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if self.cost_used < 0:
            raise ValueError("cost_used cannot be negative")
        if self.image_gens_count < 0:
            raise ValueError("image_gens_count cannot be negative")


def nanos_to_cost(nanos: int) -> Decimal:
    """Convert stored nano-units to a currency amount."""
    return (Decimal(nanos) * COST_QUANTUM).normalize()


def cost_to_nanos(cost: Decimal) -> int:
    """Convert a currency amount to nano-units, rounding any excess up."""
    return int(Decimal(cost).quantize(COST_QUANTUM, rounding=ROUND_UP).scaleb(9))


def format_timestamp(value: datetime) -> str:
    """Serialize a timestamp in a fixed-width UTC form that sorts lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp, returning None when it is missing or unreadable."""
    if raw is None:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        logger.warning("Unreadable timestamp %r, treating as absent", raw)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value
