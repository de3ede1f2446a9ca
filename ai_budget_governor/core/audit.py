"""
Post-hoc cost accounting.

Computes what a completed request should be charged. Persisting the
charge is the governance service's job.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ai_budget_governor.config.loader import CostRates

from .pricing import calculate_image_cost, calculate_text_cost
from .routing import RequestClass
from .token_counter import TokenUsage


@dataclass(frozen=True)
class AuditCharge:
    """Charge for one completed request."""
    request_class: RequestClass
    amount: Decimal
    usage: TokenUsage
    image_increment: int = 0
    safety_blocked: bool = False


def compute_audit_charge(
    request_class: RequestClass,
    rates: CostRates,
    tokens_in: Optional[int] = None,
    tokens_out: Optional[int] = None,
    safety_blocked: bool = False,
) -> AuditCharge:
    """Compute the charge for a completed request.

    Safety-blocked responses are free for both request classes, so users
    are never billed for a model refusal.

    Args:
        request_class: Class of the completed request
        rates: Cost rates to apply
        tokens_in: Prompt tokens, reported or estimated (text only)
        tokens_out: Completion tokens, reported or estimated (text only)
        safety_blocked: Whether the backend refused on safety grounds

    Returns:
        AuditCharge with the amount to add to the user's spend

    Raises:
        ValueError: If a token count is negative
    """
    usage = TokenUsage.from_counts(tokens_in, tokens_out)

    if safety_blocked:
        return AuditCharge(
            request_class=request_class,
            amount=Decimal("0"),
            usage=usage,
            safety_blocked=True,
        )

    if request_class == RequestClass.IMAGE:
        return AuditCharge(
            request_class=request_class,
            amount=calculate_image_cost(rates),
            usage=usage,
            image_increment=1,
        )

    return AuditCharge(
        request_class=request_class,
        amount=calculate_text_cost(usage, rates),
        usage=usage,
    )
