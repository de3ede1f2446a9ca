"""
Pricing calculations for metered backend usage.

Handles cost computations for text and image request classes.
"""

from decimal import Decimal, ROUND_UP

from ai_budget_governor.config.loader import CostRates
from ai_budget_governor.storage.models import COST_QUANTUM

from .token_counter import TokenUsage


def calculate_text_cost(usage: TokenUsage, rates: CostRates) -> Decimal:
    """Calculate the cost of a text request with conservative rounding.

    Args:
        usage: Token usage data
        rates: Cost rates per 1K tokens

    Returns:
        Total cost rounded UP to the storage quantum
    """
    # Calculate prompt cost: (tokens / 1000) * cost_per_1k
    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * rates.text_input_per_1k

    # Calculate completion cost: (tokens / 1000) * cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * rates.text_output_per_1k

    total_cost = prompt_cost + completion_cost
    return total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP)


def calculate_image_cost(rates: CostRates) -> Decimal:
    """Flat cost of one image generation, regardless of resolution."""
    return rates.image.quantize(COST_QUANTUM, rounding=ROUND_UP)
