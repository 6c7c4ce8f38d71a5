"""
Pricing calculations and rate management.

Converts (model tier, input tokens, output tokens) into money.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Union

from .token_counter import TokenUsage

PROVIDER = "openai"

_PER_MILLION = Decimal("1000000")


class ModelTier(Enum):
    """Quality/cost tiers of the completion service."""
    PREMIUM = "premium"
    ECONOMY = "economy"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for the model behind a tier."""
    model: str
    input_cost_per_1m: Decimal  # Cost per 1M input tokens
    output_cost_per_1m: Decimal  # Cost per 1M output tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table keyed by model tier."""
    prices: Dict[ModelTier, ModelPricing]

    def get_pricing(self, tier: Union[ModelTier, str]) -> ModelPricing:
        """Get pricing for a tier.

        Args:
            tier: Model tier, or its string value

        Returns:
            ModelPricing for the tier

        Raises:
            ValueError: If the tier is not supported
        """
        try:
            key = tier if isinstance(tier, ModelTier) else ModelTier(tier)
        except ValueError:
            raise ValueError(f"Unsupported model tier: {tier}")
        if key not in self.prices:
            raise ValueError(f"Unsupported model tier: {tier}")
        return self.prices[key]


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    ModelTier.PREMIUM: ModelPricing(
        model="gpt-4o",
        input_cost_per_1m=Decimal("2.50"),
        output_cost_per_1m=Decimal("10.00")
    ),
    ModelTier.ECONOMY: ModelPricing(
        model="gpt-4o-mini",
        input_cost_per_1m=Decimal("0.15"),
        output_cost_per_1m=Decimal("0.60")
    ),
})


def model_for_tier(tier: ModelTier) -> str:
    """Model identifier billed under a tier."""
    return PRICING_TABLE.get_pricing(tier).model


def calculate_cost(
    tier: Union[ModelTier, str],
    input_tokens: int,
    output_tokens: int
) -> Decimal:
    """Calculate exact cost for one call.

    No rounding is applied, so cost is linear in each token count and a
    zero-token call costs exactly zero.

    Args:
        tier: Model tier the call was billed under
        input_tokens: Prompt tokens reported by the service
        output_tokens: Completion tokens reported by the service

    Returns:
        Cost in dollars as an exact Decimal

    Raises:
        ValueError: If the tier is unsupported or a count is negative
    """
    pricing = PRICING_TABLE.get_pricing(tier)
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("token counts cannot be negative")

    input_cost = Decimal(input_tokens) * pricing.input_cost_per_1m / _PER_MILLION
    output_cost = Decimal(output_tokens) * pricing.output_cost_per_1m / _PER_MILLION
    return input_cost + output_cost


def calculate_usage_cost(tier: Union[ModelTier, str], usage: TokenUsage) -> Decimal:
    """Calculate cost for a TokenUsage."""
    return calculate_cost(tier, usage.input_tokens, usage.output_tokens)
