"""
Pricing calculations for provider calls.

Used by call sites whose provider response carries token counts but no
cost. The accounting core treats cost as an opaque input.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Optional

from .token_counter import TokenUsage

MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model, in USD per million tokens."""
    input_per_million: Decimal
    output_per_million: Decimal
    cache_write_per_million: Optional[Decimal] = None
    cache_read_per_million: Optional[Decimal] = None


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def supports(self, model: str) -> bool:
        return model in self.prices


PRICING_TABLE = PricingTable({
    "gpt-4o": ModelPricing(
        input_per_million=Decimal("2.50"),
        output_per_million=Decimal("10.00"),
        cache_read_per_million=Decimal("1.25"),
    ),
    "gpt-4o-mini": ModelPricing(
        input_per_million=Decimal("0.15"),
        output_per_million=Decimal("0.60"),
        cache_read_per_million=Decimal("0.075"),
    ),
    "o1-mini": ModelPricing(
        input_per_million=Decimal("1.10"),
        output_per_million=Decimal("4.40"),
        cache_read_per_million=Decimal("0.55"),
    ),
    "claude-3-5-sonnet": ModelPricing(
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00"),
        cache_write_per_million=Decimal("3.75"),
        cache_read_per_million=Decimal("0.30"),
    ),
    "claude-sonnet-4": ModelPricing(
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00"),
        cache_write_per_million=Decimal("3.75"),
        cache_read_per_million=Decimal("0.30"),
    ),
})


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> float:
    """Calculate cost for one provider call with conservative rounding.

    Cache reads are billed at the cache-read rate instead of the input
    rate when the model has one; cache writes are billed on top of input.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to use

    Returns:
        Total cost rounded UP to 6 decimal places

    Raises:
        ValueError: If model is not supported
    """
    pricing = table.get_pricing(model)

    cache_reads = usage.cache_reads or 0
    cache_writes = usage.cache_writes or 0

    billable_input = usage.input_tokens
    cost = Decimal("0")
    if pricing.cache_read_per_million is not None and cache_reads:
        # Cached prompt tokens are part of input_tokens
        billable_input = max(0, usage.input_tokens - cache_reads)
        cost += Decimal(cache_reads) / MILLION * pricing.cache_read_per_million

    cost += Decimal(billable_input) / MILLION * pricing.input_per_million
    cost += Decimal(usage.output_tokens) / MILLION * pricing.output_per_million

    if pricing.cache_write_per_million is not None and cache_writes:
        cost += Decimal(cache_writes) / MILLION * pricing.cache_write_per_million

    return float(cost.quantize(Decimal("0.000001"), rounding=ROUND_UP))
