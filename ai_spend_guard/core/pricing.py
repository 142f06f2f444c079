"""
Pricing calculations and rate management.

Handles per-model rates and the cost arithmetic for token usage.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Mapping, Optional, Union

from .token_counter import TokenUsage

DEFAULT_CURRENCY = "USD"
DEFAULT_PRECISION = 6

_THOUSAND = Decimal("1000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_per_1k: Decimal  # Cost per 1K input tokens
    output_per_1k: Decimal  # Cost per 1K output tokens
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self):
        """Validate rates are usable."""
        for name in ("input_per_1k", "output_per_1k"):
            value = getattr(self, name)
            if not isinstance(value, Decimal) or not value.is_finite():
                raise ValueError(f"{name} must be a finite Decimal")
            if value < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class CostBreakdown:
    """Result of pricing a token usage."""
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    currency: str = DEFAULT_CURRENCY


class PricingTable:
    """Model identifier to pricing lookup.

    Lookups try an exact match first and then the longest known prefix,
    so dated snapshots like ``gpt-4o-2024-08-06`` resolve to ``gpt-4o``.
    """

    def __init__(self, prices: Mapping[str, ModelPricing]):
        self._prices: Dict[str, ModelPricing] = dict(prices)

    @property
    def models(self):
        return sorted(self._prices)

    def find(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a model, or None when it is unknown."""
        if model in self._prices:
            return self._prices[model]
        candidates = [name for name in self._prices if model.startswith(name)]
        if not candidates:
            return None
        return self._prices[max(candidates, key=len)]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        pricing = self.find(model)
        if pricing is None:
            raise ValueError(f"Unsupported model: {model}")
        return pricing

    def with_overrides(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a new table with entries added or replaced."""
        merged = dict(self._prices)
        merged.update(overrides)
        return PricingTable(merged)


def to_decimal(value: Union[Decimal, float, int, str]) -> Decimal:
    """Convert a monetary value to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid monetary amount: {value!r}")


def _rate(value: str) -> Decimal:
    return Decimal(value)


def _per_million(input_rate: str, output_rate: str) -> ModelPricing:
    """Build pricing from per-1M rates as published by most providers."""
    return ModelPricing(
        input_per_1k=Decimal(input_rate) / _THOUSAND,
        output_per_1k=Decimal(output_rate) / _THOUSAND,
    )


_FREE = ModelPricing(input_per_1k=Decimal("0"), output_per_1k=Decimal("0"))

DEFAULT_PRICING = PricingTable({
    # OpenAI
    "gpt-4": ModelPricing(_rate("0.03"), _rate("0.06")),
    "gpt-4-turbo": ModelPricing(_rate("0.01"), _rate("0.03")),
    "gpt-4o": ModelPricing(_rate("0.005"), _rate("0.015")),
    "gpt-4o-mini": ModelPricing(_rate("0.00015"), _rate("0.0006")),
    "gpt-3.5-turbo": ModelPricing(_rate("0.0015"), _rate("0.002")),
    "gpt-3.5-turbo-16k": ModelPricing(_rate("0.003"), _rate("0.004")),
    "o1-preview": ModelPricing(_rate("0.015"), _rate("0.06")),
    "o1-mini": ModelPricing(_rate("0.003"), _rate("0.012")),
    # xAI
    "grok-beta": _per_million("5.00", "15.00"),
    "grok-2": _per_million("2.00", "10.00"),
    "grok-2-vision": _per_million("2.00", "10.00"),
    "grok-4": _per_million("3.00", "15.00"),
    # Gemini
    "gemini-2.5-pro": _per_million("1.25", "10.00"),
    "gemini-2.5-flash": _per_million("0.30", "2.50"),
    "gemini-2.5-flash-lite": _per_million("0.10", "0.40"),
    "gemini-2.0-flash": _per_million("0.075", "0.30"),
    "gemini-1.5-pro": _per_million("1.25", "5.00"),
    "gemini-1.5-flash": _per_million("0.075", "0.30"),
    "gemini-pro": ModelPricing(_rate("0.0005"), _rate("0.0015")),
    # Ollama (local - no cost)
    "llama2": _FREE,
    "llama3": _FREE,
    "mistral": _FREE,
    "mixtral": _FREE,
    "codellama": _FREE,
})


def quantize(amount: Decimal, precision: int = DEFAULT_PRECISION) -> Decimal:
    """Round an amount to the configured currency precision."""
    return amount.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)


def cost_for_rates(
    usage: TokenUsage,
    pricing: ModelPricing,
    precision: int = DEFAULT_PRECISION,
) -> CostBreakdown:
    """Price a token usage against a set of rates.

    Input and output costs are rounded individually and summed, so
    ``input_cost + output_cost == total_cost`` holds exactly.

    Args:
        usage: Token usage data
        pricing: Rates to apply
        precision: Decimal places to round to

    Returns:
        CostBreakdown with rounded input, output and total costs

    Raises:
        ValueError: If token counts are negative
    """
    if usage.input_tokens < 0 or usage.output_tokens < 0:
        raise ValueError("token counts cannot be negative")

    # Calculate input cost: (tokens / 1000) * cost_per_1k
    input_cost = quantize((Decimal(usage.input_tokens) / _THOUSAND) * pricing.input_per_1k, precision)

    # Calculate output cost: (tokens / 1000) * cost_per_1k
    output_cost = quantize((Decimal(usage.output_tokens) / _THOUSAND) * pricing.output_per_1k, precision)

    return CostBreakdown(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
        currency=pricing.currency,
    )
