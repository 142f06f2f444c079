"""
Cost estimation.

Pre-flight estimates from message content, and exact costs from
provider-reported token counts.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

import structlog

from .errors import CostCalculationError
from .messages import Message, messages_text
from .pricing import (
    DEFAULT_CURRENCY,
    DEFAULT_PRECISION,
    DEFAULT_PRICING,
    CostBreakdown,
    PricingTable,
    cost_for_rates,
)
from .token_counter import DEFAULT_INPUT_RATIO, TokenUsage, estimate_tokens, split_tokens

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CostEstimate:
    """Projected token usage and cost of a request."""
    tokens: int
    input_tokens: int
    output_tokens: int
    cost: Decimal
    currency: str = DEFAULT_CURRENCY


class CostEstimator:
    """Estimates and calculates request costs from a pricing table."""

    def __init__(
        self,
        pricing: Optional[PricingTable] = None,
        precision: int = DEFAULT_PRECISION,
        currency: str = DEFAULT_CURRENCY,
        input_ratio: float = DEFAULT_INPUT_RATIO,
    ):
        if precision < 0:
            raise ValueError("precision cannot be negative")
        self.pricing = pricing or DEFAULT_PRICING
        self.precision = precision
        self.currency = currency
        self.input_ratio = input_ratio

    def estimate(self, messages: Iterable[Message], model: str) -> CostEstimate:
        """Best-effort pre-flight estimate. Never raises.

        Token count is derived from content length; unknown models and
        malformed pricing yield a zero cost.
        """
        tokens = estimate_tokens(messages_text(messages))
        input_tokens, output_tokens = split_tokens(tokens, self.input_ratio)
        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)

        try:
            breakdown = self.calculate_cost(usage, model)
        except CostCalculationError as e:
            logger.debug("cost_estimate_unpriced", model=model, reason=str(e))
            return CostEstimate(tokens, input_tokens, output_tokens, Decimal("0"), self.currency)

        return CostEstimate(tokens, input_tokens, output_tokens, breakdown.total_cost, breakdown.currency)

    def estimate_usage(self, messages: Iterable[Message], completion: str) -> TokenUsage:
        """Estimate usage for a completed request the provider did not meter."""
        return TokenUsage(
            input_tokens=estimate_tokens(messages_text(messages)),
            output_tokens=estimate_tokens(completion),
        )

    def calculate_cost(self, usage: TokenUsage, model: str) -> CostBreakdown:
        """Price exact token counts for a model.

        Raises:
            CostCalculationError: Unknown model, bad token counts or bad rates
        """
        try:
            pricing = self.pricing.get_pricing(model)
            return cost_for_rates(usage, pricing, self.precision)
        except (ValueError, ArithmeticError) as e:
            raise CostCalculationError(f"Cannot price {model}: {e}") from e
