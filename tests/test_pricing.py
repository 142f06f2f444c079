"""
Unit tests for pricing, token counting and cost estimation.

Tests cost accuracy, rounding behavior, and error handling.
"""

from decimal import Decimal

import pytest

from ai_spend_guard.core.errors import CostCalculationError
from ai_spend_guard.core.estimator import CostEstimator
from ai_spend_guard.core.messages import Message
from ai_spend_guard.core.pricing import (
    DEFAULT_PRICING,
    ModelPricing,
    PricingTable,
    cost_for_rates,
    quantize,
    to_decimal,
)
from ai_spend_guard.core.token_counter import TokenUsage, estimate_tokens, split_tokens


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(input_tokens=100, output_tokens=50)
        assert usage.total_tokens == 150

    def test_reported_total_wins(self):
        usage = TokenUsage(input_tokens=100, output_tokens=50, total=155)
        assert usage.total_tokens == 155


class TestTokenEstimation:
    def test_ceil_of_chars_over_four(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("a" * 400) == 100

    def test_empty_text(self):
        assert estimate_tokens("") == 0

    def test_split_forty_sixty(self):
        assert split_tokens(100) == (40, 60)
        assert split_tokens(0) == (0, 0)

    def test_split_preserves_total(self):
        for total in (1, 3, 7, 99, 1001):
            input_tokens, output_tokens = split_tokens(total)
            assert input_tokens + output_tokens == total

    def test_split_rejects_bad_input(self):
        with pytest.raises(ValueError):
            split_tokens(-1)
        with pytest.raises(ValueError):
            split_tokens(10, input_ratio=1.5)


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Verify pricing retrieval for supported models."""
        pricing = DEFAULT_PRICING.get_pricing("gpt-4")
        assert pricing.input_per_1k == Decimal("0.03")
        assert pricing.output_per_1k == Decimal("0.06")

    def test_unsupported_model_raises_error(self):
        """Verify error for unknown models."""
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            DEFAULT_PRICING.get_pricing("unknown-model")

    def test_dated_snapshot_uses_longest_prefix(self):
        assert DEFAULT_PRICING.get_pricing("gpt-4o-2024-08-06") == DEFAULT_PRICING.get_pricing("gpt-4o")
        assert DEFAULT_PRICING.get_pricing("gpt-4o-mini-2024-07-18") == DEFAULT_PRICING.get_pricing("gpt-4o-mini")

    def test_per_million_rates_are_converted(self):
        pricing = DEFAULT_PRICING.get_pricing("grok-beta")
        assert pricing.input_per_1k == Decimal("0.005")
        assert pricing.output_per_1k == Decimal("0.015")

    def test_ollama_models_are_free(self):
        pricing = DEFAULT_PRICING.get_pricing("llama3")
        assert pricing.input_per_1k == 0
        assert pricing.output_per_1k == 0

    def test_overrides_return_new_table(self):
        custom = ModelPricing(input_per_1k=Decimal("1"), output_per_1k=Decimal("2"))
        table = DEFAULT_PRICING.with_overrides({"gpt-4": custom, "in-house": custom})
        assert table.get_pricing("gpt-4") == custom
        assert table.get_pricing("in-house") == custom
        assert DEFAULT_PRICING.get_pricing("gpt-4") != custom
        assert DEFAULT_PRICING.find("in-house") is None

    def test_rates_must_be_valid(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            ModelPricing(input_per_1k=Decimal("-1"), output_per_1k=Decimal("0"))
        with pytest.raises(ValueError, match="finite Decimal"):
            ModelPricing(input_per_1k=Decimal("NaN"), output_per_1k=Decimal("0"))
        with pytest.raises(ValueError, match="finite Decimal"):
            ModelPricing(input_per_1k=0.01, output_per_1k=Decimal("0"))


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def setup_method(self):
        self.pricing = ModelPricing(input_per_1k=Decimal("0.01"), output_per_1k=Decimal("0.02"))

    def test_reported_tokens_cost(self):
        """100 input / 200 output at $0.01 / $0.02 per 1k costs $0.005."""
        breakdown = cost_for_rates(TokenUsage(input_tokens=100, output_tokens=200), self.pricing)
        assert breakdown.input_cost == Decimal("0.001000")
        assert breakdown.output_cost == Decimal("0.004000")
        assert breakdown.total_cost == Decimal("0.005")

    def test_parts_sum_to_total(self):
        pricing = ModelPricing(input_per_1k=Decimal("0.00015"), output_per_1k=Decimal("0.0006"))
        for input_tokens, output_tokens in [(1, 1), (3, 7), (1234, 987), (33333, 1)]:
            breakdown = cost_for_rates(TokenUsage(input_tokens, output_tokens), pricing)
            assert breakdown.input_cost + breakdown.output_cost == breakdown.total_cost

    def test_deterministic(self):
        usage = TokenUsage(input_tokens=777, output_tokens=333)
        assert cost_for_rates(usage, self.pricing) == cost_for_rates(usage, self.pricing)

    def test_rounds_half_up_to_precision(self):
        pricing = ModelPricing(input_per_1k=Decimal("0.0005"), output_per_1k=Decimal("0"))
        # 1 token * 0.0005 / 1000 = 0.0000005 -> 0.000001
        breakdown = cost_for_rates(TokenUsage(input_tokens=1, output_tokens=0), pricing)
        assert breakdown.input_cost == Decimal("0.000001")

    def test_custom_precision(self):
        breakdown = cost_for_rates(TokenUsage(input_tokens=100, output_tokens=200), self.pricing, precision=2)
        assert breakdown.total_cost == Decimal("0.00")

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            cost_for_rates(TokenUsage(input_tokens=-1, output_tokens=0), self.pricing)

    def test_quantize(self):
        assert quantize(Decimal("1.2345675"), 6) == Decimal("1.234568")

    def test_to_decimal_avoids_float_artifacts(self):
        assert to_decimal(0.1) == Decimal("0.1")
        with pytest.raises(ValueError):
            to_decimal("ten dollars")


class TestCostEstimator:
    def setup_method(self):
        table = PricingTable({
            "test-model": ModelPricing(input_per_1k=Decimal("0.01"), output_per_1k=Decimal("0.02")),
        })
        self.estimator = CostEstimator(pricing=table)

    def test_estimate_from_message_text(self):
        # 400 chars -> 100 tokens -> 40 in / 60 out
        estimate = self.estimator.estimate([Message.user("a" * 400)], "test-model")
        assert estimate.tokens == 100
        assert estimate.input_tokens == 40
        assert estimate.output_tokens == 60
        assert estimate.cost == Decimal("0.0004") + Decimal("0.0012")
        assert estimate.currency == "USD"

    def test_estimate_counts_every_message(self):
        messages = [Message.system("abcd"), Message.user("efgh")]
        # Joined with a newline: 9 chars -> 3 tokens
        assert self.estimator.estimate(messages, "test-model").tokens == 3

    def test_estimate_unknown_model_is_zero_cost(self):
        estimate = self.estimator.estimate([Message.user("hello there")], "mystery-model")
        assert estimate.cost == Decimal("0")
        assert estimate.tokens == 3

    def test_calculate_cost_uses_exact_counts(self):
        breakdown = self.estimator.calculate_cost(TokenUsage(100, 200), "test-model")
        assert breakdown.total_cost == Decimal("0.005")

    def test_calculate_cost_unknown_model(self):
        with pytest.raises(CostCalculationError, match="mystery-model"):
            self.estimator.calculate_cost(TokenUsage(1, 1), "mystery-model")

    def test_calculate_cost_negative_tokens(self):
        with pytest.raises(CostCalculationError):
            self.estimator.calculate_cost(TokenUsage(-5, 1), "test-model")

    def test_estimate_usage_for_unmetered_response(self):
        usage = self.estimator.estimate_usage([Message.user("a" * 8)], "b" * 12)
        assert usage == TokenUsage(input_tokens=2, output_tokens=3)

    def test_negative_precision_rejected(self):
        with pytest.raises(ValueError):
            CostEstimator(precision=-1)
