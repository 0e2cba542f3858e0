"""
Unit tests for pricing calculations.

Tests cost accuracy, tier selection, rounding behavior, and error handling.
"""

from decimal import Decimal

import pytest

from story_context.core.pricing import (
    PRICING_TABLE,
    ModelPricing,
    PricingTier,
    calculate_cache_creation_cost,
    calculate_turn_cost,
    storage_cost_per_second,
)
from story_context.storage.models import UsageRecord


class TestUsageRecord:
    """Test UsageRecord fresh-token handling."""

    def test_fresh_excludes_cached(self):
        """Test fresh tokens exclude cached ones."""
        usage = UsageRecord(prompt=1000, cached=400, candidates=200)
        assert usage.fresh == 600

    def test_fresh_when_cached_exceeds_prompt(self):
        """Prompt is taken as already exclusive of cached tokens."""
        usage = UsageRecord(prompt=100, cached=400)
        assert usage.fresh == 100

    def test_negative_counts_rejected(self):
        """Test negative token counts are rejected."""
        with pytest.raises(ValueError, match="cannot be negative"):
            UsageRecord(prompt=-1)


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Test a known model's base rates."""
        pricing = PRICING_TABLE.get_pricing("gemini-3-flash-preview")
        assert pricing.base.input_rate == Decimal("0.50")
        assert pricing.base.output_rate == Decimal("3.00")

    def test_unsupported_model_raises_error(self):
        """Test an unknown model raises."""
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            PRICING_TABLE.get_pricing("unknown-model")

    def test_overrides_extend_table(self):
        """Test overrides return a new table and leave the default alone."""
        custom = ModelPricing(model_id="local", base=PricingTier(Decimal("1"), Decimal("2")))
        table = PRICING_TABLE.with_overrides({"local": custom})
        assert table.get_pricing("local") is custom
        assert "local" not in PRICING_TABLE.prices

    def test_negative_rate_rejected(self):
        """Test negative rates are rejected."""
        with pytest.raises(ValueError, match="input_rate cannot be negative"):
            PricingTier(Decimal("-1"), Decimal("1"))


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_turn_cost_example(self):
        """Fresh, output and cached tokens are each billed at their own rate."""
        usage = UsageRecord(prompt=1000, cached=400, candidates=200)
        cost = calculate_turn_cost(usage, PRICING_TABLE.get_pricing("gemini-3-flash-preview"))
        # 600/1e6*0.5 + 200/1e6*3.0 + 400/1e6*0.05
        assert cost == pytest.approx(0.00092)

    def test_zero_usage_costs_nothing(self):
        """Test empty usage costs nothing."""
        assert calculate_turn_cost(UsageRecord(), PRICING_TABLE.get_pricing("gpt-4o")) == 0.0

    def test_long_context_tier_above_threshold(self):
        """Test the long-context tier starts above the threshold."""
        pricing = PRICING_TABLE.get_pricing("gemini-3-pro-preview")
        at_threshold = UsageRecord(prompt=200_000)
        above = UsageRecord(prompt=200_001)
        assert calculate_turn_cost(at_threshold, pricing) == pytest.approx(0.4)
        assert calculate_turn_cost(above, pricing) == pytest.approx(200_001 / 1e6 * 4.0)

    def test_rounds_up_to_quantum(self):
        """Test costs round up to the smallest unit."""
        pricing = ModelPricing(model_id="tiny", base=PricingTier(Decimal("0.001"), Decimal("0")))
        # 1 token at $0.001/1M is 1e-9, rounded up to 1e-8
        assert calculate_turn_cost(UsageRecord(prompt=1), pricing) == pytest.approx(1e-8)

    def test_cache_creation_billed_as_input(self):
        """Test cache creation is billed at the input rate."""
        pricing = PRICING_TABLE.get_pricing("gemini-2.5-flash")
        assert calculate_cache_creation_cost(100_000, pricing) == pytest.approx(0.03)
        assert calculate_cache_creation_cost(0, pricing) == 0.0

    def test_storage_cost_per_second(self):
        """Test the per-second storage rate."""
        pricing = PRICING_TABLE.get_pricing("gemini-2.5-flash")
        # $1 per 1M tokens per hour
        assert storage_cost_per_second(1_000_000, pricing) == pytest.approx(1 / 3600)
        assert storage_cost_per_second(0, pricing) == 0.0
