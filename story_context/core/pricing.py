"""
Pricing calculations and rate management.

Rates are per 1M tokens; cache storage is per 1M tokens per hour. Some
models switch to a long-context tier once the prompt exceeds a threshold.
"""

from dataclasses import dataclass, field
from decimal import ROUND_UP, Decimal
from typing import Dict, Iterable, Optional

from story_context.storage.models import UsageRecord

MILLION = Decimal("1000000")
SECONDS_PER_HOUR = Decimal("3600")
COST_QUANTUM = Decimal("0.00000001")

DEFAULT_LONG_CONTEXT_THRESHOLD = 200_000


@dataclass(frozen=True)
class PricingTier:
    """Per-1M-token rates for one pricing tier."""
    input_rate: Decimal
    output_rate: Decimal
    cached_rate: Decimal = Decimal("0")
    storage_rate: Decimal = Decimal("0")

    def __post_init__(self):
        """Validate rates are not negative."""
        for name in ("input_rate", "output_rate", "cached_rate", "storage_rate"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class ModelPricing:
    """Pricing for a model, optionally tiered by prompt size."""
    model_id: str
    base: PricingTier
    long_context: Optional[PricingTier] = None
    long_context_threshold: int = DEFAULT_LONG_CONTEXT_THRESHOLD
    name: str = ""

    def get_tier(self, prompt_tokens: int = 0) -> PricingTier:
        """Select the tier for a prompt of ``prompt_tokens`` tokens.

        The long-context tier applies strictly above the threshold.
        """
        if self.long_context is not None and prompt_tokens > self.long_context_threshold:
            return self.long_context
        return self.base


@dataclass(frozen=True)
class PricingTable:
    """Pricing for the models the engine knows about."""
    prices: Dict[str, ModelPricing] = field(default_factory=dict)

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

    def models(self) -> Iterable[str]:
        return sorted(self.prices)

    def with_overrides(self, overrides: Dict[str, ModelPricing]) -> "PricingTable":
        """Return a new table where ``overrides`` replace or extend entries."""
        merged = dict(self.prices)
        merged.update(overrides)
        return PricingTable(merged)


def _tier(input_rate: str, output_rate: str, cached_rate: str, storage_rate: str) -> PricingTier:
    return PricingTier(
        input_rate=Decimal(input_rate),
        output_rate=Decimal(output_rate),
        cached_rate=Decimal(cached_rate),
        storage_rate=Decimal(storage_rate),
    )


PRICING_TABLE = PricingTable({
    "gemini-3-pro-preview": ModelPricing(
        model_id="gemini-3-pro-preview",
        name="Gemini 3 Pro Preview",
        base=_tier("2.00", "12.00", "0.20", "4.50"),
        long_context=_tier("4.00", "18.00", "0.40", "4.50"),
    ),
    "gemini-3-flash-preview": ModelPricing(
        model_id="gemini-3-flash-preview",
        name="Gemini 3 Flash Preview",
        base=_tier("0.50", "3.00", "0.05", "1.00"),
    ),
    "gemini-2.5-flash": ModelPricing(
        model_id="gemini-2.5-flash",
        name="Gemini 2.5 Flash",
        base=_tier("0.30", "2.50", "0.03", "1.00"),
    ),
    "gemini-2.0-flash": ModelPricing(
        model_id="gemini-2.0-flash",
        name="Gemini 2.0 Flash",
        base=_tier("0.10", "0.40", "0.025", "1.00"),
    ),
    "gpt-4o": ModelPricing(
        model_id="gpt-4o",
        name="GPT-4o",
        base=_tier("2.50", "10.00", "1.25", "0"),
    ),
    "gpt-4o-mini": ModelPricing(
        model_id="gpt-4o-mini",
        name="GPT-4o mini",
        base=_tier("0.15", "0.60", "0.075", "0"),
    ),
})


def calculate_turn_cost(usage: UsageRecord, pricing: ModelPricing) -> float:
    """Calculate the transaction cost of one generation call.

    cost = fresh/1M * input + candidates/1M * output + cached/1M * cached_rate,
    with the tier chosen by the full prompt size.

    Args:
        usage: Token counts for the call
        pricing: Pricing of the model that served it

    Returns:
        Cost in USD, rounded up to 1e-8
    """
    tier = pricing.get_tier(usage.prompt)

    fresh_cost = Decimal(usage.fresh) / MILLION * tier.input_rate
    output_cost = Decimal(usage.candidates) / MILLION * tier.output_rate
    cached_cost = Decimal(usage.cached) / MILLION * tier.cached_rate

    total_cost = fresh_cost + output_cost + cached_cost
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def calculate_cache_creation_cost(tokens: int, pricing: ModelPricing) -> float:
    """Cost of creating or refreshing a cache, billed as standard input tokens."""
    if tokens <= 0:
        return 0.0
    tier = pricing.get_tier(tokens)
    cost = Decimal(tokens) / MILLION * tier.input_rate
    return float(cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def storage_cost_per_second(tokens: int, pricing: ModelPricing) -> float:
    """Cache storage cost accrued per second for ``tokens`` cached tokens."""
    if tokens <= 0:
        return 0.0
    tier = pricing.get_tier(tokens)
    return float(Decimal(tokens) / MILLION * tier.storage_rate / SECONDS_PER_HOUR)
