"""Token cost estimation helpers for model requests."""

from __future__ import annotations

import os
from dataclasses import dataclass

from taskpilot.orchestrator.usage import TokenUsage


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float
    cache_write_per_1m: float | None = None
    cache_read_per_1m: float | None = None


def estimate_cost_usd(
    *,
    provider: str,
    model: str,
    usage: TokenUsage,
) -> float | None:
    """Estimate request cost in USD from token usage and configured pricing."""

    pricing = _lookup_pricing(provider=provider, model=model)
    if pricing is None:
        return None

    cache_write_price = (
        pricing.cache_write_per_1m
        if pricing.cache_write_per_1m is not None
        else pricing.input_per_1m
    )
    cache_read_price = (
        pricing.cache_read_per_1m
        if pricing.cache_read_per_1m is not None
        else pricing.input_per_1m
    )
    return (
        (usage.input_tokens / 1_000_000) * pricing.input_per_1m
        + (usage.output_tokens / 1_000_000) * pricing.output_per_1m
        + (usage.cache_write_tokens / 1_000_000) * cache_write_price
        + (usage.cache_read_tokens / 1_000_000) * cache_read_price
    )


def resolve_cost(*, provider: str, model: str, usage: TokenUsage) -> float | None:
    """Provider-reported cost when present, else the configured estimate."""

    if usage.total_cost is not None:
        return usage.total_cost
    return estimate_cost_usd(provider=provider, model=model, usage=usage)


def _lookup_pricing(*, provider: str, model: str) -> ModelPricing | None:
    mapping = _parse_pricing_mapping(os.getenv("TASKPILOT_LLM_PRICING", ""))
    direct = mapping.get((provider.strip().lower(), model.strip()))
    if direct is not None:
        return direct

    wildcard_model = mapping.get((provider.strip().lower(), "*"))
    if wildcard_model is not None:
        return wildcard_model

    global_default = mapping.get(("*", "*"))
    if global_default is not None:
        return global_default
    return None


def _parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `TASKPILOT_LLM_PRICING` mapping.

    Format:
    - `provider:model:input_per_1m:output_per_1m`
    - optional trailing `:cache_write_per_1m:cache_read_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in provider/model (`*`)
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) not in {4, 6}:
            continue
        provider, model = parts[0], parts[1]
        try:
            prices = [float(item) for item in parts[2:]]
        except ValueError:
            continue
        if any(price < 0 for price in prices):
            continue
        parsed[(provider.lower(), model)] = ModelPricing(
            input_per_1m=prices[0],
            output_per_1m=prices[1],
            cache_write_per_1m=prices[2] if len(prices) == 4 else None,
            cache_read_per_1m=prices[3] if len(prices) == 4 else None,
        )
    return parsed
