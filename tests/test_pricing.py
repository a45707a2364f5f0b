from __future__ import annotations

import allure

from taskpilot.orchestrator.pricing import estimate_cost_usd, resolve_cost
from taskpilot.orchestrator.usage import TokenUsage

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Usage & Cost"),
]


def test_estimate_cost_usd_uses_input_and_output_tokens(monkeypatch) -> None:
    monkeypatch.setenv("TASKPILOT_LLM_PRICING", "openai:gpt-test:1.0:3.0")
    cost = estimate_cost_usd(
        provider="openai",
        model="gpt-test",
        usage=TokenUsage(input_tokens=1_000_000, output_tokens=500_000),
    )
    assert cost == 2.5


def test_estimate_cost_usd_prices_cache_tokens(monkeypatch) -> None:
    monkeypatch.setenv("TASKPILOT_LLM_PRICING", "openai:gpt-test:1.0:3.0:2.0:0.5")
    cost = estimate_cost_usd(
        provider="openai",
        model="gpt-test",
        usage=TokenUsage(cache_write_tokens=1_000_000, cache_read_tokens=2_000_000),
    )
    assert cost == 3.0


def test_estimate_cost_usd_applies_wildcards(monkeypatch) -> None:
    monkeypatch.setenv("TASKPILOT_LLM_PRICING", "openai:*:2.0:2.0,*:*:9.0:9.0")
    usage = TokenUsage(input_tokens=1_000_000)

    assert estimate_cost_usd(provider="openai", model="unknown", usage=usage) == 2.0
    assert estimate_cost_usd(provider="anthropic", model="unknown", usage=usage) == 9.0


def test_estimate_cost_usd_ignores_invalid_rows(monkeypatch) -> None:
    monkeypatch.setenv(
        "TASKPILOT_LLM_PRICING",
        "openai:gpt-test:-1.0:3.0,openai:gpt-other:abc:1.0,openai:short:1.0",
    )
    usage = TokenUsage(input_tokens=1_000)

    assert estimate_cost_usd(provider="openai", model="gpt-test", usage=usage) is None
    assert estimate_cost_usd(provider="openai", model="gpt-other", usage=usage) is None
    assert estimate_cost_usd(provider="openai", model="short", usage=usage) is None


def test_resolve_cost_prefers_provider_reported_cost(monkeypatch) -> None:
    monkeypatch.setenv("TASKPILOT_LLM_PRICING", "*:*:9.0:9.0")

    reported = TokenUsage(input_tokens=1_000_000, total_cost=0.25)
    estimated = TokenUsage(input_tokens=1_000_000)

    assert resolve_cost(provider="openai", model="m", usage=reported) == 0.25
    assert resolve_cost(provider="openai", model="m", usage=estimated) == 9.0


def test_resolve_cost_is_none_without_pricing(monkeypatch) -> None:
    monkeypatch.delenv("TASKPILOT_LLM_PRICING", raising=False)
    assert resolve_cost(provider="openai", model="m", usage=TokenUsage(input_tokens=10)) is None
