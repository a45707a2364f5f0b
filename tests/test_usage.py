from __future__ import annotations

import allure

from taskpilot.orchestrator.usage import TokenUsage

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Usage & Cost"),
]


def test_usage_reports_accumulate_counts() -> None:
    usage = TokenUsage()
    usage.add(input_tokens=5, output_tokens=10)
    usage.add(input_tokens=3, output_tokens=2)

    assert usage.input_tokens == 8
    assert usage.output_tokens == 12
    assert usage.total_tokens == 20


def test_usage_cost_is_last_reported_wins() -> None:
    usage = TokenUsage()
    usage.add(input_tokens=1, total_cost=0.01)
    usage.add(output_tokens=1)
    assert usage.total_cost == 0.01

    usage.add(output_tokens=1, total_cost=0.03)
    assert usage.total_cost == 0.03


def test_usage_merge_accumulates_counts() -> None:
    usage = TokenUsage(input_tokens=1, cache_read_tokens=4)
    usage.merge(TokenUsage(cache_write_tokens=2, total_cost=0.5))

    assert usage.cache_write_tokens == 2
    assert usage.cache_read_tokens == 4
    assert usage.total_cost == 0.5
    assert usage.input_tokens == 1
