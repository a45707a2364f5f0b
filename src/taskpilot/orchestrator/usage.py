"""Token usage ledger for one streamed model response."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class TokenUsage:
    """Accumulated token counts and cost for one request."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost: float | None = None

    def add(
        self,
        *,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        cache_write_tokens: int | None = None,
        cache_read_tokens: int | None = None,
        total_cost: float | None = None,
    ) -> None:
        """Add one usage report; counts accumulate, cost is last-reported-wins."""

        self.input_tokens += input_tokens or 0
        self.output_tokens += output_tokens or 0
        self.cache_write_tokens += cache_write_tokens or 0
        self.cache_read_tokens += cache_read_tokens or 0
        if total_cost is not None:
            self.total_cost = total_cost

    def merge(self, other: TokenUsage) -> None:
        self.add(
            input_tokens=other.input_tokens,
            output_tokens=other.output_tokens,
            cache_write_tokens=other.cache_write_tokens,
            cache_read_tokens=other.cache_read_tokens,
            total_cost=other.total_cost,
        )
