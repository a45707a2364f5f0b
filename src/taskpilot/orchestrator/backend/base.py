"""Stream event types produced by model backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class UsageEvent:
    """Token usage report; counts are additive within one stream."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int | None = None
    cache_read_tokens: int | None = None
    total_cost: float | None = None


@dataclass(slots=True)
class ReasoningEvent:
    """Plain reasoning text delta."""

    reasoning: str


@dataclass(slots=True)
class ReasoningDetailsEvent:
    """Opaque provider reasoning details, forwarded unchanged."""

    details: Any


@dataclass(slots=True)
class ThinkingEvent:
    """Extended thinking delta with an optional signature."""

    thinking: str
    signature: str | None = None


@dataclass(slots=True)
class RedactedThinkingEvent:
    """Opaque redacted thinking payload."""

    data: str


@dataclass(slots=True)
class TextEvent:
    """Assistant text delta."""

    text: str


StreamEvent = (
    UsageEvent
    | ReasoningEvent
    | ReasoningDetailsEvent
    | ThinkingEvent
    | RedactedThinkingEvent
    | TextEvent
)
