"""Model backend implementations."""

from taskpilot.orchestrator.backend.base import (
    ReasoningDetailsEvent,
    ReasoningEvent,
    RedactedThinkingEvent,
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    UsageEvent,
)
from taskpilot.orchestrator.backend.openai_compat import OpenAICompatibleBackend
from taskpilot.orchestrator.backend.scripted import ScriptedBackend, ScriptedFailure, ScriptedTurn

__all__ = [
    "OpenAICompatibleBackend",
    "ReasoningDetailsEvent",
    "ReasoningEvent",
    "RedactedThinkingEvent",
    "ScriptedBackend",
    "ScriptedFailure",
    "ScriptedTurn",
    "StreamEvent",
    "TextEvent",
    "ThinkingEvent",
    "UsageEvent",
]
