"""Deterministic provider stream failure classification for retry policy."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from taskpilot.orchestrator.errors import (
    ContextWindowExceededError,
    ProviderStreamError,
    TaskAbortedError,
)
from taskpilot.orchestrator.models import FailureClass

STREAM_FAILURE_CLASSIFIER_VERSION = 1

_CONTEXT_WINDOW_PATTERNS: tuple[str, ...] = (
    "context window",
    "context length",
    "context_length_exceeded",
    "maximum context length",
    "prompt is too long",
    "input is too long",
    "too many tokens",
    "reduce the length of the messages",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "incorrect api key",
    "authentication",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "overloaded",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection error",
    "network error",
    "timed out",
    "timeout",
    "bad gateway",
    "service unavailable",
)
_TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 500, 502, 503, 504, 529})
_CONTEXT_WINDOW_STATUS_CODES: frozenset[int] = frozenset({400, 413})


@dataclass(slots=True)
class StreamFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def is_context_window_exceeded(self) -> bool:
        return self.failure_class == FailureClass.CONTEXT_WINDOW_EXCEEDED

    def to_event_details(self, *, provider: str, model: str) -> dict[str, object]:
        """Serialize classifier diagnostics for telemetry events."""

        return {
            "classifier_version": STREAM_FAILURE_CLASSIFIER_VERSION,
            "provider": provider,
            "model": model,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_stream_error(  # noqa: C901
    error: BaseException,
    *,
    provider: str = "provider",
) -> StreamFailureClassification:
    """Classify a stream failure into a deterministic retry class."""

    if isinstance(error, ContextWindowExceededError):
        return StreamFailureClassification(
            failure_class=FailureClass.CONTEXT_WINDOW_EXCEEDED,
            reason_code=f"{provider}_context_window_exceeded",
            matched_rule="explicit_error_type",
            matched_pattern=None,
        )
    if isinstance(error, (TaskAbortedError, asyncio.CancelledError)):
        return StreamFailureClassification(
            failure_class=FailureClass.ABORTED,
            reason_code=f"{provider}_aborted",
            matched_rule="explicit_error_type",
            matched_pattern=None,
        )

    haystack = str(error).lower()
    status_code = error.status_code if isinstance(error, ProviderStreamError) else None

    pattern = _first_match(haystack, _CONTEXT_WINDOW_PATTERNS)
    if pattern is not None and (
        status_code is None or status_code in _CONTEXT_WINDOW_STATUS_CODES
    ):
        return StreamFailureClassification(
            failure_class=FailureClass.CONTEXT_WINDOW_EXCEEDED,
            reason_code=f"{provider}_context_window_exceeded",
            matched_rule="context_window",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None or status_code in {401, 403}:
        return StreamFailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code=f"{provider}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None or status_code == 429:
        return StreamFailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code=f"{provider}_rate_limited",
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or status_code in _TRANSIENT_STATUS_CODES:
        return StreamFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{provider}_backend_transient",
            matched_rule=(
                "transient_status_code" if pattern is None else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return StreamFailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code=f"{provider}_backend_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
