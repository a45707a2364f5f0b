from __future__ import annotations

import asyncio

import allure

from taskpilot.orchestrator.errors import (
    ContextWindowExceededError,
    ProviderStreamError,
    TaskAbortedError,
)
from taskpilot.orchestrator.failure_classifier import (
    STREAM_FAILURE_CLASSIFIER_VERSION,
    classify_stream_error,
)
from taskpilot.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Retry & Truncation"),
]


def test_classifier_version_is_stable() -> None:
    assert STREAM_FAILURE_CLASSIFIER_VERSION == 1


def test_explicit_context_window_error_wins() -> None:
    classified = classify_stream_error(ContextWindowExceededError("boom"), provider="openai")
    assert classified.is_context_window_exceeded
    assert classified.matched_rule == "explicit_error_type"
    assert classified.reason_code == "openai_context_window_exceeded"


def test_context_wording_with_bad_request_status() -> None:
    error = ProviderStreamError(
        "This model's maximum context length is 8192 tokens",
        status_code=400,
    )
    classified = classify_stream_error(error)
    assert classified.failure_class == FailureClass.CONTEXT_WINDOW_EXCEEDED
    assert classified.matched_pattern == "context length"


def test_context_wording_on_server_error_is_not_context_window() -> None:
    error = ProviderStreamError("context length service crashed", status_code=500)
    classified = classify_stream_error(error)
    assert classified.failure_class == FailureClass.BACKEND_TRANSIENT
    assert classified.matched_rule == "transient_status_code"


def test_abort_and_cancellation_are_aborted() -> None:
    assert (
        classify_stream_error(TaskAbortedError("t1")).failure_class == FailureClass.ABORTED
    )
    assert (
        classify_stream_error(asyncio.CancelledError()).failure_class == FailureClass.ABORTED
    )


def test_auth_status_and_rate_limit_patterns() -> None:
    auth = classify_stream_error(ProviderStreamError("nope", status_code=401))
    rate = classify_stream_error(RuntimeError("Rate limit reached for requests"))

    assert auth.failure_class == FailureClass.ACCESS_OR_AUTH
    assert rate.failure_class == FailureClass.RATE_LIMITED
    assert rate.matched_pattern == "rate limit"


def test_unknown_errors_are_non_retryable() -> None:
    classified = classify_stream_error(ValueError("unexpected payload"))
    assert classified.failure_class == FailureClass.BACKEND_NON_RETRYABLE
    details = classified.to_event_details(provider="openai", model="gpt")
    assert details["matched_rule"] == "fallback_non_retryable"
    assert details["classifier_version"] == STREAM_FAILURE_CLASSIFIER_VERSION
