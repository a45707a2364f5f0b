"""Exception hierarchy for the agent task loop."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base error for task orchestration failures."""


class TaskAbortedError(OrchestratorError):
    """Raised when work is attempted on an aborted task."""

    def __init__(self, task_id: str, message: str = "") -> None:
        self.task_id = task_id
        super().__init__(message or f"Task {task_id} aborted")


class AskSupersededError(OrchestratorError):
    """Raised when a newer operator prompt replaced the awaited one."""


class ApiRequestFailedError(OrchestratorError):
    """Raised when the operator declines to retry a failed request."""


class ContextWindowExceededError(OrchestratorError):
    """Raised by backends when the prompt does not fit the model context window."""


class ProviderStreamError(OrchestratorError):
    """Provider-side failure surfaced while opening or reading a stream."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        request_id: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.request_id = request_id
        super().__init__(message)


class CheckpointInitializationError(OrchestratorError):
    """Raised when the workspace checkpoint mechanism cannot be initialized."""
