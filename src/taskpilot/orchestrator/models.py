"""Domain models for the agent task loop."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Lifecycle states of a stored task."""

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class ContentKind(str, Enum):
    """Kinds of parsed assistant content blocks."""

    TEXT = "text"
    TOOL_USE = "tool_use"


class Role(str, Enum):
    """Conversation history roles."""

    USER = "user"
    ASSISTANT = "assistant"


class AskKind(str, Enum):
    """Blocking operator prompts."""

    API_REQ_FAILED = "api_req_failed"
    MISTAKE_LIMIT_REACHED = "mistake_limit_reached"
    AUTO_APPROVAL_MAX_REQ_REACHED = "auto_approval_max_req_reached"
    TOOL = "tool"
    COMMAND = "command"
    FOLLOWUP = "followup"
    COMPLETION_RESULT = "completion_result"


class SayKind(str, Enum):
    """Non-blocking operator notifications."""

    TASK = "task"
    TEXT = "text"
    REASONING = "reasoning"
    API_REQ_STARTED = "api_req_started"
    API_REQ_RETRIED = "api_req_retried"
    CHECKPOINT_CREATED = "checkpoint_created"
    ERROR = "error"
    USER_FEEDBACK = "user_feedback"
    TOOL = "tool"
    COMPLETION_RESULT = "completion_result"


class AskResponse(str, Enum):
    """Operator answers to a blocking prompt."""

    YES_BUTTON = "yes_button_clicked"
    NO_BUTTON = "no_button_clicked"
    MESSAGE_RESPONSE = "message_response"


class FailureClass(str, Enum):
    """Normalized provider failure classes used by retry policy."""

    CONTEXT_WINDOW_EXCEEDED = "context_window_exceeded"
    RATE_LIMITED = "rate_limited"
    BACKEND_TRANSIENT = "backend_transient"
    ACCESS_OR_AUTH = "access_or_auth"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    ABORTED = "aborted"


class CancelReason(str, Enum):
    """Why an in-flight request was cut short."""

    USER_CANCELLED = "user_cancelled"
    STREAMING_FAILED = "streaming_failed"


@dataclass(slots=True)
class TextContent:
    """Plain assistant text block."""

    content: str
    partial: bool = False
    kind: ContentKind = field(default=ContentKind.TEXT, init=False)


@dataclass(slots=True)
class ToolUseContent:
    """Tool invocation block parsed from assistant text."""

    name: str
    params: dict[str, str] = field(default_factory=dict)
    partial: bool = False
    kind: ContentKind = field(default=ContentKind.TOOL_USE, init=False)


ContentBlock = TextContent | ToolUseContent


@dataclass(slots=True)
class TextPart:
    """Text part of a conversation message."""

    text: str
    type: str = field(default="text", init=False)


@dataclass(slots=True)
class ImagePart:
    """Image part of a conversation message (data URL or remote URL)."""

    source: str
    type: str = field(default="image", init=False)


@dataclass(slots=True)
class ThinkingPart:
    """Provider thinking block kept verbatim for the next request."""

    thinking: str
    signature: str | None = None
    type: str = field(default="thinking", init=False)


@dataclass(slots=True)
class RedactedThinkingPart:
    """Opaque redacted thinking block."""

    data: str
    type: str = field(default="redacted_thinking", init=False)


MessagePart = TextPart | ImagePart | ThinkingPart | RedactedThinkingPart


def part_to_dict(part: MessagePart) -> dict[str, Any]:
    """Serialize one message part for persistence."""

    return asdict(part)


def part_from_dict(payload: dict[str, Any]) -> MessagePart:
    """Restore one message part from its persisted form."""

    part_type = payload.get("type")
    if part_type == "text":
        return TextPart(text=str(payload.get("text", "")))
    if part_type == "image":
        return ImagePart(source=str(payload.get("source", "")))
    if part_type == "thinking":
        return ThinkingPart(
            thinking=str(payload.get("thinking", "")),
            signature=payload.get("signature"),
        )
    if part_type == "redacted_thinking":
        return RedactedThinkingPart(data=str(payload.get("data", "")))
    raise ValueError(f"Unknown message part type: {part_type!r}")


@dataclass(slots=True)
class HistoryMessage:
    """One role-tagged conversation history entry."""

    role: Role
    content: list[MessagePart]

    def text(self) -> str:
        """Concatenated text parts."""

        return "\n\n".join(part.text for part in self.content if isinstance(part, TextPart))

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "content": [part_to_dict(part) for part in self.content],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryMessage:
        return cls(
            role=Role(payload["role"]),
            content=[part_from_dict(item) for item in payload.get("content", [])],
        )


@dataclass(slots=True)
class TranscriptMessage:
    """Operator-visible transcript record."""

    ts: int
    type: str
    kind: str
    text: str | None = None
    partial: bool = False
    images: tuple[str, ...] = ()
    files: tuple[str, ...] = ()
    checkpoint_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["images"] = list(self.images)
        payload["files"] = list(self.files)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TranscriptMessage:
        return cls(
            ts=int(payload["ts"]),
            type=str(payload["type"]),
            kind=str(payload["kind"]),
            text=payload.get("text"),
            partial=bool(payload.get("partial", False)),
            images=tuple(payload.get("images") or ()),
            files=tuple(payload.get("files") or ()),
            checkpoint_hash=payload.get("checkpoint_hash"),
        )


@dataclass(slots=True)
class ApiRequestInfo:
    """Payload stored in the `api_req_started` transcript record."""

    request: str = ""
    tokens_in: int | None = None
    tokens_out: int | None = None
    cache_writes: int | None = None
    cache_reads: int | None = None
    cost: float | None = None
    cancel_reason: CancelReason | None = None
    streaming_failed_message: str | None = None
    retry_status: str | None = None

    def to_json(self) -> str:
        payload = {
            key: value
            for key, value in asdict(self).items()
            if value is not None
        }
        if self.cancel_reason is not None:
            payload["cancel_reason"] = self.cancel_reason.value
        return json.dumps(payload, ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str | None) -> ApiRequestInfo:
        if not raw:
            return cls()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return cls()
        cancel_reason = payload.get("cancel_reason")
        return cls(
            request=str(payload.get("request", "")),
            tokens_in=payload.get("tokens_in"),
            tokens_out=payload.get("tokens_out"),
            cache_writes=payload.get("cache_writes"),
            cache_reads=payload.get("cache_reads"),
            cost=payload.get("cost"),
            cancel_reason=CancelReason(cancel_reason) if cancel_reason else None,
            streaming_failed_message=payload.get("streaming_failed_message"),
            retry_status=payload.get("retry_status"),
        )

    def total_tokens(self) -> int:
        return (
            (self.tokens_in or 0)
            + (self.tokens_out or 0)
            + (self.cache_writes or 0)
            + (self.cache_reads or 0)
        )


@dataclass(slots=True)
class Answered:
    """Operator answered the prompt."""

    response: AskResponse
    text: str | None = None
    images: tuple[str, ...] = ()
    files: tuple[str, ...] = ()


@dataclass(slots=True)
class Superseded:
    """A newer prompt replaced this one before it was answered."""


@dataclass(slots=True)
class Aborted:
    """The task was aborted while waiting for an answer."""


AskResult = Answered | Superseded | Aborted


@dataclass(slots=True)
class LoadedContext:
    """User content enriched by the environment context builder."""

    content: list[MessagePart]
    environment_details: str
    error_flag: bool = False


@dataclass(slots=True)
class ModelInfo:
    """Static facts about the backing model."""

    model_id: str
    provider_id: str
    context_window: int = 128_000
    supports_images: bool = False
