"""Runtime configuration for the agent task loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_NEXT_GEN_MODEL_PREFIXES: tuple[str, ...] = (
    "claude-sonnet-4",
    "claude-opus-4",
    "gpt-5",
    "gemini-2.5",
)


@dataclass(slots=True)
class ModelSettings:
    """Model backend settings."""

    provider_id: str = "openai"
    model_id: str = "gpt-4o-mini"
    api_base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    context_window: int = 128_000
    request_timeout_seconds: float = 120.0
    next_gen_model_prefixes: tuple[str, ...] = DEFAULT_NEXT_GEN_MODEL_PREFIXES


@dataclass(slots=True)
class AutoApprovalSettings:
    """Auto-approval ceiling settings."""

    enabled: bool = False
    max_requests: int = 20
    enable_notifications: bool = False


@dataclass(slots=True)
class ContextSettings:
    """Context-window management settings."""

    use_auto_condense: bool = False
    auto_condense_threshold: float | None = None


@dataclass(slots=True)
class CheckpointSettings:
    """Workspace checkpoint settings."""

    enabled: bool = True
    init_timeout_seconds: float = 15.0


@dataclass(slots=True)
class StreamSettings:
    """Streaming and presentation settings."""

    throttle_ms: int = 50
    tool_ready_timeout_seconds: float = 10.0
    abort_wait_timeout_seconds: float = 3.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".taskpilot.db")
    workspace_dir: Path = Path(".")
    model: ModelSettings = field(default_factory=ModelSettings)
    auto_approval: AutoApprovalSettings = field(default_factory=AutoApprovalSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    checkpoints: CheckpointSettings = field(default_factory=CheckpointSettings)
    stream: StreamSettings = field(default_factory=StreamSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        threshold_raw = os.getenv("TASKPILOT_AUTO_CONDENSE_THRESHOLD", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("TASKPILOT_DB_PATH", ".taskpilot.db")),
            workspace_dir=Path(os.getenv("TASKPILOT_WORKSPACE_DIR", ".")),
            model=ModelSettings(
                provider_id=os.getenv("TASKPILOT_PROVIDER_ID", "openai"),
                model_id=os.getenv("TASKPILOT_MODEL_ID", "gpt-4o-mini"),
                api_base_url=os.getenv("TASKPILOT_API_BASE_URL", "https://api.openai.com/v1"),
                api_key=os.getenv("TASKPILOT_API_KEY", ""),
                context_window=int(os.getenv("TASKPILOT_CONTEXT_WINDOW", "128000")),
                request_timeout_seconds=float(
                    os.getenv("TASKPILOT_REQUEST_TIMEOUT_SECONDS", "120"),
                ),
                next_gen_model_prefixes=_collect_csv(
                    "TASKPILOT_NEXT_GEN_MODEL_PREFIXES",
                    default=DEFAULT_NEXT_GEN_MODEL_PREFIXES,
                ),
            ),
            auto_approval=AutoApprovalSettings(
                enabled=_env_bool("TASKPILOT_AUTO_APPROVE", default=False),
                max_requests=int(os.getenv("TASKPILOT_AUTO_APPROVE_MAX_REQUESTS", "20")),
                enable_notifications=_env_bool("TASKPILOT_AUTO_APPROVE_NOTIFY", default=False),
            ),
            context=ContextSettings(
                use_auto_condense=_env_bool("TASKPILOT_USE_AUTO_CONDENSE", default=False),
                auto_condense_threshold=float(threshold_raw) if threshold_raw else None,
            ),
            checkpoints=CheckpointSettings(
                enabled=_env_bool("TASKPILOT_CHECKPOINTS_ENABLED", default=True),
                init_timeout_seconds=float(
                    os.getenv("TASKPILOT_CHECKPOINT_INIT_TIMEOUT_SECONDS", "15"),
                ),
            ),
            stream=StreamSettings(
                throttle_ms=int(os.getenv("TASKPILOT_STREAM_THROTTLE_MS", "50")),
                tool_ready_timeout_seconds=float(
                    os.getenv("TASKPILOT_TOOL_READY_TIMEOUT_SECONDS", "10"),
                ),
                abort_wait_timeout_seconds=float(
                    os.getenv("TASKPILOT_ABORT_WAIT_TIMEOUT_SECONDS", "3"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.model.context_window <= 0:
            raise ValueError("TASKPILOT_CONTEXT_WINDOW must be > 0.")
        if self.auto_approval.max_requests <= 0:
            raise ValueError("TASKPILOT_AUTO_APPROVE_MAX_REQUESTS must be a positive integer.")
        threshold = self.context.auto_condense_threshold
        if threshold is not None and not 0.0 < threshold <= 1.0:
            raise ValueError("TASKPILOT_AUTO_CONDENSE_THRESHOLD must be within (0, 1].")
        if self.checkpoints.init_timeout_seconds <= 0:
            raise ValueError("TASKPILOT_CHECKPOINT_INIT_TIMEOUT_SECONDS must be > 0.")
        if self.stream.throttle_ms < 0:
            raise ValueError("TASKPILOT_STREAM_THROTTLE_MS must be >= 0.")
        if self.stream.tool_ready_timeout_seconds <= 0:
            raise ValueError("TASKPILOT_TOOL_READY_TIMEOUT_SECONDS must be > 0.")

    def validate_for_remote_backend(self) -> None:
        """Raise configuration error if remote backend settings are missing or invalid."""

        self.validate()
        parsed = urlparse(self.model.api_base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid TASKPILOT_API_BASE_URL: "
                f"{self.model.api_base_url!r}. Expected an absolute http:// or https:// URL.",
            )
        if not self.model.api_key:
            raise ValueError("TASKPILOT_API_KEY is required for the remote model backend.")


def _collect_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
