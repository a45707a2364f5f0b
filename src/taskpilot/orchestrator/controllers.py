"""Controllers for task CLI commands."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import rich_click as click

from taskpilot.config import Settings
from taskpilot.console import (
    ConsoleNotifier,
    ConsoleOperatorChannel,
    LoggingTelemetry,
    render_transcript_line,
)
from taskpilot.orchestrator.backend import OpenAICompatibleBackend, ScriptedBackend
from taskpilot.orchestrator.interfaces import ModelBackend
from taskpilot.orchestrator.lifecycle import TaskRunner
from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import (
    ApiRequestInfo,
    ModelInfo,
    SayKind,
    TaskStatus,
    TranscriptMessage,
)
from taskpilot.orchestrator.state import TaskState
from taskpilot.orchestrator.task import TaskOrchestrator
from taskpilot.storage.repository import (
    SqliteHistoryStore,
    TaskHistoryRepository,
    TaskNotFoundError,
)
from taskpilot.tools import WorkspaceToolExecutor
from taskpilot.workspace import WorkspaceContextBuilder, WorkspaceHashCheckpoint

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 120


@dataclass(slots=True)
class TaskRunCommand:
    """CLI input for running one task."""

    db_path: Path | None
    prompt: str
    script_path: Path | None = None
    workspace_dir: Path | None = None
    auto_approve: bool | None = None
    max_requests: int | None = None
    assume_yes: bool = False


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class TaskShowCommand:
    """CLI input for single task inspection."""

    db_path: Path | None
    task_id: str
    show_transcript: bool = False


@dataclass(slots=True)
class UsageSummary:
    """Token and cost totals over the `api_req_started` records of a task."""

    requests: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    cost: float = 0.0


def summarize_usage(transcript: Sequence[TranscriptMessage]) -> UsageSummary:
    summary = UsageSummary()
    for message in transcript:
        if message.type != "say" or message.kind != SayKind.API_REQ_STARTED.value:
            continue
        info = ApiRequestInfo.from_json(message.text)
        summary.requests += 1
        summary.tokens_in += info.tokens_in or 0
        summary.tokens_out += info.tokens_out or 0
        summary.cache_writes += info.cache_writes or 0
        summary.cache_reads += info.cache_reads or 0
        summary.cost += info.cost or 0.0
    return summary


class TaskCliController:
    """Controller layer that keeps CLI handlers thin."""

    def run_task(self, command: TaskRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.workspace_dir is not None:
            settings.workspace_dir = command.workspace_dir
        if command.auto_approve is not None:
            settings.auto_approval.enabled = command.auto_approve
        if command.max_requests is not None:
            settings.auto_approval.max_requests = command.max_requests

        if command.script_path is not None:
            settings.validate()
            backend: ModelBackend = ScriptedBackend.from_file(
                command.script_path,
                model=ModelInfo(
                    model_id="scripted",
                    provider_id="scripted",
                    context_window=settings.model.context_window,
                ),
            )
        else:
            settings.validate_for_remote_backend()
            backend = OpenAICompatibleBackend(settings.model)
        model = backend.get_model()

        with _repository(settings) as repository:
            task = repository.create_task(
                prompt=command.prompt,
                provider_id=model.provider_id,
                model_id=model.model_id,
            )
            history = SqliteHistoryStore(repository, task.task_id)
            state = TaskState(task_id=task.task_id)
            messages = MessageService(
                state,
                ConsoleOperatorChannel(assume_yes=command.assume_yes),
                sink=history,
            )
            try:
                asyncio.run(
                    _run_task(
                        settings,
                        state=state,
                        backend=backend,
                        history=history,
                        messages=messages,
                        prompt=command.prompt,
                    ),
                )
            except Exception:
                repository.update_task(
                    task.task_id,
                    status=TaskStatus.FAILED,
                    api_request_count=state.api_request_count,
                )
                raise
            status = _final_status(state, messages.transcript)
            repository.update_task(
                task.task_id,
                status=status,
                api_request_count=state.api_request_count,
            )

        usage = summarize_usage(messages.transcript)
        return [
            f"Task: {task.task_id}",
            f"Status: {status.value}",
            f"Requests: {state.api_request_count}",
            f"Tokens: in={usage.tokens_in} out={usage.tokens_out} "
            f"cache_writes={usage.cache_writes} cache_reads={usage.cache_reads}",
            f"Cost: ${usage.cost:.4f}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} "
                f"model={task.provider_id}/{task.model_id} "
                f"requests={task.api_request_count} messages={task.message_count} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def show_task(self, command: TaskShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            try:
                task = repository.get_task(command.task_id)
            except TaskNotFoundError:
                return [f"Task not found: {command.task_id}"]
            conversation = repository.load_conversation(command.task_id)
            transcript = repository.load_transcript(command.task_id)

        usage = summarize_usage(transcript)
        deleted = (
            f"{task.deleted_range[0]}..{task.deleted_range[1]}" if task.deleted_range else "-"
        )
        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value}",
            f"Model: {task.provider_id}/{task.model_id}",
            f"Prompt: {task.prompt}",
            f"Requests: {task.api_request_count}",
            f"Deleted range: {deleted}",
            f"Tokens: in={usage.tokens_in} out={usage.tokens_out}",
            f"Cost: ${usage.cost:.4f}",
            f"Conversation messages: {len(conversation)}",
        ]
        for index, message in enumerate(conversation):
            preview = " ".join(message.text().split())[:_PREVIEW_CHARS]
            lines.append(f"  #{index} {message.role.value}: {preview}")
        if command.show_transcript:
            lines.append(f"Transcript records: {len(transcript)}")
            lines.extend(f"  {render_transcript_line(message)}" for message in transcript)
        return lines


async def _run_task(
    settings: Settings,
    *,
    state: TaskState,
    backend: ModelBackend,
    history: SqliteHistoryStore,
    messages: MessageService,
    prompt: str,
) -> None:
    state.conversation_history_deleted_range = history.deleted_range
    notifier = ConsoleNotifier()
    executor = WorkspaceToolExecutor(
        state,
        messages,
        workspace_dir=settings.workspace_dir,
        auto_approve=settings.auto_approval.enabled,
    )
    orchestrator = TaskOrchestrator(
        state,
        settings=settings,
        backend=backend,
        history=history,
        messages=messages,
        tool_executor=executor,
        context_builder=WorkspaceContextBuilder(settings.workspace_dir),
        checkpoint_mechanism=(
            WorkspaceHashCheckpoint(settings.workspace_dir)
            if settings.checkpoints.enabled
            else None
        ),
        edit_reverter=executor,
        notifier=notifier,
        telemetry=LoggingTelemetry(),
    )
    runner = TaskRunner(orchestrator)
    aborts: set[asyncio.Task[None]] = set()
    loop = asyncio.get_running_loop()

    def _on_interrupt() -> None:
        if state.abort:
            return
        click.echo("Aborting task...", err=True)
        aborts.add(loop.create_task(runner.abort_task()))

    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler is not supported on this platform")

    try:
        await runner.start_task(prompt)
        if aborts:
            await asyncio.gather(*aborts)
        await orchestrator.aclose()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler is not supported on this platform")
        if isinstance(backend, OpenAICompatibleBackend):
            await backend.aclose()


def _final_status(state: TaskState, transcript: Sequence[TranscriptMessage]) -> TaskStatus:
    if state.did_complete_task:
        return TaskStatus.COMPLETED
    if state.request_cycle_error is not None:
        return TaskStatus.FAILED
    for message in reversed(transcript):
        if message.type == "say" and message.kind == SayKind.API_REQ_STARTED.value:
            if ApiRequestInfo.from_json(message.text).streaming_failed_message:
                return TaskStatus.FAILED
            break
    return TaskStatus.ABORTED


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskHistoryRepository]:
    repository = TaskHistoryRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
