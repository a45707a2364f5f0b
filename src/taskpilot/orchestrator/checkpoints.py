"""First-request workspace checkpoint handling."""

from __future__ import annotations

import asyncio
import logging

from taskpilot.config import CheckpointSettings
from taskpilot.orchestrator.errors import OrchestratorError
from taskpilot.orchestrator.interfaces import CheckpointMechanism, Notifier
from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import SayKind
from taskpilot.orchestrator.state import TaskState

logger = logging.getLogger(__name__)


class CheckpointCoordinator:
    def __init__(
        self,
        state: TaskState,
        *,
        messages: MessageService,
        mechanism: CheckpointMechanism | None,
        settings: CheckpointSettings,
        notifier: Notifier | None = None,
    ) -> None:
        self._state = state
        self._messages = messages
        self._mechanism = mechanism
        self._settings = settings
        self._notifier = notifier
        self.pending_commits: set[asyncio.Task[None]] = set()

    async def handle_first_request_checkpoint(self, *, is_first_request: bool) -> None:
        """Initialize checkpoints and commit the initial snapshot in the background."""

        if (
            not is_first_request
            or not self._settings.enabled
            or self._mechanism is None
            or self._state.checkpoint_error_message is not None
        ):
            return

        try:
            await asyncio.wait_for(
                self._mechanism.initialize(),
                timeout=self._settings.init_timeout_seconds,
            )
        except TimeoutError:
            self._fail(
                "Checkpoints initialization timed out after "
                f"{self._settings.init_timeout_seconds:g}s.",
            )
            return
        except (OrchestratorError, OSError) as exc:
            self._fail(f"Checkpoints initialization failed: {exc}")
            return

        ts = await self._messages.say(SayKind.CHECKPOINT_CREATED)
        task = asyncio.get_running_loop().create_task(self._commit(self._mechanism, ts))
        self.pending_commits.add(task)
        task.add_done_callback(self.pending_commits.discard)

    async def _commit(self, mechanism: CheckpointMechanism, ts: int) -> None:
        try:
            checkpoint_hash = await mechanism.commit()
        except Exception:
            logger.exception("Checkpoint commit failed for task %s", self._state.task_id)
            return
        if checkpoint_hash:
            self._messages.attach_checkpoint_hash(ts, checkpoint_hash)
            logger.info("Checkpoint %s created for task %s", checkpoint_hash, self._state.task_id)

    def _fail(self, message: str) -> None:
        self._state.checkpoint_error_message = message
        logger.warning("Task %s: %s", self._state.task_id, message)
        if self._notifier is not None:
            self._notifier.notify("Checkpoints", message)

    async def wait_for_pending_commits(self) -> None:
        if self.pending_commits:
            await asyncio.gather(*list(self.pending_commits))
