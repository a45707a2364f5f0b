"""Mistake and auto-approval ceilings checked before each request."""

from __future__ import annotations

import logging

from taskpilot.config import AutoApprovalSettings
from taskpilot.orchestrator.formatting import (
    auto_approval_max_reached,
    feedback_content,
    too_many_mistakes,
)
from taskpilot.orchestrator.interfaces import Notifier
from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import Answered, AskKind, AskResponse, MessagePart, SayKind
from taskpilot.orchestrator.state import TaskState

logger = logging.getLogger(__name__)

MISTAKE_LIMIT = 3


class LimitManager:
    def __init__(
        self,
        state: TaskState,
        *,
        messages: MessageService,
        settings: AutoApprovalSettings,
        notifier: Notifier | None = None,
    ) -> None:
        self._state = state
        self._messages = messages
        self._settings = settings
        self._notifier = notifier

    async def check_limits_before_request(
        self,
        user_content: list[MessagePart],
    ) -> list[MessagePart]:
        """Ask the operator at either ceiling; returns the user content to send next."""

        limits = self._state.limits
        content = user_content

        if limits.consecutive_mistake_count >= MISTAKE_LIMIT:
            logger.info(
                "Mistake limit reached for task %s (%d)",
                self._state.task_id,
                limits.consecutive_mistake_count,
            )
            self._notify(
                "Error", "The agent is having trouble. Would you like to continue the task?",
            )
            answer = await self._messages.ask(
                AskKind.MISTAKE_LIMIT_REACHED,
                "This may indicate a failure in the agent's thought process or an inability "
                "to use a tool properly, which can be mitigated with some guidance "
                '(e.g. "Try breaking down the task into smaller steps").',
            )
            feedback = await self._feedback(answer)
            if feedback is not None:
                content = feedback_content(
                    too_many_mistakes(answer.text), images=answer.images, files=answer.files,
                )
            limits.reset_mistakes()

        if (
            self._settings.enabled
            and limits.consecutive_auto_approved_requests_count >= self._settings.max_requests
        ):
            logger.info(
                "Auto-approval ceiling reached for task %s (%d)",
                self._state.task_id,
                limits.consecutive_auto_approved_requests_count,
            )
            self._notify(
                "Max Requests Reached",
                f"The agent has auto-approved {self._settings.max_requests} API requests.",
            )
            answer = await self._messages.ask(
                AskKind.AUTO_APPROVAL_MAX_REQ_REACHED,
                f"The agent has auto-approved {self._settings.max_requests} API requests. "
                "Would you like to reset the count and proceed with the task?",
            )
            feedback = await self._feedback(answer)
            if feedback is not None:
                content = feedback_content(
                    auto_approval_max_reached(answer.text),
                    images=answer.images,
                    files=answer.files,
                )
            limits.reset_auto_approvals()

        return content

    async def _feedback(self, answer: Answered) -> str | None:
        """Echo operator feedback; returns None when the answer carried none."""

        if answer.response != AskResponse.MESSAGE_RESPONSE:
            return None
        if not (answer.text or answer.images or answer.files):
            return None
        await self._messages.say(
            SayKind.USER_FEEDBACK, answer.text, images=answer.images, files=answer.files,
        )
        return answer.text or ""

    def _notify(self, subtitle: str, message: str) -> None:
        if self._notifier is not None and self._settings.enable_notifications:
            self._notifier.notify(subtitle, message)
