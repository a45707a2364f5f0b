"""Workspace tool executor used by the CLI task runner."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import (
    Answered,
    AskKind,
    AskResponse,
    SayKind,
    TextPart,
    ToolUseContent,
)
from taskpilot.orchestrator.state import TaskState
from taskpilot.workspace import iter_workspace_files

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_OUTPUT_CHARS = 20_000
_MAX_SEARCH_MATCHES = 100
_REPLACE_BLOCK = re.compile(
    r"-{3,} SEARCH\n(?P<search>.*?)\n={3,}\n(?P<replace>.*?)\n\+{3,} REPLACE",
    re.DOTALL,
)

_REQUIRED_PARAMS: dict[str, tuple[str, ...]] = {
    "execute_command": ("command",),
    "read_file": ("path",),
    "write_to_file": ("path", "content"),
    "replace_in_file": ("path", "diff"),
    "search_files": ("path", "regex"),
    "list_files": ("path",),
    "ask_followup_question": ("question",),
    "attempt_completion": ("result",),
}


class ToolInputError(ValueError):
    """Raised when a tool call carries invalid or missing parameters."""


@dataclass(slots=True)
class _PendingEdit:
    path: Path
    original: str | None


class WorkspaceToolExecutor:
    """Executes parsed tool blocks against a workspace directory.

    Mutating tools ask the operator for approval unless auto-approval is on.
    File edits are written before approval and reverted on rejection or abort.
    """

    def __init__(
        self,
        state: TaskState,
        messages: MessageService,
        *,
        workspace_dir: Path,
        auto_approve: bool = False,
        command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
    ) -> None:
        self._state = state
        self._messages = messages
        self._workspace_dir = workspace_dir.resolve()
        self._auto_approve = auto_approve
        self._command_timeout_seconds = command_timeout_seconds
        self._max_output_chars = max_output_chars
        self._pending_edit: _PendingEdit | None = None

    @property
    def is_editing(self) -> bool:
        return self._pending_edit is not None

    async def revert_changes(self) -> None:
        edit = self._pending_edit
        if edit is None:
            return
        self._pending_edit = None
        if edit.original is None:
            edit.path.unlink(missing_ok=True)
        else:
            edit.path.write_text(edit.original, encoding="utf-8")
        logger.info("Reverted pending edit of %s", edit.path)

    async def execute_tool(self, block: ToolUseContent) -> None:
        if block.partial:
            return
        try:
            self._check_params(block)
            result = await self._dispatch(block)
        except (ToolInputError, OSError, UnicodeDecodeError, re.error) as exc:
            logger.warning("Tool %s failed: %s", block.name, exc)
            self._state.limits.record_mistake()
            await self._messages.say(SayKind.ERROR, f"Error executing {block.name}: {exc}")
            self._push_result(block, f"The tool execution failed with the following error:\n{exc}")
            return
        if result is not None:
            self._state.limits.reset_mistakes()
            self._push_result(block, result)

    async def _dispatch(self, block: ToolUseContent) -> str | None:
        params = block.params
        match block.name:
            case "read_file":
                return await self._read_file(block)
            case "list_files":
                return await self._list_files(block)
            case "search_files":
                return await self._search_files(block)
            case "write_to_file":
                return await self._write(block, params["content"])
            case "replace_in_file":
                path = self._resolve(params["path"])
                original = path.read_text(encoding="utf-8")
                return await self._write(block, apply_replace_blocks(original, params["diff"]))
            case "execute_command":
                return await self._execute_command(block)
            case "ask_followup_question":
                answer = await self._messages.ask(AskKind.FOLLOWUP, params["question"])
                text = answer.text or ""
                await self._messages.say(
                    SayKind.USER_FEEDBACK, text, images=answer.images, files=answer.files,
                )
                return f"<answer>\n{text}\n</answer>"
            case "attempt_completion":
                return await self._attempt_completion(block)
        raise ToolInputError(f"Unknown tool: {block.name}")

    def _check_params(self, block: ToolUseContent) -> None:
        for name in _REQUIRED_PARAMS.get(block.name, ()):
            value = block.params.get(name)
            # empty file content is a valid write
            if value is None or (name != "content" and not value.strip()):
                raise ToolInputError(f"Missing value for required parameter '{name}'.")

    def _resolve(self, raw_path: str) -> Path:
        path = (self._workspace_dir / raw_path.strip()).resolve()
        if not path.is_relative_to(self._workspace_dir):
            raise ToolInputError(f"Path is outside of the workspace: {raw_path}")
        return path

    async def _read_file(self, block: ToolUseContent) -> str:
        path = self._resolve(block.params["path"])
        await self._messages.say(SayKind.TOOL, _describe(block))
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return self._clip(content)

    async def _list_files(self, block: ToolUseContent) -> str:
        root = self._resolve(block.params["path"])
        if not root.is_dir():
            raise ToolInputError(f"Not a directory: {block.params['path']}")
        await self._messages.say(SayKind.TOOL, _describe(block))
        recursive = block.params.get("recursive", "").strip().lower() == "true"
        if recursive:
            paths = list(iter_workspace_files(root))
        else:
            paths = sorted(root.iterdir())
        lines = [
            str(path.relative_to(root)) + ("/" if path.is_dir() else "")
            for path in paths
        ]
        return "\n".join(lines) or "No files found."

    async def _search_files(self, block: ToolUseContent) -> str:
        root = self._resolve(block.params["path"])
        pattern = re.compile(block.params["regex"])
        glob = block.params.get("file_pattern", "").strip() or "*"
        await self._messages.say(SayKind.TOOL, _describe(block))
        matches: list[str] = []
        for path in iter_workspace_files(root):
            if not path.match(glob):
                continue
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            for number, line in enumerate(lines, start=1):
                if pattern.search(line):
                    matches.append(f"{path.relative_to(root)}:{number}: {line.strip()}")
                if len(matches) >= _MAX_SEARCH_MATCHES:
                    return "\n".join(matches) + "\n(results truncated)"
        return "\n".join(matches) or "Found 0 results."

    async def _write(self, block: ToolUseContent, new_content: str) -> str | None:
        path = self._resolve(block.params["path"])
        original = path.read_text(encoding="utf-8") if path.exists() else None
        path.parent.mkdir(parents=True, exist_ok=True)
        self._pending_edit = _PendingEdit(path=path, original=original)
        path.write_text(new_content, encoding="utf-8")

        if not await self._approve(AskKind.TOOL, block):
            await self.revert_changes()
            return None
        self._pending_edit = None
        return f"The content was successfully saved to {block.params['path']}."

    async def _execute_command(self, block: ToolUseContent) -> str | None:
        command = block.params["command"]
        if not await self._approve(AskKind.COMMAND, block):
            return None
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=self._workspace_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            output, _ = await asyncio.wait_for(
                process.communicate(),
                timeout=self._command_timeout_seconds,
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            return (
                f"Command timed out after {self._command_timeout_seconds:.0f}s: {command}"
            )
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
        text = self._clip(output.decode("utf-8", errors="replace"))
        return f"Command executed. Exit code: {process.returncode}\nOutput:\n{text}"

    async def _attempt_completion(self, block: ToolUseContent) -> str | None:
        answer = await self._messages.ask(AskKind.COMPLETION_RESULT, block.params["result"])
        if answer.response == AskResponse.MESSAGE_RESPONSE and answer.text:
            await self._messages.say(SayKind.USER_FEEDBACK, answer.text)
            return (
                "The user has provided feedback on the results. Consider their input to "
                f"continue the task, and then attempt completion again.\n"
                f"<feedback>\n{answer.text}\n</feedback>"
            )
        await self._messages.say(SayKind.COMPLETION_RESULT, block.params["result"])
        self._state.did_complete_task = True
        return ""

    async def _approve(self, kind: AskKind, block: ToolUseContent) -> bool:
        if self._auto_approve:
            self._state.limits.record_auto_approval()
            await self._messages.say(SayKind.TOOL, _describe(block))
            return True
        answer = await self._messages.ask(kind, _describe(block))
        if answer.response == AskResponse.YES_BUTTON:
            return True
        self._state.stream.did_reject_tool = True
        self._push_result(block, _denial(answer))
        if answer.text:
            await self._messages.say(
                SayKind.USER_FEEDBACK, answer.text, images=answer.images, files=answer.files,
            )
        return False

    def _push_result(self, block: ToolUseContent, result: str) -> None:
        content = self._state.presentation.user_message_content
        content.append(TextPart(text=f"[{_label(block)}] Result:"))
        content.append(TextPart(text=result or "(tool did not return anything)"))

    def _clip(self, text: str) -> str:
        if len(text) <= self._max_output_chars:
            return text
        return text[: self._max_output_chars] + "\n[output truncated]"


def apply_replace_blocks(original: str, diff: str) -> str:
    """Apply SEARCH/REPLACE blocks in order; each search text must match exactly once."""

    blocks = list(_REPLACE_BLOCK.finditer(diff))
    if not blocks:
        raise ToolInputError("The diff contains no SEARCH/REPLACE blocks.")
    updated = original
    for match in blocks:
        search = match.group("search")
        occurrences = updated.count(search)
        if occurrences != 1:
            raise ToolInputError(
                f"SEARCH block must match exactly once, matched {occurrences} times:\n{search}",
            )
        updated = updated.replace(search, match.group("replace"), 1)
    return updated


def _label(block: ToolUseContent) -> str:
    target = block.params.get("path") or block.params.get("command")
    return f"{block.name} for '{target}'" if target else block.name


def _describe(block: ToolUseContent) -> str:
    payload = {"tool": block.name}
    payload.update({key: value for key, value in block.params.items() if key != "content"})
    return json.dumps(payload, ensure_ascii=False)


def _denial(answer: Answered) -> str:
    if answer.text:
        return f"The user denied this operation and provided the following feedback:\n{answer.text}"
    return "The user denied this operation."
