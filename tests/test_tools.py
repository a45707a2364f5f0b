from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest

from taskpilot.orchestrator.messages import MessageService
from taskpilot.orchestrator.models import (
    Answered,
    AskResponse,
    SayKind,
    ToolUseContent,
)
from taskpilot.tools import ToolInputError, WorkspaceToolExecutor, apply_replace_blocks

pytestmark = [
    allure.epic("Task Runner"),
    allure.feature("Workspace Tools"),
]

DIFF = "------- SEARCH\nvalue = 1\n=======\nvalue = 2\n+++++++ REPLACE"


def _tool(name: str, **params: str) -> ToolUseContent:
    return ToolUseContent(name=name, params=params)


def _results(state) -> list[str]:
    return [part.text for part in state.presentation.user_message_content]


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    (root / "app.py").write_text("value = 1\n", encoding="utf-8")
    return root


@pytest.fixture()
def executor(state, messages, workspace: Path) -> WorkspaceToolExecutor:
    return WorkspaceToolExecutor(state, messages, workspace_dir=workspace)


@pytest.mark.asyncio
async def test_read_file_pushes_labelled_result(executor, state, messages) -> None:
    await executor.execute_tool(_tool("read_file", path="app.py"))

    assert _results(state) == ["[read_file for 'app.py'] Result:", "value = 1\n"]
    assert messages.transcript[-1].kind == SayKind.TOOL.value


@pytest.mark.asyncio
async def test_partial_blocks_are_not_executed(executor, state) -> None:
    block = ToolUseContent(name="read_file", params={"path": "a"}, partial=True)

    await executor.execute_tool(block)

    assert state.presentation.user_message_content == []


@pytest.mark.asyncio
async def test_missing_parameter_counts_a_mistake(executor, state, messages) -> None:
    await executor.execute_tool(_tool("read_file"))

    assert state.limits.consecutive_mistake_count == 1
    assert messages.transcript[-1].kind == SayKind.ERROR.value
    assert "Missing value for required parameter 'path'" in _results(state)[1]


@pytest.mark.asyncio
async def test_paths_outside_workspace_are_refused(executor, state) -> None:
    await executor.execute_tool(_tool("read_file", path="../secret.txt"))

    assert "outside of the workspace" in _results(state)[1]


@pytest.mark.asyncio
async def test_approved_write_is_kept(executor, state, channel, answers, workspace) -> None:
    channel.answers.append(answers.yes)

    await executor.execute_tool(_tool("write_to_file", path="docs/new.md", content="# Title"))

    assert (workspace / "docs" / "new.md").read_text(encoding="utf-8") == "# Title"
    assert channel.asked == ["tool"]
    assert "successfully saved" in _results(state)[1]
    assert not executor.is_editing


@pytest.mark.asyncio
async def test_rejected_write_is_reverted(executor, state, workspace) -> None:
    await executor.execute_tool(_tool("write_to_file", path="new.md", content="draft"))
    await executor.execute_tool(_tool("replace_in_file", path="app.py", diff=DIFF))

    assert not (workspace / "new.md").exists()
    assert (workspace / "app.py").read_text(encoding="utf-8") == "value = 1\n"
    assert state.stream.did_reject_tool
    assert _results(state)[1] == "The user denied this operation."


@pytest.mark.asyncio
async def test_replace_in_file_applies_diff(executor, channel, answers, workspace) -> None:
    channel.answers.append(answers.yes)

    await executor.execute_tool(_tool("replace_in_file", path="app.py", diff=DIFF))

    assert (workspace / "app.py").read_text(encoding="utf-8") == "value = 2\n"


def test_replace_blocks_must_match_exactly_once() -> None:
    with pytest.raises(ToolInputError, match="matched 2 times"):
        apply_replace_blocks("x\nx\n", "------- SEARCH\nx\n=======\ny\n+++++++ REPLACE")
    with pytest.raises(ToolInputError, match="no SEARCH/REPLACE blocks"):
        apply_replace_blocks("x", "just text")


@pytest.mark.asyncio
async def test_auto_approved_command_runs_in_workspace(state, messages, workspace) -> None:
    executor = WorkspaceToolExecutor(state, messages, workspace_dir=workspace, auto_approve=True)

    await executor.execute_tool(_tool("execute_command", command="ls"))

    result = _results(state)[1]
    assert result.startswith("Command executed. Exit code: 0")
    assert "app.py" in result
    assert state.limits.consecutive_auto_approved_requests_count == 1


@pytest.mark.asyncio
async def test_followup_answer_is_wrapped(executor, state, channel, answers) -> None:
    channel.answers.append(answers.message("blue"))

    await executor.execute_tool(_tool("ask_followup_question", question="Which color?"))

    assert channel.asked == ["followup"]
    assert _results(state)[1] == "<answer>\nblue\n</answer>"


@pytest.mark.asyncio
async def test_completion_accepted_marks_task_complete(executor, state, channel, answers) -> None:
    channel.answers.append(answers.yes)

    await executor.execute_tool(_tool("attempt_completion", result="All done"))

    assert state.did_complete_task


@pytest.mark.asyncio
async def test_completion_feedback_keeps_task_open(executor, state, channel, answers) -> None:
    channel.answers.append(answers.message("add tests"))

    await executor.execute_tool(_tool("attempt_completion", result="All done"))

    assert not state.did_complete_task
    assert "<feedback>\nadd tests\n</feedback>" in _results(state)[1]


class _GatedChannel:
    def __init__(self) -> None:
        self.gate = asyncio.Event()

    def publish(self, message) -> None:
        pass

    async def wait_for_answer(self, message) -> Answered:
        await self.gate.wait()
        return Answered(response=AskResponse.NO_BUTTON)


@pytest.mark.asyncio
async def test_pending_edit_can_be_reverted_while_awaiting_approval(state, workspace) -> None:
    channel = _GatedChannel()
    executor = WorkspaceToolExecutor(
        state, MessageService(state, channel), workspace_dir=workspace,
    )
    running = asyncio.create_task(
        executor.execute_tool(_tool("write_to_file", path="app.py", content="broken")),
    )
    await asyncio.sleep(0)

    assert executor.is_editing
    assert (workspace / "app.py").read_text(encoding="utf-8") == "broken"
    await executor.revert_changes()
    assert (workspace / "app.py").read_text(encoding="utf-8") == "value = 1\n"

    channel.gate.set()
    await running
    assert not executor.is_editing


@pytest.mark.asyncio
async def test_reading_binary_file_reports_tool_error(executor, state, messages, workspace) -> None:
    (workspace / "blob.bin").write_bytes(b"\xff\xfe\x00\x81")

    await executor.execute_tool(_tool("read_file", path="blob.bin"))

    assert state.limits.consecutive_mistake_count == 1
    assert messages.transcript[-1].kind == SayKind.ERROR.value
    assert _results(state)[0] == "[read_file for 'blob.bin'] Result:"
    assert "can't decode" in _results(state)[1]
