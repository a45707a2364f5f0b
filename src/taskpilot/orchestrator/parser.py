"""Incremental parser turning streamed assistant text into content blocks.

Grammar::

    message   := (text | tool_use)*
    tool_use  := "<" NAME ">" (param | ws)* "</" NAME ">"
    param     := "<" PARAM ">" value "</" PARAM ">"
    text      := any characters not starting a known tool open tag

NAME ranges over the configured tool names and PARAM over the configured
parameter names. A tool or parameter left open at the end of the input
yields a partial block. Finalized blocks are kept together with the offset
where unfinished parsing resumes, so feeding a growing prefix never parses a
finalized block twice.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from taskpilot.orchestrator.models import ContentBlock, TextContent, ToolUseContent

DEFAULT_TOOL_NAMES: tuple[str, ...] = (
    "execute_command",
    "read_file",
    "write_to_file",
    "replace_in_file",
    "search_files",
    "list_files",
    "ask_followup_question",
    "attempt_completion",
)
DEFAULT_PARAM_NAMES: tuple[str, ...] = (
    "command",
    "requires_approval",
    "path",
    "content",
    "diff",
    "regex",
    "file_pattern",
    "recursive",
    "question",
    "options",
    "result",
)

_PARTIAL_TAG_TAIL = re.compile(r"\s*</?[A-Za-z_]*$")


def _alternation(names: Iterable[str]) -> re.Pattern[str]:
    ordered = sorted({name for name in names if name}, key=len, reverse=True)
    if not ordered:
        return re.compile(r"(?!)")
    return re.compile("<(" + "|".join(re.escape(name) for name in ordered) + ")>")


class AssistantMessageParser:
    """Restartable parser over a growing assistant text accumulator."""

    def __init__(
        self,
        tool_names: Iterable[str] = DEFAULT_TOOL_NAMES,
        param_names: Iterable[str] = DEFAULT_PARAM_NAMES,
    ) -> None:
        self._tool_open = _alternation(tool_names)
        self._param_open = _alternation(param_names)
        self.reset()

    def reset(self) -> None:
        self._finalized: list[ContentBlock] = []
        self._offset = 0
        self._consumed = ""

    @property
    def finalized_count(self) -> int:
        return len(self._finalized)

    @property
    def offset(self) -> int:
        return self._offset

    def parse(self, text: str, *, final: bool = False) -> list[ContentBlock]:
        """Parse `text`, reusing finalized blocks when it extends the last input."""

        if not text.startswith(self._consumed):
            self.reset()

        pending = self._scan(text)
        if final:
            for block in pending:
                block.partial = False
        return [*self._finalized, *pending]

    def _scan(self, text: str) -> list[ContentBlock]:
        pos = self._offset
        while True:
            match = self._tool_open.search(text, pos)
            if match is None:
                trailing = text[pos:].strip()
                return [TextContent(content=trailing, partial=True)] if trailing else []

            leading = text[pos : match.start()].strip()
            if leading:
                self._finalize(TextContent(content=leading, partial=False), match.start(), text)

            name = match.group(1)
            params, end = self._parse_tool_body(text, match.end(), name)
            if end is None:
                return [ToolUseContent(name=name, params=params, partial=True)]
            self._finalize(ToolUseContent(name=name, params=params, partial=False), end, text)
            pos = end

    def _finalize(self, block: ContentBlock, offset: int, text: str) -> None:
        self._finalized.append(block)
        self._offset = offset
        self._consumed = text[:offset]

    def _parse_tool_body(
        self,
        text: str,
        start: int,
        name: str,
    ) -> tuple[dict[str, str], int | None]:
        """Collect params of one tool; `None` end means the tool is still open."""

        params: dict[str, str] = {}
        close_tag = f"</{name}>"
        pos = start
        while True:
            next_param = self._param_open.search(text, pos)
            close_at = text.find(close_tag, pos)
            if close_at != -1 and (next_param is None or close_at < next_param.start()):
                return params, close_at + len(close_tag)
            if next_param is None:
                return params, None

            param = next_param.group(1)
            param_close = f"</{param}>"
            value_start = next_param.end()
            value_end = text.find(param_close, value_start)
            if value_end == -1:
                params[param] = _PARTIAL_TAG_TAIL.sub("", text[value_start:]).strip()
                return params, None
            params[param] = text[value_start:value_end].strip()
            pos = value_end + len(param_close)


def parse_assistant_message(
    text: str,
    *,
    tool_names: Iterable[str] = DEFAULT_TOOL_NAMES,
    param_names: Iterable[str] = DEFAULT_PARAM_NAMES,
) -> list[ContentBlock]:
    """One-shot parse of a complete or partial assistant message."""

    return AssistantMessageParser(tool_names, param_names).parse(text)
