"""Formatted notices injected into conversation history and prompts."""

from __future__ import annotations

from collections.abc import Sequence

from taskpilot.orchestrator.models import ImagePart, MessagePart, TextPart

INTERRUPTED_BY_USER = "[Response interrupted by user]"
INTERRUPTED_BY_FEEDBACK = "[Response interrupted by user feedback]"
INTERRUPTED_BY_TOOL_USE = (
    "[Response interrupted by a tool use result. Only one tool may be used at a time "
    "and should be placed at the end of the message.]"
)
INTERRUPTED_BY_API_ERROR = "[Response interrupted by API Error]"
NO_RESPONSE_FAILURE = "Failure: I did not provide a response."
EMPTY_RESPONSE_ASK = "No assistant message was received. Would you like to retry the request?"
CONTEXT_WINDOW_RETRY_MESSAGE = (
    "Context window exceeded. Click retry to truncate the conversation and try again."
)
REDACTED_THINKING_PLACEHOLDER = "[Extended thinking in progress...]"
REQUEST_LOADING_SUFFIX = "Loading..."

_TOOL_USE_REMINDER = """# Reminder: Instructions for Tool Use

Tool uses are formatted using XML-style tags. The tool name is enclosed in
opening and closing tags, and each parameter is similarly enclosed within its
own set of tags:

<tool_name>
<parameter1_name>value1</parameter1_name>
</tool_name>

Always adhere to this format for all tool uses."""


def with_interruption(text: str, marker: str) -> str:
    """Append an interruption marker to partial assistant text."""

    return f"{text}\n\n{marker}"


def no_tools_used() -> str:
    return (
        "[ERROR] You did not use a tool in your previous response! "
        "Please retry with a tool use.\n\n"
        f"{_TOOL_USE_REMINDER}\n\n"
        "# Next Steps\n\n"
        "If you have completed the task, use the attempt_completion tool. "
        "If you need more information, use ask_followup_question. "
        "Otherwise proceed with the next step of the task.\n"
        "(This is an automated message, so do not respond to it conversationally.)"
    )


def too_many_mistakes(feedback: str | None) -> str:
    return (
        "You seem to be having trouble proceeding. "
        "The user has provided the following feedback to help guide you:\n"
        f"<feedback>\n{feedback or ''}\n</feedback>"
    )


def auto_approval_max_reached(feedback: str | None) -> str:
    return (
        "The auto-approval request limit was reached and the user reviewed progress. "
        "The user has provided the following feedback:\n"
        f"<feedback>\n{feedback or ''}\n</feedback>"
    )


def summarize_task() -> str:
    return (
        "The conversation is approaching the model context window. "
        "Write a detailed summary of the work so far: the original task, "
        "key decisions, files touched, and the remaining next steps. "
        "Respond only with the summary."
    )


def context_truncation_notice() -> str:
    return (
        "[NOTE] Some previous conversation history with the user has been removed "
        "to maintain optimal context window length. The initial user task has been "
        "retained for continuity, while intermediate conversation history has been "
        "removed. Keep this in mind as you continue assisting the user."
    )


def task_text(task: str) -> str:
    return f"<task>\n{task}\n</task>"


def feedback_content(
    text: str,
    *,
    images: Sequence[str] = (),
    files: Sequence[str] = (),
) -> list[MessagePart]:
    """Build user content for a feedback answer with attached media."""

    content: list[MessagePart] = [TextPart(text=text)]
    if files:
        listing = "\n".join(f"- {path}" for path in files)
        content.append(TextPart(text=f"<files>\n{listing}\n</files>"))
    content.extend(ImagePart(source=image) for image in images)
    return content


def request_preview(content: Sequence[MessagePart], *, loading: bool = True) -> str:
    """Operator-visible text of an outgoing request."""

    texts = [part.text for part in content if isinstance(part, TextPart)]
    if loading:
        texts.append(REQUEST_LOADING_SUFFIX)
    return "\n\n".join(texts)
