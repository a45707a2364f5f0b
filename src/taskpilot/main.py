"""CLI entrypoint for taskpilot."""

import logging
from pathlib import Path

import rich_click as click

from taskpilot import __version__
from taskpilot.orchestrator.controllers import (
    TaskCliController,
    TaskListCommand,
    TaskRunCommand,
    TaskShowCommand,
)

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="taskpilot")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def taskpilot(log_level: str) -> None:
    """Interactive coding agent task runner."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskpilot.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--prompt", required=True, help="Task description for the agent.")
@click.option(
    "--script",
    "script_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Replay model turns from a JSON script instead of calling the remote model.",
)
@click.option(
    "--workspace",
    "workspace_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace directory the tools operate in.",
)
@click.option(
    "--auto-approve/--no-auto-approve",
    default=None,
    help="Approve tool calls without prompting (bounded by --max-requests).",
)
@click.option(
    "--max-requests",
    type=click.IntRange(min=1),
    default=None,
    help="Auto-approved requests before the operator is asked to continue.",
)
@click.option(
    "--yes",
    "assume_yes",
    is_flag=True,
    default=False,
    help="Answer every operator prompt with yes (non-interactive runs).",
)
def run_task(
    db_path: Path | None,
    prompt: str,
    script_path: Path | None,
    workspace_dir: Path | None,
    auto_approve: bool | None,
    max_requests: int | None,
    assume_yes: bool,
) -> None:
    """Run one agent task until it completes or the loop ends."""

    try:
        lines = TASK_CONTROLLER.run_task(
            TaskRunCommand(
                db_path=db_path,
                prompt=prompt,
                script_path=script_path,
                workspace_dir=workspace_dir,
                auto_approve=auto_approve,
                max_requests=max_requests,
                assume_yes=assume_yes,
            ),
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    _emit_lines(lines)


@taskpilot.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Maximum number of tasks to display.",
)
def list_tasks(db_path: Path | None, limit: int) -> None:
    """List stored tasks, newest first."""

    _emit_lines(TASK_CONTROLLER.list_tasks(TaskListCommand(db_path=db_path, limit=limit)))


@taskpilot.command("show")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--transcript",
    "show_transcript",
    is_flag=True,
    default=False,
    help="Also print the operator transcript.",
)
def show_task(task_id: str, db_path: Path | None, show_transcript: bool) -> None:
    """Show one task with its conversation history."""

    _emit_lines(
        TASK_CONTROLLER.show_task(
            TaskShowCommand(db_path=db_path, task_id=task_id, show_transcript=show_transcript),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskpilot()
