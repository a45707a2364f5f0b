"""Workspace-backed context builder and checkpoint mechanism."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from taskpilot.orchestrator.errors import CheckpointInitializationError
from taskpilot.orchestrator.models import LoadedContext, MessagePart

logger = logging.getLogger(__name__)

DEFAULT_MAX_LISTED_FILES = 200
_SKIPPED_DIRS = frozenset({".git", ".hg", ".venv", "node_modules", "__pycache__", ".mypy_cache"})


def iter_workspace_files(root: Path):
    """Yield workspace files in a stable order, skipping VCS and cache dirs."""

    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(name for name in dirs if name not in _SKIPPED_DIRS)
        for name in sorted(files):
            yield Path(current) / name


class WorkspaceContextBuilder:
    """Appends environment details (time, working directory files) to user content."""

    def __init__(
        self,
        workspace_dir: Path,
        *,
        max_listed_files: int = DEFAULT_MAX_LISTED_FILES,
        clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
    ) -> None:
        self._workspace_dir = workspace_dir
        self._max_listed_files = max_listed_files
        self._clock = clock

    async def load_context(
        self,
        user_content: list[MessagePart],
        include_file_details: bool,
    ) -> LoadedContext:
        lines = ["<environment_details>", "# Current Time", self._clock().isoformat()]
        error_flag = False
        if include_file_details:
            root = self._workspace_dir.resolve()
            lines.append(f"\n# Current Working Directory ({root}) Files")
            try:
                listing = await asyncio.to_thread(self._list_files, root)
            except OSError as exc:
                logger.warning("Failed to list workspace %s: %s", root, exc)
                listing = ["(unable to list files)"]
                error_flag = True
            lines.extend(listing or ["(no files)"])
        lines.append("</environment_details>")
        return LoadedContext(
            content=list(user_content),
            environment_details="\n".join(lines),
            error_flag=error_flag,
        )

    def _list_files(self, root: Path) -> list[str]:
        listing: list[str] = []
        for path in iter_workspace_files(root):
            if len(listing) >= self._max_listed_files:
                listing.append(f"(file list truncated at {self._max_listed_files} entries)")
                break
            listing.append(str(path.relative_to(root)))
        return listing


class WorkspaceHashCheckpoint:
    """Checkpoint identified by a content hash of the workspace files."""

    def __init__(self, workspace_dir: Path) -> None:
        self._workspace_dir = workspace_dir

    async def initialize(self) -> None:
        if not self._workspace_dir.is_dir():
            raise CheckpointInitializationError(
                f"Workspace directory does not exist: {self._workspace_dir}",
            )

    async def commit(self) -> str | None:
        return await asyncio.to_thread(self._hash_workspace)

    def _hash_workspace(self) -> str:
        root = self._workspace_dir.resolve()
        digest = hashlib.sha1()  # noqa: S324
        for path in iter_workspace_files(root):
            digest.update(str(path.relative_to(root)).encode("utf-8"))
            try:
                digest.update(path.read_bytes())
            except OSError as exc:
                logger.debug("Skipping unreadable file %s: %s", path, exc)
        return digest.hexdigest()
