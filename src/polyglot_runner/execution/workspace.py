from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

_PREFIX = "polyglot-"


@dataclass(slots=True)
class Workspace:
    """Isolated directory owned by exactly one execution request.

    Example:
        ```python
        ws = Workspace(id="3f2a", root_dir=Path("/tmp/polyglot-3f2a-x1"))
        ```
    """

    id: str
    root_dir: Path
    source_path: Path | None = None
    artifact_path: Path | None = None


class WorkspaceManager:
    """Allocate, populate and destroy per-request workspaces.

    Directory names come from `tempfile.mkdtemp`, which creates them
    atomically, so concurrent requests never share a path.

    Example:
        ```python
        manager = WorkspaceManager()
        with manager.acquire("3f2a") as ws:
            manager.write_source(ws, "print(1)", "main.py")
        ```
    """

    def __init__(
        self,
        base_dir: str | Path | None = None,
        *,
        owner: tuple[int, int] | None = None,
    ) -> None:
        """Configure where workspaces live and who owns them.

        `owner` is the `(uid, gid)` the child processes run as; workspaces
        are handed over to it so an unprivileged compiler can write artifacts.

        Example:
            ```python
            manager = WorkspaceManager("/var/tmp/polyglot", owner=(65534, 65534))
            ```
        """
        self._base_dir = Path(base_dir).expanduser() if base_dir else None
        self._owner = owner

    def create(self, request_id: str) -> Workspace:
        """Create a fresh, uniquely named workspace directory.

        Example:
            ```python
            ws = manager.create("3f2a")
            ```
        """
        if self._base_dir is not None:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        root = Path(
            tempfile.mkdtemp(
                prefix=f"{_PREFIX}{request_id[:12]}-",
                dir=str(self._base_dir) if self._base_dir else None,
            )
        )
        try:
            self._hand_over(root)
        except BaseException:
            shutil.rmtree(root, ignore_errors=True)
            raise
        logger.debug("Created workspace %s for request %s", root, request_id)
        return Workspace(id=root.name, root_dir=root)

    def write_source(self, workspace: Workspace, content: str, filename: str) -> Path:
        """Write the submitted source into the workspace.

        Example:
            ```python
            path = manager.write_source(ws, "print(1)", "main.py")
            ```
        """
        if not filename or Path(filename).name != filename or filename in {".", ".."}:
            raise ValueError(f"Invalid source filename: {filename!r}")
        path = workspace.root_dir / filename
        path.write_text(content, encoding="utf-8")
        self._hand_over(path)
        workspace.source_path = path
        return path

    def destroy(self, workspace: Workspace) -> None:
        """Remove the workspace and everything in it, never raising.

        Example:
            ```python
            manager.destroy(ws)
            ```
        """
        try:
            shutil.rmtree(workspace.root_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove workspace %s: %s", workspace.root_dir, exc)
        else:
            logger.debug("Removed workspace %s", workspace.root_dir)

    @contextlib.contextmanager
    def acquire(self, request_id: str) -> Iterator[Workspace]:
        """Yield a workspace that is destroyed on every exit path.

        Example:
            ```python
            with manager.acquire("3f2a") as ws:
                ...
            ```
        """
        workspace = self.create(request_id)
        try:
            yield workspace
        finally:
            self.destroy(workspace)

    def _hand_over(self, path: Path) -> None:
        """Give `path` to the unprivileged owner, if one is configured.

        Example:
            ```python
            manager._hand_over(Path("/tmp/polyglot-3f2a-x1"))
            ```
        """
        if self._owner is None:
            return
        uid, gid = self._owner
        os.chown(path, uid, gid)
