"""Workspace registry. Filesystem roots that tasks run inside.

Storage layout:
    ~/.taskdeck/workspaces.json

A workspace id is its resolved absolute path. Order is user defined and
preserved across restarts.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from taskdeck.engine.errors import WorkspaceError
from taskdeck.engine.models import Workspace
from taskdeck.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)


class WorkspaceRegistry:
    """Ordered set of workspaces, persisted on every mutation."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._workspaces: list[Workspace] = []

    def load(self) -> list[Workspace]:
        """Load from disk, dropping workspaces whose directory no longer exists."""
        self._workspaces = []
        if self._path is None or not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable workspace file %s: %s", self._path, exc)
            return []

        dropped = 0
        for raw in data.get("workspaces", []):
            try:
                ws = Workspace.from_dict(raw)
            except (KeyError, TypeError) as exc:
                logger.warning("Skipping corrupt workspace entry %r: %s", raw, exc)
                continue
            if not Path(ws.id).is_dir():
                dropped += 1
                logger.info("Dropping workspace %s: directory no longer exists", ws.id)
                continue
            if self._find(ws.id) is None:
                self._workspaces.append(ws)
        if dropped:
            self._save()
        logger.info("Loaded %d workspace(s) from %s", len(self._workspaces), self._path)
        return self.list()

    def _save(self) -> None:
        if self._path is None:
            return
        atomic_write_json(
            self._path, {"workspaces": [ws.to_dict() for ws in self._workspaces]}
        )

    def _find(self, workspace_id: str) -> Workspace | None:
        for ws in self._workspaces:
            if ws.id == workspace_id:
                return ws
        return None

    def list(self) -> list[Workspace]:
        return list(self._workspaces)

    def to_dicts(self) -> list[dict]:
        return [ws.to_dict() for ws in self._workspaces]

    def get(self, workspace_id: str) -> Workspace:
        ws = self._find(workspace_id)
        if ws is None:
            raise WorkspaceError(f"Unknown workspace: {workspace_id}")
        return ws

    def add(self, path: str, name: str | None = None) -> Workspace:
        """Register a directory. Raises WorkspaceError if invalid or a duplicate."""
        if not path or not str(path).strip():
            raise WorkspaceError("Workspace path is required")
        resolved = Path(str(path).strip()).expanduser().resolve()
        if not resolved.exists():
            raise WorkspaceError(f"Path does not exist: {resolved}")
        if not resolved.is_dir():
            raise WorkspaceError(f"Path is not a directory: {resolved}")
        workspace_id = str(resolved)
        if self._find(workspace_id) is not None:
            raise WorkspaceError(f"Workspace already exists: {workspace_id}")

        ws = Workspace(id=workspace_id, name=name or resolved.name or workspace_id)
        self._workspaces.append(ws)
        self._save()
        logger.info("Added workspace %s", workspace_id)
        return ws

    def remove(self, workspace_id: str, live_tasks: int = 0) -> Workspace:
        """Delete a workspace. Refused while ``live_tasks`` reference it."""
        ws = self.get(workspace_id)
        if live_tasks:
            raise WorkspaceError(
                f"Workspace {workspace_id} still has {live_tasks} live task(s)"
            )
        self._workspaces.remove(ws)
        self._save()
        logger.info("Removed workspace %s", workspace_id)
        return ws

    def reorder(self, from_index: int, to_index: int) -> list[Workspace]:
        count = len(self._workspaces)
        if not (0 <= from_index < count and 0 <= to_index < count):
            raise WorkspaceError(
                f"Invalid reorder {from_index} -> {to_index} for {count} workspace(s)"
            )
        ws = self._workspaces.pop(from_index)
        self._workspaces.insert(to_index, ws)
        self._save()
        return self.list()
