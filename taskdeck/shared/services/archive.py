"""Archive store. One JSON file per archived task.

Storage layout:
    ~/.taskdeck/archive/{task_id}.json

Writes go through atomic_write_json, so a task file is either fully
present or absent.
"""

from __future__ import annotations

import base64
import json
import logging
from pathlib import Path

from taskdeck.engine.errors import ArchiveIntegrity
from taskdeck.engine.models import ArchivedTask, Task
from taskdeck.shared.services.durable_write import atomic_write_json, unlink_durable

logger = logging.getLogger(__name__)


def _archived_to_dict(archived: ArchivedTask) -> dict:
    return {
        "task": archived.task.to_dict(),
        "history": base64.b64encode(archived.history).decode("ascii"),
        "sessionId": archived.session_id,
        "archivedAt": archived.archived_at,
    }


def _dict_to_archived(data: dict) -> ArchivedTask:
    return ArchivedTask(
        task=Task.from_dict(data["task"]),
        history=base64.b64decode(data.get("history") or ""),
        session_id=data.get("sessionId") or None,
        archived_at=str(data.get("archivedAt") or ""),
    )


class ArchiveStore:
    """Persists archived tasks outside the live registry."""

    def __init__(self, base_dir: Path) -> None:
        self._dir = Path(base_dir)

    def _path(self, task_id: str) -> Path:
        # Task ids never contain path separators; refuse anything that does.
        if not task_id or "/" in task_id or "\\" in task_id or task_id.startswith("."):
            raise ArchiveIntegrity(task_id, "has an invalid id")
        return self._dir / f"{task_id}.json"

    def save(self, archived: ArchivedTask) -> Path:
        path = self._path(archived.id)
        atomic_write_json(path, _archived_to_dict(archived))
        logger.info(
            "Archived task %s (%d history bytes) to %s",
            archived.id, len(archived.history), path,
        )
        return path

    def contains(self, task_id: str) -> bool:
        try:
            return self._path(task_id).exists()
        except ArchiveIntegrity:
            return False

    def get(self, task_id: str) -> ArchivedTask:
        """Load one archived task. Raises ArchiveIntegrity if missing or corrupt."""
        path = self._path(task_id)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError as exc:
            raise ArchiveIntegrity(task_id) from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise ArchiveIntegrity(task_id, f"is unreadable: {exc}") from exc
        try:
            return _dict_to_archived(data)
        except (KeyError, ValueError, TypeError) as exc:
            raise ArchiveIntegrity(task_id, f"is corrupt: {exc}") from exc

    def list(self) -> list[ArchivedTask]:
        """All archived tasks, most recently archived first. Corrupt files are skipped."""
        if not self._dir.exists():
            return []
        result: list[ArchivedTask] = []
        for path in self._dir.glob("*.json"):
            try:
                result.append(self.get(path.stem))
            except ArchiveIntegrity as exc:
                logger.warning("Skipping archive entry %s: %s", path.name, exc)
        result.sort(key=lambda a: a.archived_at, reverse=True)
        return result

    def summaries(self) -> list[dict]:
        return [a.summary() for a in self.list()]

    def delete(self, task_id: str) -> bool:
        """Remove an archived task. Returns False if it was not archived."""
        removed = unlink_durable(self._path(task_id))
        if removed:
            logger.info("Deleted archived task %s", task_id)
        return removed
