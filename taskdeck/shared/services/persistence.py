"""Live task persistence. Save and load the live registry across restarts.

Storage layout:
    ~/.taskdeck/tasks.json

Output history is stored base64 encoded so arbitrary terminal bytes
survive the JSON round trip unchanged.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from taskdeck.engine.models import Task, TaskState, WaitingInputType
from taskdeck.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


@dataclass
class PersistedTask:
    """A live task as written to disk."""
    task: Task
    history: bytes = b""
    session_id: str | None = None
    last_pid: int | None = None
    # Running state recorded while the task was disconnected.
    resume_state: TaskState | None = None
    resume_input_type: WaitingInputType | None = None

    def to_dict(self) -> dict:
        data = self.task.to_dict()
        data["history"] = base64.b64encode(self.history).decode("ascii")
        if self.session_id:
            data["sessionId"] = self.session_id
        if self.last_pid is not None:
            data["lastPid"] = self.last_pid
        if self.resume_state is not None:
            data["resumeState"] = self.resume_state.value
        if self.resume_input_type is not None:
            data["resumeInputType"] = self.resume_input_type.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> PersistedTask:
        resume_state = data.get("resumeState")
        resume_input = data.get("resumeInputType")
        return cls(
            task=Task.from_dict(data),
            history=base64.b64decode(data.get("history") or ""),
            session_id=data.get("sessionId") or None,
            last_pid=data.get("lastPid"),
            resume_state=TaskState(resume_state) if resume_state else None,
            resume_input_type=WaitingInputType(resume_input) if resume_input else None,
        )


class TaskPersistence:
    """Save and load live task records to a single JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, tasks: list[PersistedTask]) -> Path:
        data = {
            "version": FORMAT_VERSION,
            "savedAt": datetime.now(timezone.utc).isoformat(),
            "tasks": [t.to_dict() for t in tasks],
        }
        atomic_write_json(self._path, data)
        logger.debug("Saved %d live task(s) to %s", len(tasks), self._path)
        return self._path

    def load(self) -> list[PersistedTask]:
        """Load saved tasks. A missing or corrupt file yields an empty list."""
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable task file %s: %s", self._path, exc)
            return []

        result: list[PersistedTask] = []
        for raw in data.get("tasks", []):
            try:
                result.append(PersistedTask.from_dict(raw))
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning(
                    "Skipping corrupt task record %r in %s: %s",
                    raw.get("id") if isinstance(raw, dict) else raw, self._path, exc,
                )
        logger.info("Loaded %d live task(s) from %s", len(result), self._path)
        return result
