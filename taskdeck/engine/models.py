"""Core data models for the task engine.

All dataclasses and enums shared by the registry, the archive and the
transport. Single source of truth to avoid circular imports.

Wire format is camelCase (``to_dict``/``from_dict``); attribute names stay
snake_case.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class TaskState(str, Enum):
    """Task lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    STARTING = "starting"
    BUSY = "busy"
    WAITING_INPUT = "waiting_input"
    EXITED = "exited"
    DISCONNECTED = "disconnected"
    INTERRUPTED = "interrupted"
    ARCHIVED = "archived"


# States in which a backing process is expected to be running.
RUNNING_STATES = frozenset({
    TaskState.STARTING,
    TaskState.BUSY,
    TaskState.WAITING_INPUT,
})


class WaitingInputType(str, Enum):
    """What kind of input the external CLI is waiting for."""
    QUESTION = "question"
    PERMISSION = "permission"
    TEXT_INPUT = "text_input"
    CONFIRMATION = "confirmation"


def make_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return _utcnow()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return _utcnow()


@dataclass
class TaskGitState:
    """Source-control checkpoint bracketing a task."""
    commit_before: str
    uncommitted_before: bool = False
    commit_after: str | None = None
    files_modified: list[str] = field(default_factory=list)
    can_revert: bool = False
    reverted_at: str | None = None
    # Hash of `git status --porcelain` + `git diff HEAD` taken by captureAfter.
    tree_fingerprint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "commitBefore": self.commit_before,
            "uncommittedBefore": self.uncommitted_before,
            "filesModified": list(self.files_modified),
            "canRevert": self.can_revert,
        }
        if self.commit_after is not None:
            data["commitAfter"] = self.commit_after
        if self.reverted_at is not None:
            data["revertedAt"] = self.reverted_at
        if self.tree_fingerprint is not None:
            data["treeFingerprint"] = self.tree_fingerprint
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskGitState:
        return cls(
            commit_before=str(data.get("commitBefore") or ""),
            uncommitted_before=bool(data.get("uncommittedBefore", False)),
            commit_after=data.get("commitAfter") or None,
            files_modified=list(data.get("filesModified") or []),
            can_revert=bool(data.get("canRevert", False)),
            reverted_at=data.get("revertedAt") or None,
            tree_fingerprint=data.get("treeFingerprint") or None,
        )


@dataclass
class Task:
    """Unit of work bound to one external CLI process over its lifetime."""
    id: str
    prompt: str
    workspace_id: str
    state: TaskState = TaskState.STARTING
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    waiting_input_type: WaitingInputType | None = None
    system_prompt: str | None = None
    git_state: TaskGitState | None = None
    # Incremented every time a fresh process is spawned for this task.
    attempt: int = 1
    # Set when the task ended because the process could not be spawned.
    error: dict[str, Any] | None = None

    def touch(self) -> None:
        self.last_activity = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "prompt": self.prompt,
            "state": self.state.value,
            "workspaceId": self.workspace_id,
            "createdAt": _iso(self.created_at),
            "lastActivity": _iso(self.last_activity),
            "attempt": self.attempt,
        }
        if self.waiting_input_type is not None:
            data["waitingInputType"] = self.waiting_input_type.value
        if self.system_prompt:
            data["systemPrompt"] = self.system_prompt
        if self.git_state is not None:
            data["gitState"] = self.git_state.to_dict()
        if self.error is not None:
            data["error"] = dict(self.error)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        try:
            state = TaskState(data.get("state", TaskState.IDLE.value))
        except ValueError:
            state = TaskState.IDLE
        waiting = data.get("waitingInputType")
        git_state = data.get("gitState")
        return cls(
            id=str(data["id"]),
            prompt=str(data.get("prompt", "")),
            workspace_id=str(data.get("workspaceId", "")),
            state=state,
            created_at=_parse_dt(data.get("createdAt")),
            last_activity=_parse_dt(data.get("lastActivity")),
            waiting_input_type=WaitingInputType(waiting) if waiting else None,
            system_prompt=data.get("systemPrompt") or None,
            git_state=TaskGitState.from_dict(git_state) if git_state else None,
            attempt=int(data.get("attempt", 1) or 1),
            error=data.get("error") or None,
        )


@dataclass
class Workspace:
    """A filesystem root that tasks execute inside. ``id`` is the path."""
    id: str
    name: str
    created_at: str = field(default_factory=lambda: _utcnow().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Workspace:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            created_at=str(data.get("createdAt") or _utcnow().isoformat()),
        )


@dataclass
class ArchivedTask:
    """A task snapshot plus its full output history, stored off the live registry."""
    task: Task
    history: bytes = b""
    session_id: str | None = None
    archived_at: str = field(default_factory=lambda: _utcnow().isoformat())

    @property
    def id(self) -> str:
        return self.task.id

    def summary(self) -> dict[str, Any]:
        """Wire form without the (potentially large) output history."""
        data = self.task.to_dict()
        data["state"] = TaskState.ARCHIVED.value
        data["archivedAt"] = self.archived_at
        return data
