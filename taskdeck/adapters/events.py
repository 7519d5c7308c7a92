"""Event types published by the task engine.

Each event is a typed dataclass; ``to_message()`` produces the wire
envelope ``{type, payload}`` with camelCase payload keys.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class DeckEvent:
    """Base event. Subclasses set ``event_type`` and add payload fields."""
    event_type: str = ""

    def payload(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for name in self.__dataclass_fields__:
            if name == "event_type":
                continue
            value = getattr(self, name)
            if value is not None:
                data[_camel(name)] = value
        return data

    def to_message(self) -> dict[str, Any]:
        return {"type": self.event_type, "payload": self.payload()}


# ── Task events ───────────────────────────────────────────────────


@dataclass
class TaskCreated(DeckEvent):
    event_type: str = "task:created"
    task: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return dict(self.task)


@dataclass
class TaskStateChanged(DeckEvent):
    event_type: str = "task:stateChanged"
    task_id: str = ""
    state: str = ""
    previous_state: str = ""
    waiting_input_type: str | None = None
    task: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskOutput(DeckEvent):
    event_type: str = "task:output"
    task_id: str = ""
    data: str = ""


@dataclass
class TaskRestore(DeckEvent):
    """Full buffered history, sent to one observer on select."""
    event_type: str = "task:restore"
    task_id: str = ""
    history: str = ""
    state: str = ""


@dataclass
class TaskDestroyed(DeckEvent):
    event_type: str = "task:destroyed"
    task_id: str = ""


@dataclass
class TaskWaitingInput(DeckEvent):
    event_type: str = "task:waitingInput"
    task_id: str = ""
    input_type: str = ""
    recent_output: str | None = None


@dataclass
class TasksUpdated(DeckEvent):
    event_type: str = "tasks:updated"
    tasks: list[dict[str, Any]] = field(default_factory=list)


# ── Workspace / archive events ────────────────────────────────────


@dataclass
class WorkspaceCreated(DeckEvent):
    event_type: str = "workspace:created"
    workspace: dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkspaceDeleted(DeckEvent):
    event_type: str = "workspace:deleted"
    workspace_id: str = ""


@dataclass
class WorkspacesReordered(DeckEvent):
    event_type: str = "workspace:reordered"
    workspaces: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ArchiveUpdated(DeckEvent):
    event_type: str = "archive:updated"
    archived: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ErrorEvent(DeckEvent):
    event_type: str = "error"
    message: str = ""
    code: str = "internal_error"
    original_type: str | None = None
    task_id: str | None = None
    action: str | None = None

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        task_id: str | None = None,
        action: str | None = None,
    ) -> ErrorEvent:
        return cls(
            message=payload.get("message", ""),
            code=payload.get("code", "internal_error"),
            original_type=payload.get("originalType"),
            task_id=task_id,
            action=action,
        )


@dataclass
class InitSnapshot(DeckEvent):
    """Full state, always the first message an observer receives."""
    event_type: str = "init"
    tasks: list[dict[str, Any]] = field(default_factory=list)
    workspaces: list[dict[str, Any]] = field(default_factory=list)
    archived: list[dict[str, Any]] = field(default_factory=list)
    cli_status: dict[str, Any] | None = None


# ── Direct replies ────────────────────────────────────────────────


@dataclass
class RevertResult(DeckEvent):
    event_type: str = "task:revertResult"
    task_id: str = ""
    success: bool = False
    files_reverted: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class ArchivedList(DeckEvent):
    event_type: str = "task:archived:list"
    archived: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ArchivedRestored(DeckEvent):
    event_type: str = "task:archived:restored"
    task: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return dict(self.task)


@dataclass
class ArchivedContinued(DeckEvent):
    event_type: str = "task:archived:continued"
    task: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return dict(self.task)


@dataclass
class ArchivedDeleted(DeckEvent):
    event_type: str = "task:archived:deleted"
    task_id: str = ""
