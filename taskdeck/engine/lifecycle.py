"""Task lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidStateTransition rather than silently proceeding.

State Diagram:

    IDLE ──> STARTING ──> BUSY <──> WAITING_INPUT
                │           │             │
                │           ├──> EXITED   ├──> EXITED
                │           └──> INTERRUPTED
                └──> EXITED (spawn failure)

    STARTING/BUSY/WAITING_INPUT/IDLE ──> DISCONNECTED
    DISCONNECTED ──> STARTING | BUSY | WAITING_INPUT   (reconnect)
    EXITED/INTERRUPTED/DISCONNECTED/IDLE ──> ARCHIVED  (leaves the live registry)
"""
from __future__ import annotations

from .errors import InvalidStateTransition
from .models import TaskState

VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.IDLE: {
        TaskState.STARTING,
        TaskState.DISCONNECTED,
        TaskState.ARCHIVED,
    },
    TaskState.STARTING: {
        TaskState.BUSY,
        TaskState.EXITED,
        TaskState.DISCONNECTED,
    },
    TaskState.BUSY: {
        TaskState.WAITING_INPUT,
        TaskState.EXITED,
        TaskState.DISCONNECTED,
        TaskState.INTERRUPTED,
    },
    TaskState.WAITING_INPUT: {
        TaskState.BUSY,
        TaskState.EXITED,
        TaskState.DISCONNECTED,
        TaskState.INTERRUPTED,
    },
    TaskState.DISCONNECTED: {
        TaskState.STARTING,
        TaskState.BUSY,
        TaskState.WAITING_INPUT,
        TaskState.ARCHIVED,
    },
    TaskState.EXITED: {
        TaskState.ARCHIVED,
    },
    TaskState.INTERRUPTED: {
        TaskState.ARCHIVED,
    },
    TaskState.ARCHIVED: set(),
}


def can_transition(current: TaskState, target: TaskState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(current: TaskState, target: TaskState) -> None:
    """Validate a state transition. Raises InvalidStateTransition if invalid."""
    if can_transition(current, target):
        return
    allowed = VALID_TRANSITIONS.get(current, set())
    allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
    raise InvalidStateTransition(
        current.value,
        target.value,
        f"Invalid state transition: {current.value} -> {target.value}. "
        f"Allowed from {current.value}: {allowed_str}",
    )
