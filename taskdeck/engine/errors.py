"""Exception hierarchy for the task engine.

Every error carries a stable ``code`` so transports can surface it
without leaking Python class names. Process-level failures are usually
recovered into state transitions; these exceptions are what remains for
the caller.
"""
from __future__ import annotations

from typing import Any


class TaskDeckError(Exception):
    """Base exception for all task engine errors."""
    code = "taskdeck_error"


class SpawnFailure(TaskDeckError):
    """The external CLI process could not be started."""
    code = "spawn_failure"

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn '{command}': {reason}")


class InvalidStateTransition(TaskDeckError):
    """Operation is not valid for the task's current state."""
    code = "invalid_state_transition"

    def __init__(self, current: str, requested: str, message: str | None = None):
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot {requested} a task in state {current}"
        )


class ProcessLost(TaskDeckError):
    """The backing process crashed or disappeared."""
    code = "process_lost"

    def __init__(self, task_id: str, returncode: int | None = None):
        self.task_id = task_id
        self.returncode = returncode
        super().__init__(
            f"Process for task {task_id} was lost (returncode={returncode})"
        )


class RevertPrecondition(TaskDeckError):
    """A git revert was refused because a precondition does not hold."""
    code = "revert_precondition"


class ArchiveIntegrity(TaskDeckError):
    """Archived task is missing or unreadable."""
    code = "archive_integrity"

    def __init__(self, task_id: str, reason: str = "not found in archive"):
        self.task_id = task_id
        super().__init__(f"Archived task {task_id} {reason}")


class TaskNotFound(TaskDeckError):
    code = "task_not_found"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class WorkspaceError(TaskDeckError):
    """Workspace path invalid, duplicated, unknown or still in use."""
    code = "workspace_error"


class InvalidRequest(TaskDeckError):
    """A request is missing required fields or names an unknown action."""
    code = "invalid_request"


class CliNotInstalled(TaskDeckError):
    """The external CLI is not available on this machine."""
    code = "cli_not_installed"


def error_payload(exc: BaseException) -> dict[str, Any]:
    """Build the ``error`` event payload for an exception."""
    if isinstance(exc, TaskDeckError):
        return {"message": str(exc), "code": exc.code}
    return {
        "message": str(exc) or type(exc).__name__,
        "code": "internal_error",
        "originalType": type(exc).__name__,
    }
