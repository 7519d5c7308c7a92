"""TaskDeck engine: task lifecycle, process supervision and reconnect."""
from .models import (
    ArchivedTask,
    Task,
    TaskGitState,
    TaskState,
    WaitingInputType,
    Workspace,
)
from .config import DeckConfig
from .errors import (
    ArchiveIntegrity,
    CliNotInstalled,
    InvalidRequest,
    InvalidStateTransition,
    ProcessLost,
    RevertPrecondition,
    SpawnFailure,
    TaskDeckError,
    TaskNotFound,
    WorkspaceError,
)

__all__ = [
    # Core (lazy import to avoid circular deps)
    "TaskRegistry",
    "ReconnectController",
    "ProcessSupervisor",
    "GitCheckpointTracker",
    # Models
    "ArchivedTask",
    "Task",
    "TaskGitState",
    "TaskState",
    "WaitingInputType",
    "Workspace",
    # Config
    "DeckConfig",
    "load_yaml_config",
    # Errors
    "ArchiveIntegrity",
    "CliNotInstalled",
    "InvalidRequest",
    "InvalidStateTransition",
    "ProcessLost",
    "RevertPrecondition",
    "SpawnFailure",
    "TaskDeckError",
    "TaskNotFound",
    "WorkspaceError",
]


def __getattr__(name: str):
    if name == "TaskRegistry":
        from .registry import TaskRegistry
        return TaskRegistry
    if name == "ReconnectController":
        from .reconnect import ReconnectController
        return ReconnectController
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "GitCheckpointTracker":
        from .git_checkpoint import GitCheckpointTracker
        return GitCheckpointTracker
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
