"""Reconnect/resume controller.

``disconnected`` covers two different conditions: the process is alive
but nobody is watching it, or the process is gone. The controller
resolves which one lazily on the next select, under the task's lock,
so concurrent selects make the re-attach/respawn decision exactly once.
"""
from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from .lifecycle import validate_transition
from .models import RUNNING_STATES, TaskState, WaitingInputType

if TYPE_CHECKING:
    from taskdeck.shared.services.persistence import PersistedTask

    from .registry import TaskRecord, TaskRegistry

logger = logging.getLogger(__name__)

REATTACHED = "reattached"
RESPAWNED = "respawned"
ATTACHED = "attached"


def _pid_alive(pid: int | None) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class ReconnectController:
    """Bridges lost observers and lost processes back to a live task."""

    def __init__(self, registry: TaskRegistry) -> None:
        self._registry = registry
        registry.reconnect = self

    def reconcile(self, persisted: list[PersistedTask]) -> list[str]:
        """Load tasks saved by a previous run.

        Running tasks have no process handle in this run, so they become
        ``disconnected``. Nothing is dropped and nothing is killed.
        """
        disconnected: list[str] = []
        for item in persisted:
            task = item.task
            if task.state == TaskState.ARCHIVED:
                logger.warning("Skipping persisted task %s in state archived", task.id)
                continue
            if task.state in RUNNING_STATES:
                validate_transition(task.state, TaskState.DISCONNECTED)
                item.resume_state = task.state
                item.resume_input_type = task.waiting_input_type
                task.state = TaskState.DISCONNECTED
                task.waiting_input_type = None
                disconnected.append(task.id)
                if _pid_alive(item.last_pid):
                    logger.warning(
                        "Task %s: process %d from a previous run is still alive; "
                        "leaving it running",
                        task.id, item.last_pid,
                    )
            self._registry.adopt(item)
        logger.info(
            "Reconciled %d persisted task(s), %d marked disconnected",
            len(persisted), len(disconnected),
        )
        return disconnected

    async def detach(self, task_id: str) -> bool:
        """Explicit disconnect: stop observing a running task without killing it."""
        async with self._registry.locked(task_id):
            record = self._registry.record(task_id)
            if record is None or record.task.state not in RUNNING_STATES:
                return False
            record.attended_by.clear()
            self._registry.mark_disconnected(record)
            return True

    async def observer_dropped(self, observer_id: str) -> list[str]:
        """Disconnect running tasks that were attended only by ``observer_id``."""
        detached: list[str] = []
        for record in self._registry.records():
            if observer_id not in record.attended_by:
                continue
            task_id = record.task.id
            async with self._registry.locked(task_id):
                current = self._registry.record(task_id)
                if current is None:
                    continue
                current.attended_by.discard(observer_id)
                if current.attended_by or current.task.state not in RUNNING_STATES:
                    continue
                self._registry.mark_disconnected(current)
                detached.append(task_id)
        if detached:
            logger.info(
                "Observer %s dropped; %d task(s) now disconnected",
                observer_id, len(detached),
            )
        return detached

    async def resume_locked(self, record: TaskRecord) -> str:
        """Resolve a select. The caller holds the task's lock.

        Returns ``reattached`` when a live process is picked up again,
        ``respawned`` when a fresh process was started and ``attached``
        when nothing needed to change.
        """
        task = record.task
        if task.state == TaskState.DISCONNECTED:
            handle = record.handle
            if handle is not None and handle.alive:
                target = record.resume_state or TaskState.BUSY
                if target not in RUNNING_STATES:
                    target = TaskState.BUSY
                input_type = None
                if target == TaskState.WAITING_INPUT:
                    input_type = record.resume_input_type or WaitingInputType.TEXT_INPUT
                record.resume_state = None
                record.resume_input_type = None
                task.error = None
                self._registry.transition(record, target, input_type)
                logger.info(
                    "Task %s: re-attached to live process %s", task.id, handle.handle_id
                )
                return REATTACHED
            logger.info("Task %s: process gone, respawning", task.id)
            await self._registry.respawn_locked(record)
            return RESPAWNED
        if task.state == TaskState.IDLE and record.handle is None:
            logger.info("Task %s: idle, starting a process", task.id)
            await self._registry.respawn_locked(record)
            return RESPAWNED
        return ATTACHED
