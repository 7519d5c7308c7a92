"""Task registry: the single authority over live tasks.

Owns every live Task record and drives its state machine. Every
mutation of a task happens while holding that task's lock, so at most
one operation per task id is in flight while different tasks proceed
independently. Supervisor events are pumped through the same lock,
which keeps state transitions and output in production order.
"""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable

from taskdeck.adapters.events import (
    ArchiveUpdated,
    DeckEvent,
    InitSnapshot,
    TaskCreated,
    TaskDestroyed,
    TaskOutput,
    TaskRestore,
    TaskStateChanged,
    TasksUpdated,
    TaskWaitingInput,
)
from taskdeck.shared.services.persistence import PersistedTask

from .errors import (
    CliNotInstalled,
    InvalidRequest,
    InvalidStateTransition,
    ProcessLost,
    RevertPrecondition,
    SpawnFailure,
    TaskNotFound,
    error_payload,
)
from .input_detection import filter_focus_events
from .lifecycle import validate_transition
from .models import (
    RUNNING_STATES,
    ArchivedTask,
    Task,
    TaskState,
    WaitingInputType,
    make_task_id,
)
from .output_history import OutputHistory
from .supervisor import (
    OutputChunk,
    ProcessExited,
    ProcessHandle,
    SessionIdDetected,
    WaitingForInput,
)

if TYPE_CHECKING:
    from taskdeck.shared.services.archive import ArchiveStore
    from taskdeck.shared.services.persistence import TaskPersistence
    from taskdeck.shared.services.workspaces import WorkspaceRegistry

    from .config import DeckConfig
    from .git_checkpoint import GitCheckpointTracker
    from .preflight import CliStatus
    from .reconnect import ReconnectController
    from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

PublishCallback = Callable[[DeckEvent], None]
SendCallback = Callable[[str, DeckEvent], bool]

# Hook notification_type -> what the CLI is waiting for.
NOTIFICATION_INPUT_TYPES: dict[str, WaitingInputType] = {
    "permission_prompt": WaitingInputType.PERMISSION,
    "elicitation_dialog": WaitingInputType.QUESTION,
    "idle_prompt": WaitingInputType.TEXT_INPUT,
}


@dataclass
class TaskRecord:
    """Registry-private state that travels with a live Task."""
    task: Task
    history: OutputHistory
    handle: ProcessHandle | None = None
    session_id: str | None = None
    # Observers that selected this task.
    attended_by: set[str] = field(default_factory=set)
    # Running state to return to when a disconnected task is re-attached.
    resume_state: TaskState | None = None
    resume_input_type: WaitingInputType | None = None
    pump: asyncio.Task | None = None
    last_pid: int | None = None


class TaskRegistry:
    """Creates, tracks and mutates live tasks."""

    def __init__(
        self,
        config: DeckConfig,
        supervisor: ProcessSupervisor,
        git: GitCheckpointTracker,
        workspaces: WorkspaceRegistry,
        archive: ArchiveStore,
        publish: PublishCallback | None = None,
        send: SendCallback | None = None,
        persistence: TaskPersistence | None = None,
        cli_status: CliStatus | None = None,
    ) -> None:
        self._config = config
        self._supervisor = supervisor
        self._git = git
        self._workspaces = workspaces
        self._archive = archive
        self._publish_cb = publish
        self._send_cb = send
        self._persistence = persistence
        self.cli_status = cli_status
        self.reconnect: ReconnectController | None = None
        self._records: dict[str, TaskRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders and waiters per lock; a lock is dropped at zero once its task is gone.
        self._lock_users: dict[str, int] = {}
        # CLI session id -> task id, for notification hooks.
        self._sessions: dict[str, str] = {}
        self._save_handle: asyncio.TimerHandle | None = None
        self._shutting_down = False

    # ── Wiring ────────────────────────────────────────────────────

    def set_callbacks(
        self,
        publish: PublishCallback | None = None,
        send: SendCallback | None = None,
    ) -> None:
        if publish is not None:
            self._publish_cb = publish
        if send is not None:
            self._send_cb = send

    def _publish(self, event: DeckEvent) -> None:
        if self._publish_cb is None:
            return
        try:
            self._publish_cb(event)
        except Exception:
            logger.exception("Publishing %s failed", event.event_type)

    def _send(self, observer_id: str | None, event: DeckEvent) -> bool:
        if observer_id is None or self._send_cb is None:
            return False
        return self._send_cb(observer_id, event)

    # ── Lookup ────────────────────────────────────────────────────

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[task_id] = lock
        return lock

    @contextlib.asynccontextmanager
    async def locked(self, task_id: str) -> AsyncIterator[None]:
        """Hold the per-task mutation gate."""
        lock = self._lock_for(task_id)
        self._lock_users[task_id] = self._lock_users.get(task_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users.pop(task_id) - 1
            if users:
                self._lock_users[task_id] = users
            elif task_id not in self._records:
                self._locks.pop(task_id, None)

    def _require(self, task_id: str) -> TaskRecord:
        record = self._records.get(task_id)
        if record is None:
            raise TaskNotFound(task_id)
        return record

    def record(self, task_id: str) -> TaskRecord | None:
        return self._records.get(task_id)

    def records(self) -> list[TaskRecord]:
        return list(self._records.values())

    def get(self, task_id: str) -> Task:
        return self._require(task_id).task

    def list_tasks(self) -> list[Task]:
        return sorted(
            (r.task for r in self._records.values()), key=lambda t: t.created_at
        )

    def history(self, task_id: str) -> bytes:
        return self._require(task_id).history.to_bytes()

    def tasks_in_workspace(self, workspace_id: str) -> int:
        return sum(
            1 for r in self._records.values() if r.task.workspace_id == workspace_id
        )

    def task_for_session(self, session_id: str) -> str | None:
        return self._sessions.get(session_id)

    def status(self, task_id: str) -> dict[str, Any]:
        record = self._require(task_id)
        handle = record.handle
        return {
            "taskId": task_id,
            "state": record.task.state.value,
            "waitingInputType": (
                record.task.waiting_input_type.value
                if record.task.waiting_input_type else None
            ),
            "attempt": record.task.attempt,
            "processId": handle.handle_id if handle else None,
            "pid": handle.pid if handle else record.last_pid,
            "alive": bool(handle and handle.alive),
            "sessionId": record.session_id,
            "historyBytes": record.history.size,
            "lastActivity": record.task.to_dict()["lastActivity"],
        }

    def snapshot(self) -> InitSnapshot:
        return InitSnapshot(
            tasks=[t.to_dict() for t in self.list_tasks()],
            workspaces=self._workspaces.to_dicts(),
            archived=self._archive.summaries(),
            cli_status=self.cli_status.to_dict() if self.cli_status else None,
        )

    def _publish_lists(self, archive: bool = False) -> None:
        self._publish(TasksUpdated(tasks=[t.to_dict() for t in self.list_tasks()]))
        if archive:
            self._publish(ArchiveUpdated(archived=self._archive.summaries()))

    # ── State machine ─────────────────────────────────────────────

    def transition(
        self,
        record: TaskRecord,
        new_state: TaskState,
        input_type: WaitingInputType | None = None,
    ) -> None:
        """Validate and apply a transition, then publish it. Caller holds the lock."""
        task = record.task
        previous = task.state
        validate_transition(previous, new_state)
        task.state = new_state
        if new_state == TaskState.WAITING_INPUT:
            task.waiting_input_type = input_type or WaitingInputType.TEXT_INPUT
        else:
            task.waiting_input_type = None
        task.touch()
        logger.info(
            "Task %s: %s -> %s%s",
            task.id, previous.value, new_state.value,
            f" ({task.waiting_input_type.value})" if task.waiting_input_type else "",
        )
        self._publish(TaskStateChanged(
            task_id=task.id,
            state=new_state.value,
            previous_state=previous.value,
            waiting_input_type=(
                task.waiting_input_type.value if task.waiting_input_type else None
            ),
            task=task.to_dict(),
        ))
        self._schedule_save()

    def mark_disconnected(self, record: TaskRecord) -> None:
        """Move a running task to ``disconnected``, remembering where it was."""
        task = record.task
        record.resume_state = task.state
        record.resume_input_type = task.waiting_input_type
        self.transition(record, TaskState.DISCONNECTED)

    def _index_session(self, record: TaskRecord, session_id: str | None) -> None:
        if not session_id:
            return
        record.session_id = session_id
        self._sessions[session_id] = record.task.id

    def _unindex_sessions(self, task_id: str) -> None:
        for sid in [s for s, t in self._sessions.items() if t == task_id]:
            del self._sessions[sid]

    # ── Process control ───────────────────────────────────────────

    async def _spawn_locked(
        self, record: TaskRecord, resume_session_id: str | None = None
    ) -> None:
        task = record.task
        try:
            handle = await self._supervisor.spawn(
                task.workspace_id,
                task.prompt,
                system_prompt=task.system_prompt,
                resume_session_id=resume_session_id,
                label=task.id,
            )
        except SpawnFailure as exc:
            logger.warning("Task %s: %s", task.id, exc)
            record.handle = None
            task.error = error_payload(exc)
            self.transition(record, TaskState.EXITED)
            return
        task.error = None
        record.handle = handle
        record.last_pid = handle.pid
        record.pump = asyncio.create_task(self._pump(task.id, handle))

    async def respawn_locked(self, record: TaskRecord) -> None:
        """Start a fresh process for an idle or dead-disconnected task."""
        validate_transition(record.task.state, TaskState.STARTING)
        record.handle = None
        record.resume_state = None
        record.resume_input_type = None
        record.task.attempt += 1
        self.transition(record, TaskState.STARTING)
        await self._spawn_locked(record, resume_session_id=record.session_id)

    async def _pump(self, task_id: str, handle: ProcessHandle) -> None:
        try:
            async for event in handle.events():
                await self._on_process_event(task_id, handle, event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Event pump for task %s failed", task_id)

    async def _on_process_event(self, task_id: str, handle: ProcessHandle, event: Any) -> None:
        async with self.locked(task_id):
            record = self._records.get(task_id)
            if record is None or record.handle is not handle:
                # Destroyed, archived or replaced by a respawn.
                return
            if isinstance(event, OutputChunk):
                self._on_output(record, event)
            elif isinstance(event, WaitingForInput):
                self._on_waiting(record, event.input_type, event.recent_output)
            elif isinstance(event, SessionIdDetected):
                self._index_session(record, event.session_id)
                logger.info("Task %s: CLI session %s", task_id, event.session_id)
                self._schedule_save()
            elif isinstance(event, ProcessExited):
                await self._on_exit(record, event)

    def _on_output(self, record: TaskRecord, chunk: OutputChunk) -> None:
        task = record.task
        record.history.append(chunk.data)
        task.touch()
        if task.state == TaskState.STARTING:
            self.transition(record, TaskState.BUSY)
        elif task.state == TaskState.DISCONNECTED:
            # Still running unobserved; it is producing output again.
            record.resume_state = TaskState.BUSY
            record.resume_input_type = None
        if task.state != TaskState.DISCONNECTED and chunk.text:
            self._publish(TaskOutput(task_id=task.id, data=chunk.text))
        self._schedule_save()

    def _on_waiting(
        self,
        record: TaskRecord,
        input_type: WaitingInputType,
        recent_output: str | None = None,
    ) -> None:
        task = record.task
        if task.state == TaskState.STARTING:
            self.transition(record, TaskState.BUSY)
        if task.state == TaskState.BUSY:
            self.transition(record, TaskState.WAITING_INPUT, input_type)
            self._publish(TaskWaitingInput(
                task_id=task.id,
                input_type=input_type.value,
                recent_output=recent_output,
            ))
        elif task.state == TaskState.DISCONNECTED:
            record.resume_state = TaskState.WAITING_INPUT
            record.resume_input_type = input_type

    async def _on_exit(self, record: TaskRecord, event: ProcessExited) -> None:
        task = record.task
        record.handle = None
        record.pump = None
        state = task.state
        if state in (TaskState.EXITED, TaskState.INTERRUPTED, TaskState.ARCHIVED):
            return
        if state == TaskState.DISCONNECTED:
            # Process died while unobserved; the next select respawns it.
            logger.info(
                "Task %s: process ended while disconnected (returncode=%s)",
                task.id, event.returncode,
            )
            self._schedule_save()
            return
        if event.crashed:
            exc = ProcessLost(task.id, event.returncode)
            logger.warning("Task %s: %s", task.id, exc)
            task.error = error_payload(exc)
            self.mark_disconnected(record)
            return
        await self._capture_after(record)
        self.transition(record, TaskState.EXITED)

    async def _capture_after(self, record: TaskRecord) -> None:
        task = record.task
        if task.git_state is None:
            return
        try:
            task.git_state = await self._git.capture_after(task.workspace_id, task.git_state)
        except Exception:
            logger.exception("Task %s: git capture after completion failed", task.id)

    # ── Public operations ─────────────────────────────────────────

    async def create_task(
        self,
        workspace_id: str,
        prompt: str,
        system_prompt: str | None = None,
        observer_id: str | None = None,
    ) -> Task:
        """Create a task, checkpoint its workspace and spawn its process.

        A spawn failure leaves the task ``exited`` with ``error`` set.
        """
        if self.cli_status is not None and not self.cli_status.installed:
            raise CliNotInstalled(
                f"{self._config.cli_command} is not installed: "
                f"{self.cli_status.error or 'not found'}"
            )
        if self._shutting_down:
            raise InvalidRequest("Server is shutting down")
        prompt = (prompt or "").strip()
        if not prompt:
            raise InvalidRequest("Prompt is required")
        workspace = self._workspaces.get(workspace_id)

        task = Task(
            id=make_task_id(),
            prompt=prompt,
            workspace_id=workspace.id,
            system_prompt=(system_prompt or "").strip() or None,
        )
        record = TaskRecord(task=task, history=OutputHistory(self._config.history_max_bytes))
        if observer_id:
            record.attended_by.add(observer_id)

        async with self.locked(task.id):
            try:
                task.git_state = await self._git.capture_before(workspace.id)
            except Exception:
                logger.exception("Task %s: git capture before start failed", task.id)
            self._records[task.id] = record
            self._publish(TaskCreated(task=task.to_dict()))
            logger.info("Created task %s in %s", task.id, workspace.id)
            await self._spawn_locked(record)
            self._schedule_save()
        return task

    async def select_task(self, task_id: str, observer_id: str | None = None) -> Task:
        """Attend a task; re-attaches or respawns it when disconnected or idle.

        When ``observer_id`` is given, that observer receives the full
        buffered history as ``task:restore`` before any later output.
        """
        async with self.locked(task_id):
            record = self._require(task_id)
            if observer_id:
                record.attended_by.add(observer_id)
            if self.reconnect is not None:
                await self.reconnect.resume_locked(record)
            self._send_restore(record, observer_id)
            return record.task

    async def restore_history(self, task_id: str, observer_id: str) -> None:
        async with self.locked(task_id):
            self._send_restore(self._require(task_id), observer_id)

    def _send_restore(self, record: TaskRecord, observer_id: str | None) -> None:
        if observer_id is None:
            return
        self._send(observer_id, TaskRestore(
            task_id=record.task.id,
            history=record.history.text(),
            state=record.task.state.value,
        ))

    async def send_input(self, task_id: str, text: str) -> Task:
        """Write input to a busy or waiting task.

        Focus-report escape sequences are dropped first; input that is
        empty afterwards is ignored.
        """
        text = filter_focus_events(text or "")
        async with self.locked(task_id):
            record = self._require(task_id)
            task = record.task
            if not text:
                return task
            state = task.state
            if state not in (TaskState.BUSY, TaskState.WAITING_INPUT):
                raise InvalidStateTransition(
                    state.value, "input",
                    f"Cannot send input to a task in state {state.value}",
                )
            handle = record.handle
            try:
                if handle is None:
                    raise ProcessLost(task.id, None)
                await self._supervisor.write(handle, text)
            except ProcessLost as exc:
                logger.warning("Task %s: input lost, %s", task.id, exc)
                task.error = error_payload(exc)
                self.mark_disconnected(record)
                return task
            task.touch()
            if state == TaskState.WAITING_INPUT:
                self.transition(record, TaskState.BUSY)
            return task

    async def interrupt(self, task_id: str) -> Task:
        """Terminate gracefully. A no-op on exited or interrupted tasks."""
        async with self.locked(task_id):
            record = self._require(task_id)
            state = record.task.state
            if state in (TaskState.EXITED, TaskState.INTERRUPTED):
                return record.task
            if state not in (TaskState.BUSY, TaskState.WAITING_INPUT):
                raise InvalidStateTransition(
                    state.value, TaskState.INTERRUPTED.value,
                    f"Cannot interrupt a task in state {state.value}",
                )
            handle = record.handle
            record.handle = None
            if handle is not None:
                await self._supervisor.terminate(handle, self._config.interrupt_grace_seconds)
            await self._capture_after(record)
            self.transition(record, TaskState.INTERRUPTED)
            return record.task

    async def destroy_task(self, task_id: str) -> None:
        """Kill the process immediately and drop the record. Idempotent."""
        async with self.locked(task_id):
            record = self._records.pop(task_id, None)
            if record is None:
                return
            handle = record.handle
            record.handle = None
            self._unindex_sessions(task_id)
            if handle is not None:
                await self._supervisor.kill(handle)
            logger.info("Destroyed task %s", task_id)
            self._publish(TaskDestroyed(task_id=task_id))
            self._schedule_save()

    async def archive_task(self, task_id: str) -> ArchivedTask:
        """Move a finished, disconnected or idle task to the archive store.

        The archive file is written before the record leaves the live
        registry; if the write fails the task stays live and unchanged.
        """
        async with self.locked(task_id):
            record = self._require(task_id)
            archived = await self._archive_locked(record)
        return archived

    async def _archive_locked(self, record: TaskRecord) -> ArchivedTask:
        task = record.task
        validate_transition(task.state, TaskState.ARCHIVED)
        snapshot = dataclasses.replace(
            task, state=TaskState.ARCHIVED, waiting_input_type=None
        )
        snapshot.touch()
        archived = ArchivedTask(
            task=snapshot,
            history=record.history.to_bytes(),
            session_id=record.session_id,
        )
        self._archive.save(archived)

        del self._records[task.id]
        self._unindex_sessions(task.id)
        handle = record.handle
        record.handle = None
        if handle is not None:
            await self._supervisor.kill(handle)
        logger.info("Archived task %s from state %s", task.id, task.state.value)
        self._publish_lists(archive=True)
        self._schedule_save()
        return archived

    async def revert_task(self, task_id: str, clean_untracked: bool = False) -> dict[str, Any]:
        """Hard-reset the workspace to the task's ``commit_before``.

        Works for live and archived tasks. Raises RevertPrecondition
        naming the failed check; the task state is never changed.
        """
        async with self.locked(task_id):
            record = self._records.get(task_id)
            if record is not None:
                task = record.task
                if task.state in RUNNING_STATES:
                    raise RevertPrecondition(
                        f"Cannot revert while the task is {task.state.value}"
                    )
                if record.handle is not None and record.handle.alive:
                    raise RevertPrecondition(
                        "Cannot revert while the task's process is still running"
                    )
                archived = None
            else:
                archived = self._archive.get(task_id)
                task = archived.task
            if task.git_state is None:
                raise RevertPrecondition("Task has no git checkpoint")

            files = await self._git.revert(task.workspace_id, task.git_state, clean_untracked)
            task.touch()
            if archived is not None:
                self._archive.save(archived)
                self._publish(ArchiveUpdated(archived=self._archive.summaries()))
            else:
                self._publish_lists()
                self._schedule_save()
            return {"taskId": task_id, "success": True, "filesReverted": files}

    async def restore_archived(self, task_id: str) -> Task:
        """Re-insert an archived task as ``idle`` without spawning."""
        async with self.locked(task_id):
            record = self._restore_locked(task_id)
            self._publish_lists(archive=True)
            self._schedule_save()
            return record.task

    async def continue_archived(self, task_id: str) -> Task:
        """Re-insert an archived task and spawn a process continuing it."""
        async with self.locked(task_id):
            record = self._restore_locked(task_id)
            self._publish_lists(archive=True)
            await self.respawn_locked(record)
            return record.task

    def _restore_locked(self, task_id: str) -> TaskRecord:
        if task_id in self._records:
            raise InvalidStateTransition(
                self._records[task_id].task.state.value, "restore",
                f"Task {task_id} is already live",
            )
        archived = self._archive.get(task_id)
        task = archived.task
        task.state = TaskState.IDLE
        task.waiting_input_type = None
        task.error = None
        task.touch()
        record = TaskRecord(
            task=task,
            history=OutputHistory(self._config.history_max_bytes, initial=archived.history),
        )
        self._index_session(record, archived.session_id)
        # No await between removing from the archive and inserting live.
        self._archive.delete(task_id)
        self._records[task_id] = record
        logger.info("Restored task %s from archive", task_id)
        return record

    async def delete_archived(self, task_id: str) -> bool:
        async with self.locked(task_id):
            removed = self._archive.delete(task_id)
        if removed:
            self._publish(ArchiveUpdated(archived=self._archive.summaries()))
        return removed

    async def sweep_stale(self, max_age_minutes: float) -> list[str]:
        """Archive exited/interrupted tasks idle longer than ``max_age_minutes``."""
        if max_age_minutes <= 0:
            return []
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)
        archived: list[str] = []
        for record in self.records():
            task_id = record.task.id
            async with self.locked(task_id):
                current = self._records.get(task_id)
                if current is None:
                    continue
                task = current.task
                if task.state not in (TaskState.EXITED, TaskState.INTERRUPTED):
                    continue
                if task.last_activity > cutoff:
                    continue
                await self._archive_locked(current)
                archived.append(task_id)
        if archived:
            logger.info("Archived %d stale task(s)", len(archived))
        return archived

    # ── Notification hooks ────────────────────────────────────────

    async def handle_notification(self, session_id: str, notification_type: str) -> bool:
        """Map a CLI notification hook to ``waiting_input``. False if unmapped."""
        task_id = self._sessions.get(session_id or "")
        if task_id is None:
            logger.warning("Dropping notification for unknown session %r", session_id)
            return False
        input_type = NOTIFICATION_INPUT_TYPES.get(
            notification_type, WaitingInputType.QUESTION
        )
        async with self.locked(task_id):
            record = self._records.get(task_id)
            if record is None:
                logger.warning("Session %s maps to missing task %s", session_id, task_id)
                return False
            self._on_waiting(record, input_type)
            return True

    async def handle_stopped(self, session_id: str) -> bool:
        """Map a CLI stop hook to ``exited``. False if unmapped."""
        task_id = self._sessions.get(session_id or "")
        if task_id is None:
            logger.warning("Dropping stop hook for unknown session %r", session_id)
            return False
        async with self.locked(task_id):
            record = self._records.get(task_id)
            if record is None:
                logger.warning("Session %s maps to missing task %s", session_id, task_id)
                return False
            state = record.task.state
            if state not in RUNNING_STATES:
                logger.debug("Stop hook for task %s in state %s ignored", task_id, state.value)
                return True
            await self._capture_after(record)
            self.transition(record, TaskState.EXITED)
            return True

    # ── Persistence ───────────────────────────────────────────────

    def adopt(self, persisted: PersistedTask) -> TaskRecord:
        """Insert a record loaded from disk (startup only, no process)."""
        record = TaskRecord(
            task=persisted.task,
            history=OutputHistory(self._config.history_max_bytes, initial=persisted.history),
            last_pid=persisted.last_pid,
            resume_state=persisted.resume_state,
            resume_input_type=persisted.resume_input_type,
        )
        self._index_session(record, persisted.session_id)
        self._records[persisted.task.id] = record
        return record

    def _schedule_save(self) -> None:
        if self._persistence is None or self._save_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save_now()
            return
        self._save_handle = loop.call_later(
            self._config.save_debounce_seconds, self._debounced_save
        )

    def _debounced_save(self) -> None:
        self._save_handle = None
        try:
            self.save_now()
        except OSError:
            logger.exception("Saving live tasks failed")

    def save_now(self) -> None:
        if self._persistence is None:
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        self._persistence.save([
            PersistedTask(
                task=r.task,
                history=r.history.to_bytes(),
                session_id=r.session_id,
                last_pid=r.last_pid,
                resume_state=r.resume_state,
                resume_input_type=r.resume_input_type,
            )
            for r in self._records.values()
        ])

    async def shutdown(self) -> None:
        """Save state, stop pumps and kill every owned process."""
        self._shutting_down = True
        try:
            self.save_now()
        except OSError:
            logger.exception("Final save of live tasks failed")
        pumps = [r.pump for r in self._records.values() if r.pump is not None]
        for pump in pumps:
            pump.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
        for record in self._records.values():
            record.handle = None
            record.pump = None
        await self._supervisor.shutdown()
        logger.info("Task registry shut down (%d live task(s) saved)", len(self._records))
