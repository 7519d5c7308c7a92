"""Hand-written collaborators shared by the registry and reconnect tests."""
from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

from taskdeck.engine.config import DeckConfig
from taskdeck.engine.errors import ProcessLost, RevertPrecondition
from taskdeck.engine.models import TaskGitState
from taskdeck.engine.reconnect import ReconnectController
from taskdeck.engine.registry import TaskRegistry
from taskdeck.engine.supervisor import (
    OutputChunk,
    ProcessExited,
    SessionIdDetected,
    WaitingForInput,
)
from taskdeck.shared.services.archive import ArchiveStore
from taskdeck.shared.services.persistence import TaskPersistence
from taskdeck.shared.services.workspaces import WorkspaceRegistry


class FakeHandle:
    def __init__(self, handle_id: str, pid: int, prompt: str, resume_session_id: str | None):
        self.handle_id = handle_id
        self.pid = pid
        self.prompt = prompt
        self.resume_session_id = resume_session_id
        self.session_id = resume_session_id
        self.alive = True
        self.returncode: int | None = None
        self.written: list[str] = []
        self._queue: asyncio.Queue = asyncio.Queue()

    def output(self, text: str | bytes) -> None:
        data = text if isinstance(text, bytes) else text.encode("utf-8")
        self._queue.put_nowait(OutputChunk(data, data.decode("utf-8", errors="replace")))

    def waiting(self, input_type) -> None:
        self._queue.put_nowait(WaitingForInput(input_type, "recent"))

    def session(self, session_id: str) -> None:
        self._queue.put_nowait(SessionIdDetected(session_id))

    def exit(self, returncode: int = 0, requested: bool = False) -> None:
        if not self.alive:
            return
        self.alive = False
        self.returncode = returncode
        self._queue.put_nowait(ProcessExited(returncode, requested=requested))

    def vanish(self) -> None:
        """Process gone without the supervisor noticing yet."""
        self.alive = False

    async def events(self):
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, ProcessExited):
                return


class FakeSupervisor:
    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.spawned: list[FakeHandle] = []
        self.terminated: list[str] = []
        self.killed: list[str] = []

    async def spawn(self, workspace, prompt, system_prompt=None, resume_session_id=None, label=""):
        # Yield so concurrent callers get a chance to interleave.
        await asyncio.sleep(0)
        if self.fail is not None:
            raise self.fail
        handle = FakeHandle(
            f"fake-{len(self.spawned) + 1}", 1000 + len(self.spawned), prompt, resume_session_id
        )
        handle.workspace = workspace
        handle.system_prompt = system_prompt
        self.spawned.append(handle)
        return handle

    async def write(self, handle, text):
        if not handle.alive:
            raise ProcessLost(handle.handle_id, handle.returncode)
        handle.written.append(text)

    async def terminate(self, handle, grace=None):
        self.terminated.append(handle.handle_id)
        handle.exit(-15, requested=True)

    async def kill(self, handle):
        self.killed.append(handle.handle_id)
        handle.exit(-9, requested=True)

    async def shutdown(self):
        for handle in self.spawned:
            if handle.alive:
                await self.kill(handle)


class FakeGit:
    def __init__(self, dirty: bool = False):
        self.dirty = dirty
        self.after_calls = 0
        self.reverts: list[tuple[str, bool]] = []

    async def capture_before(self, path):
        return TaskGitState(
            commit_before="a" * 40, uncommitted_before=self.dirty, can_revert=not self.dirty
        )

    async def capture_after(self, path, before):
        self.after_calls += 1
        before.commit_after = "b" * 40
        before.files_modified = ["app.py"]
        before.can_revert = not before.uncommitted_before
        return before

    async def revert(self, path, state, clean_untracked=False):
        if state.reverted_at is not None:
            raise RevertPrecondition("Task changes were already reverted")
        if not state.can_revert:
            raise RevertPrecondition("No completed checkpoint to revert to")
        self.reverts.append((path, clean_untracked))
        state.reverted_at = "2026-01-01T00:00:00+00:00"
        state.can_revert = False
        return list(state.files_modified)


async def settle(rounds: int = 20) -> None:
    """Let pump tasks drain queued supervisor events."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def build_registry(
    tmpdir: str,
    supervisor: FakeSupervisor | None = None,
    git: FakeGit | None = None,
    cli_status=None,
) -> SimpleNamespace:
    config = DeckConfig(data_dir=tmpdir, save_debounce_seconds=0.01)
    workspace_dir = Path(tmpdir) / "project"
    workspace_dir.mkdir(exist_ok=True)
    workspaces = WorkspaceRegistry(config.workspaces_file)
    workspace = workspaces.add(str(workspace_dir))
    archive = ArchiveStore(config.archive_dir)
    persistence = TaskPersistence(config.tasks_file)
    published: list = []
    sent: list = []

    def send(observer_id, event):
        sent.append((observer_id, event))
        return True

    supervisor = supervisor or FakeSupervisor()
    git = git or FakeGit()
    registry = TaskRegistry(
        config,
        supervisor,
        git,
        workspaces,
        archive,
        publish=published.append,
        send=send,
        persistence=persistence,
        cli_status=cli_status,
    )
    reconnect = ReconnectController(registry)
    return SimpleNamespace(
        config=config,
        registry=registry,
        reconnect=reconnect,
        supervisor=supervisor,
        git=git,
        workspace=workspace,
        workspaces=workspaces,
        archive=archive,
        persistence=persistence,
        published=published,
        sent=sent,
    )


def event_types(published: list) -> list[str]:
    return [e.event_type for e in published]
