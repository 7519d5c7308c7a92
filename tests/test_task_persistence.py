from __future__ import annotations

import asyncio
import json
import tempfile
from pathlib import Path

import pytest

from taskdeck.engine.errors import InvalidRequest
from taskdeck.engine.models import Task, TaskState, WaitingInputType
from taskdeck.shared.services.persistence import PersistedTask, TaskPersistence

from _fakes import build_registry, settle


def test_save_and_load_round_trip() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = TaskPersistence(Path(tmpdir) / "tasks.json")
        task = Task(
            id="task-1-abc",
            prompt="refactor",
            workspace_id=tmpdir,
            state=TaskState.DISCONNECTED,
            attempt=3,
        )
        store.save([PersistedTask(
            task=task,
            history=b"\x00\xffdata",
            session_id="sess-1",
            last_pid=4242,
            resume_state=TaskState.WAITING_INPUT,
            resume_input_type=WaitingInputType.QUESTION,
        )])

        (loaded,) = store.load()
        assert loaded.task.id == "task-1-abc"
        assert loaded.task.state == TaskState.DISCONNECTED
        assert loaded.task.attempt == 3
        assert loaded.history == b"\x00\xffdata"
        assert loaded.session_id == "sess-1"
        assert loaded.last_pid == 4242
        assert loaded.resume_state == TaskState.WAITING_INPUT
        assert loaded.resume_input_type == WaitingInputType.QUESTION


def test_unreadable_file_and_corrupt_records_are_tolerated() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "tasks.json"
        store = TaskPersistence(path)
        assert store.load() == []

        path.write_text("{truncated")
        assert store.load() == []

        path.write_text(json.dumps({"version": 1, "tasks": [
            {"prompt": "no id"},
            {"id": "task-2-ok", "prompt": "fine", "workspaceId": tmpdir, "state": "exited"},
            {"id": "task-3-bad", "resumeState": "sideways"},
        ]}))
        assert [p.task.id for p in store.load()] == ["task-2-ok"]


@pytest.mark.asyncio
async def test_registry_saves_after_debounce() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        env = build_registry(tmpdir)
        task = await env.registry.create_task(env.workspace.id, "hello")
        env.supervisor.spawned[0].output("1\n")
        env.supervisor.spawned[0].output("2\n")
        await settle()
        await asyncio.sleep(0.05)
        (saved,) = env.persistence.load()
        assert saved.task.id == task.id
        assert saved.task.state == TaskState.BUSY
        assert saved.history == b"1\n2\n"
        assert saved.last_pid == 1000


@pytest.mark.asyncio
async def test_shutdown_saves_and_kills() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        env = build_registry(tmpdir)
        task = await env.registry.create_task(env.workspace.id, "hello")
        env.supervisor.spawned[0].output("working")
        await settle()

        await env.registry.shutdown()
        assert env.supervisor.killed == ["fake-1"]
        (saved,) = env.persistence.load()
        assert saved.task.id == task.id
        assert saved.task.state == TaskState.BUSY

        with pytest.raises(InvalidRequest):
            await env.registry.create_task(env.workspace.id, "too late")
