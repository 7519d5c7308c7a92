from __future__ import annotations

import json
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from taskdeck.engine.config import DeckConfig
from taskdeck.engine.models import TaskState
from taskdeck.engine.preflight import CliStatus
from taskdeck.shared.services.conversation import project_folder_name
from taskdeck.web.server import TaskDeckServer

from _fakes import FakeGit, FakeSupervisor, settle


@dataclass
class _Request:
    match_info: dict[str, str] = field(default_factory=dict)
    body: dict | list | None = None
    query: dict[str, str] = field(default_factory=dict)

    @property
    def can_read_body(self) -> bool:
        return self.body is not None

    async def json(self):
        return self.body


def _json_payload(resp) -> dict:
    return json.loads(resp.text)


def _build_server(tmpdir: str, cli_status: CliStatus | None = None) -> TaskDeckServer:
    config = DeckConfig(
        data_dir=str(Path(tmpdir) / "data"),
        cli_home=str(Path(tmpdir) / "cli"),
        save_debounce_seconds=0.01,
    )
    server = TaskDeckServer(
        config, cli_status=cli_status, supervisor=FakeSupervisor(), git=FakeGit()
    )
    server.load_state()
    return server


async def _send(server: TaskDeckServer, observer_id: str, action: str, **payload) -> None:
    await server._dispatch(observer_id, json.dumps({"type": action, "payload": payload}))


def _types(messages: list[dict]) -> list[str]:
    return [m["type"] for m in messages]


def _workspace_dir(tmpdir: str) -> str:
    path = Path(tmpdir) / "project"
    path.mkdir()
    return str(path)


@pytest.mark.asyncio
async def test_create_task_flow_broadcasts_to_every_observer() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        first = server.hub.connect("obs-1")
        second = server.hub.connect("obs-2")

        await _send(server, "obs-1", "workspace:create", path=_workspace_dir(tmpdir))
        workspace_id = server.workspaces.list()[0].id
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="count to 5")
        handle = server.registry._supervisor.spawned[0]
        handle.output("1\n")
        await settle()

        first_messages = first.drain()
        assert _types(first_messages) == [
            "init", "workspace:created", "task:created", "task:stateChanged", "task:output",
        ]
        assert first_messages == second.drain()
        assert first_messages[2]["payload"]["prompt"] == "count to 5"
        assert first_messages[3]["payload"]["state"] == TaskState.BUSY.value


@pytest.mark.asyncio
async def test_errors_go_only_to_the_requester() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        requester = server.hub.connect("obs-1")
        bystander = server.hub.connect("obs-2")
        requester.drain()
        bystander.drain()

        await server._dispatch("obs-1", "{not json")
        await _send(server, "obs-1", "task:explode")
        await _send(server, "obs-1", "task:input", taskId="task-0-none", text="hi")
        await _send(server, "obs-1", "task:create", prompt="no workspace")

        errors = requester.drain()
        assert _types(errors) == ["error"] * 4
        assert [e["payload"]["code"] for e in errors] == [
            "invalid_request", "invalid_request", "task_not_found", "invalid_request",
        ]
        assert errors[1]["payload"]["action"] == "task:explode"
        assert errors[2]["payload"]["taskId"] == "task-0-none"
        assert bystander.drain() == []


@pytest.mark.asyncio
async def test_input_in_wrong_state_reports_invalid_transition() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        observer = server.hub.connect("obs-1")
        await _send(server, "obs-1", "workspace:create", path=_workspace_dir(tmpdir))
        workspace_id = server.workspaces.list()[0].id
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="hello")
        task_id = server.registry.list_tasks()[0].id
        observer.drain()

        await _send(server, "obs-1", "task:input", taskId=task_id, text="too early\n")
        (error,) = observer.drain()
        assert error["payload"]["code"] == "invalid_state_transition"
        assert server.registry.get(task_id).state == TaskState.STARTING


@pytest.mark.asyncio
async def test_revert_failure_sends_result_and_error() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        observer = server.hub.connect("obs-1")
        await _send(server, "obs-1", "workspace:create", path=_workspace_dir(tmpdir))
        workspace_id = server.workspaces.list()[0].id
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="hello")
        task_id = server.registry.list_tasks()[0].id
        server.registry._supervisor.spawned[0].output("busy")
        await settle()
        observer.drain()

        await _send(server, "obs-1", "task:revert", taskId=task_id)
        messages = observer.drain()
        assert _types(messages) == ["task:revertResult", "error"]
        assert messages[0]["payload"]["success"] is False
        assert messages[1]["payload"]["code"] == "revert_precondition"


@pytest.mark.asyncio
async def test_archive_actions_reply_directly() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        observer = server.hub.connect("obs-1")
        await _send(server, "obs-1", "workspace:create", path=_workspace_dir(tmpdir))
        workspace_id = server.workspaces.list()[0].id
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="hello")
        task_id = server.registry.list_tasks()[0].id
        server.registry._supervisor.spawned[0].exit(0)
        await settle()

        await _send(server, "obs-1", "task:archive", taskId=task_id)
        await _send(server, "obs-1", "task:archived:list")
        await _send(server, "obs-1", "task:archived:restore", taskId=task_id)
        await _send(server, "obs-1", "task:archived:delete", taskId="task-0-gone")

        messages = observer.drain()
        by_type = {m["type"]: m for m in messages}
        assert [a["id"] for a in by_type["task:archived:list"]["payload"]["archived"]] == [task_id]
        assert by_type["task:archived:restored"]["payload"]["state"] == TaskState.IDLE.value
        assert by_type["task:archived:deleted"]["payload"]["taskId"] == "task-0-gone"
        assert "error" not in by_type


@pytest.mark.asyncio
async def test_workspace_delete_refused_while_tasks_live() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        observer = server.hub.connect("obs-1")
        await _send(server, "obs-1", "workspace:create", path=_workspace_dir(tmpdir))
        workspace_id = server.workspaces.list()[0].id
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="hello")
        observer.drain()

        await _send(server, "obs-1", "workspace:delete", workspaceId=workspace_id)
        (error,) = observer.drain()
        assert error["payload"]["code"] == "workspace_error"
        assert len(server.workspaces.list()) == 1

        await _send(server, "obs-1", "workspace:reorder", fromIndex="0", toIndex=0)
        (error,) = observer.drain()
        assert error["payload"]["code"] == "invalid_request"


@pytest.mark.asyncio
async def test_create_reports_missing_cli() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir, cli_status=CliStatus(False, error="not on PATH"))
        observer = server.hub.connect("obs-1")
        init = observer.drain()[0]
        assert init["payload"]["cliStatus"] == {"installed": False, "error": "not on PATH"}

        await _send(server, "obs-1", "workspace:create", path=_workspace_dir(tmpdir))
        workspace_id = server.workspaces.list()[0].id
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="hello")
        messages = observer.drain()
        assert messages[-1]["payload"]["code"] == "cli_not_installed"


@pytest.mark.asyncio
async def test_notification_hook_endpoints() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        server.hub.connect("obs-1")
        await _send(server, "obs-1", "workspace:create", path=_workspace_dir(tmpdir))
        workspace_id = server.workspaces.list()[0].id
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="hello")
        task_id = server.registry.list_tasks()[0].id
        handle = server.registry._supervisor.spawned[0]
        handle.session("sess-hook")
        handle.output("working")
        await settle()

        bad = await server._handle_claude_notification(_Request(body={"notification_type": "x"}))
        assert bad.status == 400
        not_object = await server._handle_claude_notification(_Request(body=["x"]))
        assert not_object.status == 400

        unknown = await server._handle_claude_notification(
            _Request(body={"session_id": "nope", "notification_type": "permission_prompt"})
        )
        assert _json_payload(unknown) == {"ok": True, "mapped": False}

        mapped = await server._handle_claude_notification(
            _Request(body={"session_id": "sess-hook", "notification_type": "permission_prompt"})
        )
        assert _json_payload(mapped) == {"ok": True, "mapped": True}
        status = _json_payload(await server._handle_task_status(_Request(match_info={"id": task_id})))
        assert status["state"] == "waiting_input"
        assert status["waitingInputType"] == "permission"
        assert status["sessionId"] == "sess-hook"

        stopped = await server._handle_claude_stopped(_Request(body={"session_id": "sess-hook"}))
        assert _json_payload(stopped)["mapped"] is True
        assert server.registry.get(task_id).state == TaskState.EXITED


@pytest.mark.asyncio
async def test_status_of_unknown_task_is_404() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        resp = await server._handle_task_status(_Request(match_info={"id": "task-0-none"}))
        assert resp.status == 404
        assert _json_payload(resp)["code"] == "task_not_found"


@pytest.mark.asyncio
async def test_archived_continue_reply_carries_the_task() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        observer = server.hub.connect("obs-1")
        await _send(server, "obs-1", "workspace:create", path=_workspace_dir(tmpdir))
        workspace_id = server.workspaces.list()[0].id
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="hello")
        task_id = server.registry.list_tasks()[0].id
        server.registry._supervisor.spawned[0].exit(0)
        await settle()
        await _send(server, "obs-1", "task:archive", taskId=task_id)
        observer.drain()

        await _send(server, "obs-1", "task:archived:continue", taskId=task_id)
        (reply,) = [m for m in observer.drain() if m["type"] == "task:archived:continued"]
        assert reply["payload"]["id"] == task_id
        assert reply["payload"]["prompt"] == "hello"
        assert "task" not in reply["payload"]


@pytest.mark.asyncio
async def test_conversation_routes_read_cli_transcripts() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        server = _build_server(tmpdir)
        server.hub.connect("obs-1")
        await _send(server, "obs-1", "workspace:create", path=_workspace_dir(tmpdir))
        workspace_id = server.workspaces.list()[0].id
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="hello")
        await _send(server, "obs-1", "task:create", workspaceId=workspace_id, prompt="no session")
        with_session, without_session = [t.id for t in server.registry.list_tasks()]
        server.registry._supervisor.spawned[0].session("sess-conv")
        await settle()

        transcripts = Path(tmpdir) / "cli" / "projects" / project_folder_name(workspace_id)
        transcripts.mkdir(parents=True)
        (transcripts / "sess-conv.jsonl").write_text("\n".join([
            json.dumps({"type": "user", "uuid": "u1", "message": {"content": "hello"}}),
            json.dumps({"type": "assistant", "uuid": "a1", "message": {"content": "hi there"}}),
        ]))

        resp = await server._handle_task_conversation(_Request(match_info={"id": with_session}))
        assert resp.status == 200
        conversation = _json_payload(resp)
        assert conversation["sessionId"] == "sess-conv"
        assert [m["content"] for m in conversation["messages"]] == ["hello", "hi there"]

        no_session = await server._handle_task_conversation(
            _Request(match_info={"id": without_session})
        )
        assert no_session.status == 404
        assert _json_payload(no_session)["code"] == "conversation_not_found"
        unknown = await server._handle_task_conversation(_Request(match_info={"id": "task-0-none"}))
        assert _json_payload(unknown)["code"] == "task_not_found"

        sessions = await server._handle_workspace_sessions(_Request(match_info={"id": workspace_id}))
        assert [s["sessionId"] for s in _json_payload(sessions)["sessions"]] == ["sess-conv"]
        missing_ws = await server._handle_workspace_sessions(_Request(match_info={"id": "/nowhere"}))
        assert missing_ws.status == 404

        by_session = await server._handle_session_conversation(_Request(
            match_info={"session_id": "sess-conv"}, query={"workspaceId": workspace_id},
        ))
        assert _json_payload(by_session)["messages"][1]["role"] == "assistant"
        no_query = await server._handle_session_conversation(
            _Request(match_info={"session_id": "sess-conv"})
        )
        assert no_query.status == 400
        bad_id = await server._handle_session_conversation(_Request(
            match_info={"session_id": "../secrets"}, query={"workspaceId": workspace_id},
        ))
        assert bad_id.status == 400
