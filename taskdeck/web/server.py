"""HTTP + WebSocket server for TaskDeck.

Thin adapter: all task state lives in TaskRegistry. This class wires the
engine to the broadcast hub, maps inbound WebSocket actions onto
registry operations and exposes a small REST surface for status and
for the CLI notification hooks.

Usage:
    taskdeck [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from typing import Any, Awaitable, Callable

from aiohttp import WSCloseCode, WSMsgType, web

from taskdeck.adapters.event_bus import BroadcastHub
from taskdeck.adapters.events import (
    ArchivedContinued,
    ArchivedDeleted,
    ArchivedList,
    ArchivedRestored,
    ErrorEvent,
    RevertResult,
    WorkspaceCreated,
    WorkspaceDeleted,
    WorkspacesReordered,
)
from taskdeck.engine.config import DeckConfig
from taskdeck.engine.errors import (
    ArchiveIntegrity,
    InvalidRequest,
    TaskDeckError,
    TaskNotFound,
    WorkspaceError,
    error_payload,
)
from taskdeck.engine.git_checkpoint import GitCheckpointTracker
from taskdeck.engine.preflight import CliStatus
from taskdeck.engine.reconnect import ReconnectController
from taskdeck.engine.registry import TaskRegistry
from taskdeck.engine.supervisor import ProcessSupervisor
from taskdeck.shared.services.archive import ArchiveStore
from taskdeck.shared.services.conversation import ConversationStore
from taskdeck.shared.services.persistence import TaskPersistence
from taskdeck.shared.services.workspaces import WorkspaceRegistry

logger = logging.getLogger(__name__)

ActionHandler = Callable[[str, dict], Awaitable[None]]

_HTTP_STATUS = {
    "task_not_found": 404,
    "archive_integrity": 404,
    "invalid_state_transition": 409,
    "revert_precondition": 409,
    "cli_not_installed": 503,
}


def _require_str(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"'{key}' is required")
    return value


def _require_int(payload: dict, key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(f"'{key}' must be an integer")
    return value


def _error_response(exc: Exception, status: int | None = None) -> web.Response:
    payload = error_payload(exc)
    body: dict[str, Any] = {"error": payload["message"], "code": payload["code"]}
    return web.json_response(body, status=status or _HTTP_STATUS.get(payload["code"], 400))


def _not_found(message: str) -> web.Response:
    return web.json_response({"error": message, "code": "conversation_not_found"}, status=404)


class TaskDeckServer:
    """aiohttp application hosting one task registry."""

    def __init__(
        self,
        config: DeckConfig,
        cli_status: CliStatus | None = None,
        supervisor: ProcessSupervisor | None = None,
        git: GitCheckpointTracker | None = None,
    ) -> None:
        self._config = config
        self._started_at = time.time()
        self._workspaces = WorkspaceRegistry(config.workspaces_file)
        self._archive = ArchiveStore(config.archive_dir)
        self._persistence = TaskPersistence(config.tasks_file)
        self._conversations = ConversationStore(config.cli_home)
        self._hub = BroadcastHub(queue_size=config.observer_queue_size)
        self._registry = TaskRegistry(
            config,
            supervisor or ProcessSupervisor(config),
            git or GitCheckpointTracker(),
            self._workspaces,
            self._archive,
            publish=self._hub.publish,
            send=self._hub.send,
            persistence=self._persistence,
            cli_status=cli_status,
        )
        self._reconnect = ReconnectController(self._registry)
        self._hub.set_snapshot(self._registry.snapshot)
        self._hub.on_disconnect(self._reconnect.observer_dropped)
        self._websockets: set[web.WebSocketResponse] = set()
        self._sweep_task: asyncio.Task | None = None

        self._actions: dict[str, ActionHandler] = {
            "task:create": self._on_task_create,
            "task:select": self._on_task_select,
            "task:input": self._on_task_input,
            "input": self._on_task_input,
            "task:interrupt": self._on_task_interrupt,
            "task:destroy": self._on_task_destroy,
            "task:archive": self._on_task_archive,
            "task:disconnect": self._on_task_disconnect,
            "task:revert": self._on_task_revert,
            "task:restore": self._on_task_restore,
            "task:archived:list": self._on_archived_list,
            "task:archived:restore": self._on_archived_restore,
            "task:archived:continue": self._on_archived_continue,
            "task:archived:delete": self._on_archived_delete,
            "workspace:create": self._on_workspace_create,
            "workspace:delete": self._on_workspace_delete,
            "workspace:reorder": self._on_workspace_reorder,
        }

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "TaskDeckServer init host=%s port=%s data_dir=%s cli=%s pid=%s",
            config.host, config.port, config.data_dir, config.cli_command, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def hub(self) -> BroadcastHub:
        return self._hub

    @property
    def reconnect(self) -> ReconnectController:
        return self._reconnect

    @property
    def workspaces(self) -> WorkspaceRegistry:
        return self._workspaces

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-taskdeck-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/ws", self._handle_ws)
        r.add_get("/api/health", self._handle_health)
        r.add_get("/api/tasks", self._handle_list_tasks)
        r.add_get("/api/tasks/{id}/status", self._handle_task_status)
        r.add_get("/api/tasks/{id}/conversation", self._handle_task_conversation)
        r.add_get("/api/workspaces", self._handle_list_workspaces)
        r.add_get("/api/workspaces/{id}/sessions", self._handle_workspace_sessions)
        r.add_get("/api/sessions/{session_id}/conversation", self._handle_session_conversation)
        r.add_get("/api/archive", self._handle_list_archive)
        # CLI notification hooks
        r.add_post("/api/claude-notification", self._handle_claude_notification)
        r.add_post("/api/claude-stopped", self._handle_claude_stopped)

    # ── Lifecycle ──

    def load_state(self) -> None:
        """Load workspaces and reconcile tasks saved by a previous run."""
        self._workspaces.load()
        self._reconnect.reconcile(self._persistence.load())

    async def _on_startup(self, app: web.Application) -> None:
        self.load_state()
        if self._config.stale_task_minutes > 0:
            self._sweep_task = asyncio.create_task(self._stale_sweep_loop())

    async def _on_shutdown(self, app: web.Application) -> None:
        self._hub.close()
        for ws in list(self._websockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def _on_cleanup(self, app: web.Application) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
        await self._registry.shutdown()

    async def start(self) -> None:
        """Serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        logger.info("TaskDeck server listening on http://%s:%d", self._config.host, self._config.port)
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _stale_sweep_loop(self) -> None:
        minutes = self._config.stale_task_minutes
        interval = max(30.0, min(300.0, minutes * 60.0 / 4))
        while True:
            await asyncio.sleep(interval)
            try:
                await self._registry.sweep_stale(minutes)
            except Exception:
                logger.exception("Stale task sweep failed")

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        observer = self._hub.connect()
        self._websockets.add(ws)
        writer = asyncio.create_task(self._ws_writer(ws, observer))
        logger.info(
            "WebSocket observer %s connected req=%s", observer.id, request.get("req_id", "unknown")
        )
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._dispatch(observer.id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket observer %s error: %s", observer.id, ws.exception())
        finally:
            self._websockets.discard(ws)
            self._hub.disconnect(observer.id)
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)
            logger.info("WebSocket observer %s closed", observer.id)
        return ws

    async def _ws_writer(self, ws: web.WebSocketResponse, observer) -> None:
        try:
            async for message in observer.consume():
                await ws.send_json(message)
        except ConnectionResetError:
            return
        if not ws.closed:
            # Dropped for falling behind; the client reconnects for a fresh init.
            await ws.close(code=WSCloseCode.TRY_AGAIN_LATER, message=b"Observer dropped")

    async def _dispatch(self, observer_id: str, raw: str) -> None:
        action = None
        payload: dict = {}
        try:
            try:
                message = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise InvalidRequest(f"Malformed message: {exc}") from exc
            if not isinstance(message, dict):
                raise InvalidRequest("Message must be an object")
            action = message.get("type")
            payload = message.get("payload") or {}
            if not isinstance(payload, dict):
                raise InvalidRequest("Payload must be an object")
            handler = self._actions.get(action)
            if handler is None:
                raise InvalidRequest(f"Unknown action: {action}")
            await handler(observer_id, payload)
        except TaskDeckError as exc:
            logger.info("Action %s from %s failed: %s", action, observer_id, exc)
            self._send_error(observer_id, exc, payload, action)
        except Exception as exc:
            logger.exception("Action %s from %s crashed", action, observer_id)
            self._send_error(observer_id, exc, payload, action)

    def _send_error(self, observer_id: str, exc: Exception, payload: dict, action: str | None) -> None:
        task_id = payload.get("taskId") if isinstance(payload.get("taskId"), str) else None
        self._hub.send(
            observer_id,
            ErrorEvent.from_payload(error_payload(exc), task_id=task_id, action=action),
        )

    # ── Task actions ──

    async def _on_task_create(self, observer_id: str, payload: dict) -> None:
        await self._registry.create_task(
            _require_str(payload, "workspaceId"),
            _require_str(payload, "prompt"),
            system_prompt=payload.get("systemPrompt"),
            observer_id=observer_id,
        )

    async def _on_task_select(self, observer_id: str, payload: dict) -> None:
        await self._registry.select_task(_require_str(payload, "taskId"), observer_id)

    async def _on_task_input(self, observer_id: str, payload: dict) -> None:
        text = payload.get("text", payload.get("data"))
        if not isinstance(text, str):
            raise InvalidRequest("'text' is required")
        await self._registry.send_input(_require_str(payload, "taskId"), text)

    async def _on_task_interrupt(self, observer_id: str, payload: dict) -> None:
        await self._registry.interrupt(_require_str(payload, "taskId"))

    async def _on_task_destroy(self, observer_id: str, payload: dict) -> None:
        await self._registry.destroy_task(_require_str(payload, "taskId"))

    async def _on_task_archive(self, observer_id: str, payload: dict) -> None:
        await self._registry.archive_task(_require_str(payload, "taskId"))

    async def _on_task_disconnect(self, observer_id: str, payload: dict) -> None:
        await self._reconnect.detach(_require_str(payload, "taskId"))

    async def _on_task_revert(self, observer_id: str, payload: dict) -> None:
        task_id = _require_str(payload, "taskId")
        try:
            result = await self._registry.revert_task(
                task_id, clean_untracked=bool(payload.get("cleanUntracked", False))
            )
        except TaskDeckError as exc:
            self._hub.send(observer_id, RevertResult(task_id=task_id, success=False, error=str(exc)))
            raise
        self._hub.send(observer_id, RevertResult(
            task_id=task_id, success=True, files_reverted=result["filesReverted"],
        ))

    async def _on_task_restore(self, observer_id: str, payload: dict) -> None:
        await self._registry.restore_history(_require_str(payload, "taskId"), observer_id)

    async def _on_archived_list(self, observer_id: str, payload: dict) -> None:
        self._hub.send(observer_id, ArchivedList(archived=self._archive.summaries()))

    async def _on_archived_restore(self, observer_id: str, payload: dict) -> None:
        task = await self._registry.restore_archived(_require_str(payload, "taskId"))
        self._hub.send(observer_id, ArchivedRestored(task=task.to_dict()))

    async def _on_archived_continue(self, observer_id: str, payload: dict) -> None:
        task = await self._registry.continue_archived(_require_str(payload, "taskId"))
        self._hub.send(observer_id, ArchivedContinued(task=task.to_dict()))

    async def _on_archived_delete(self, observer_id: str, payload: dict) -> None:
        task_id = _require_str(payload, "taskId")
        await self._registry.delete_archived(task_id)
        self._hub.send(observer_id, ArchivedDeleted(task_id=task_id))

    # ── Workspace actions ──

    async def _on_workspace_create(self, observer_id: str, payload: dict) -> None:
        workspace = self._workspaces.add(_require_str(payload, "path"), payload.get("name"))
        self._hub.publish(WorkspaceCreated(workspace=workspace.to_dict()))

    async def _on_workspace_delete(self, observer_id: str, payload: dict) -> None:
        workspace_id = _require_str(payload, "workspaceId")
        self._workspaces.remove(
            workspace_id, live_tasks=self._registry.tasks_in_workspace(workspace_id)
        )
        self._hub.publish(WorkspaceDeleted(workspace_id=workspace_id))

    async def _on_workspace_reorder(self, observer_id: str, payload: dict) -> None:
        self._workspaces.reorder(
            _require_int(payload, "fromIndex"), _require_int(payload, "toIndex")
        )
        self._hub.publish(WorkspacesReordered(workspaces=self._workspaces.to_dicts()))

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        cli_status = self._registry.cli_status
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptimeSeconds": round(max(0.0, time.time() - self._started_at), 3),
            "observers": self._hub.observer_count,
            "tasks": len(self._registry.records()),
            "cli": cli_status.to_dict() if cli_status else None,
        })

    async def _handle_list_tasks(self, request: web.Request) -> web.Response:
        return web.json_response({"tasks": [t.to_dict() for t in self._registry.list_tasks()]})

    async def _handle_task_status(self, request: web.Request) -> web.Response:
        try:
            return web.json_response(self._registry.status(request.match_info["id"]))
        except TaskNotFound as exc:
            return _error_response(exc)

    async def _handle_list_workspaces(self, request: web.Request) -> web.Response:
        return web.json_response({"workspaces": self._workspaces.to_dicts()})

    async def _handle_list_archive(self, request: web.Request) -> web.Response:
        return web.json_response({"archived": self._archive.summaries()})

    # ── Conversation transcripts ──

    def _conversation_response(self, workspace_path: str, session_id: str) -> web.Response:
        try:
            conversation = self._conversations.load(workspace_path, session_id)
        except InvalidRequest as exc:
            return _error_response(exc)
        if conversation is None:
            return _not_found("Conversation not found")
        return web.json_response(conversation.to_dict())

    async def _handle_task_conversation(self, request: web.Request) -> web.Response:
        task_id = request.match_info["id"]
        record = self._registry.record(task_id)
        if record is not None:
            task, session_id = record.task, record.session_id
        else:
            try:
                archived = self._archive.get(task_id)
            except ArchiveIntegrity:
                return _error_response(TaskNotFound(task_id))
            task, session_id = archived.task, archived.session_id
        if not session_id:
            return _not_found("Task has no session ID")
        return self._conversation_response(task.workspace_id, session_id)

    async def _handle_workspace_sessions(self, request: web.Request) -> web.Response:
        try:
            workspace = self._workspaces.get(request.match_info["id"])
        except WorkspaceError as exc:
            return _error_response(exc, status=404)
        sessions = self._conversations.sessions(workspace.id)
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_session_conversation(self, request: web.Request) -> web.Response:
        workspace_id = request.query.get("workspaceId")
        if not workspace_id:
            return _error_response(InvalidRequest("'workspaceId' query parameter is required"))
        try:
            workspace = self._workspaces.get(workspace_id)
        except WorkspaceError as exc:
            return _error_response(exc, status=404)
        return self._conversation_response(workspace.id, request.match_info["session_id"])

    # ── Notification hooks ──

    async def _read_hook_body(self, request: web.Request) -> dict:
        try:
            body = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError as exc:
            raise InvalidRequest(f"Malformed JSON body: {exc}") from exc
        if not isinstance(body, dict):
            raise InvalidRequest("Body must be a JSON object")
        return body

    async def _handle_claude_notification(self, request: web.Request) -> web.Response:
        try:
            body = await self._read_hook_body(request)
            session_id = _require_str(body, "session_id")
        except InvalidRequest as exc:
            return _error_response(exc)
        notification_type = str(body.get("notification_type") or "")
        mapped = await self._registry.handle_notification(session_id, notification_type)
        return web.json_response({"ok": True, "mapped": mapped})

    async def _handle_claude_stopped(self, request: web.Request) -> web.Response:
        try:
            body = await self._read_hook_body(request)
            session_id = _require_str(body, "session_id")
        except InvalidRequest as exc:
            return _error_response(exc)
        mapped = await self._registry.handle_stopped(session_id)
        return web.json_response({"ok": True, "mapped": mapped})
