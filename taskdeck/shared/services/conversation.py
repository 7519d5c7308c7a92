"""Read the CLI's own session transcripts.

The CLI writes one JSONL file per session under
``<cli_home>/projects/<folder>/<session_id>.jsonl`` where ``<folder>`` is
the workspace path with every ``/`` replaced by ``-``. Only user and
assistant text is surfaced; tool calls and pure thinking turns are not.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from taskdeck.engine.errors import InvalidRequest

logger = logging.getLogger(__name__)

_SESSION_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
# Only the head of a file is scanned for its summary line.
_SUMMARY_SCAN_LINES = 5
MAX_SESSIONS = 50


@dataclass
class ConversationMessage:
    role: str
    content: str
    timestamp: str = ""
    uuid: str = ""
    thinking: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "uuid": self.uuid,
        }
        if self.thinking:
            data["thinking"] = self.thinking
        return data


@dataclass
class Conversation:
    session_id: str
    messages: list[ConversationMessage] = field(default_factory=list)
    summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.summary:
            data["summary"] = self.summary
        return data


@dataclass
class SessionSummary:
    session_id: str
    last_modified: float
    summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "lastModified": datetime.fromtimestamp(
                self.last_modified, tz=timezone.utc
            ).isoformat(),
        }
        if self.summary:
            data["summary"] = self.summary
        return data


def project_folder_name(workspace_path: str) -> str:
    return workspace_path.replace("/", "-")


def _split_content(content: Any) -> tuple[str, str | None]:
    """Return ``(text, thinking)`` from a string or a list of content blocks."""
    if isinstance(content, str):
        return content, None
    text = ""
    thinking = None
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                text += str(block["text"])
            elif block.get("type") == "thinking" and block.get("thinking"):
                thinking = str(block["thinking"])
    return text, thinking


def parse_conversation(path: Path) -> Conversation:
    """Parse one session file. Malformed lines and repeated uuids are skipped."""
    session_id = ""
    summary = None
    messages: list[ConversationMessage] = []
    seen: set[str] = set()
    skipped = 0

    with path.open(encoding="utf-8", errors="replace") as fh:
        for raw in fh:
            if not raw.strip():
                continue
            try:
                row = json.loads(raw)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if not isinstance(row, dict):
                continue

            if not session_id and isinstance(row.get("sessionId"), str):
                session_id = row["sessionId"]
            row_type = row.get("type")
            if row_type == "summary" and row.get("summary"):
                summary = str(row["summary"])
                continue
            if row_type not in ("user", "assistant"):
                continue

            message = row.get("message")
            uuid = row.get("uuid")
            if not isinstance(message, dict) or not uuid or uuid in seen:
                continue
            seen.add(uuid)
            text, thinking = _split_content(message.get("content"))
            if not text:
                continue
            messages.append(ConversationMessage(
                role=row_type,
                content=text,
                timestamp=str(row.get("timestamp") or ""),
                uuid=str(uuid),
                thinking=thinking if row_type == "assistant" else None,
            ))

    if skipped:
        logger.debug("Skipped %d malformed line(s) in %s", skipped, path)
    return Conversation(session_id=session_id or path.stem, messages=messages, summary=summary)


def _read_summary(path: Path) -> str | None:
    with path.open(encoding="utf-8", errors="replace") as fh:
        for line_no, raw in enumerate(fh):
            if line_no >= _SUMMARY_SCAN_LINES:
                break
            try:
                row = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(row, dict) and row.get("type") == "summary" and row.get("summary"):
                return str(row["summary"])
    return None


class ConversationStore:
    """Locates and parses session transcripts for a workspace."""

    def __init__(self, cli_home: Path | str) -> None:
        self._root = Path(cli_home).expanduser() / "projects"

    def project_dir(self, workspace_path: str) -> Path:
        return self._root / project_folder_name(workspace_path)

    def session_file(self, workspace_path: str, session_id: str) -> Path | None:
        if not _SESSION_ID.match(session_id or ""):
            raise InvalidRequest(f"Invalid session id: {session_id!r}")
        path = self.project_dir(workspace_path) / f"{session_id}.jsonl"
        return path if path.is_file() else None

    def load(self, workspace_path: str, session_id: str) -> Conversation | None:
        """The parsed conversation, or None when no transcript exists."""
        path = self.session_file(workspace_path, session_id)
        if path is None:
            logger.info("No transcript for session %s in %s", session_id, workspace_path)
            return None
        try:
            return parse_conversation(path)
        except OSError as exc:
            logger.warning("Could not read transcript %s: %s", path, exc)
            return None

    def sessions(self, workspace_path: str, limit: int = MAX_SESSIONS) -> list[SessionSummary]:
        """Sessions recorded for a workspace, most recently modified first."""
        directory = self.project_dir(workspace_path)
        if not directory.is_dir():
            return []
        entries: list[tuple[float, Path]] = []
        for path in directory.glob("*.jsonl"):
            try:
                entries.append((path.stat().st_mtime, path))
            except OSError:
                continue
        entries.sort(key=lambda e: e[0], reverse=True)

        results: list[SessionSummary] = []
        for mtime, path in entries[:limit]:
            try:
                summary = _read_summary(path)
            except OSError as exc:
                logger.warning("Could not read transcript %s: %s", path, exc)
                continue
            results.append(SessionSummary(path.stem, mtime, summary))
        return results
