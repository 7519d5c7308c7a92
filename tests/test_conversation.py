from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

import pytest

from taskdeck.engine.errors import InvalidRequest
from taskdeck.shared.services.conversation import ConversationStore, project_folder_name

WORKSPACE = "/home/dev/app"


def _write_session(home: Path, session_id: str, rows: list, mtime: float | None = None) -> Path:
    directory = home / "projects" / project_folder_name(WORKSPACE)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{session_id}.jsonl"
    lines = [row if isinstance(row, str) else json.dumps(row) for row in rows]
    path.write_text("\n".join(lines) + "\n")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_project_folder_name_replaces_slashes() -> None:
    assert project_folder_name("/home/dev/app") == "-home-dev-app"


def test_conversation_keeps_user_and_assistant_text() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        home = Path(tmpdir)
        _write_session(home, "sess-1", [
            {"type": "summary", "summary": "Count to five"},
            {
                "type": "user", "uuid": "u1", "sessionId": "sess-1",
                "timestamp": "2026-01-01T00:00:00Z",
                "message": {"role": "user", "content": "count to 5"},
            },
            "{not json",
            {
                "type": "assistant", "uuid": "a1", "timestamp": "2026-01-01T00:00:02Z",
                "message": {"role": "assistant", "content": [
                    {"type": "thinking", "thinking": "easy"},
                    {"type": "text", "text": "1 2 "},
                    {"type": "text", "text": "3 4 5"},
                ]},
            },
            {"type": "assistant", "uuid": "a1", "message": {"content": "duplicate"}},
            {"type": "assistant", "uuid": "a2", "message": {"content": [
                {"type": "thinking", "thinking": "only a thought"},
            ]}},
            {"type": "system", "uuid": "s1", "message": {"content": "not a turn"}},
        ])

        conversation = ConversationStore(home).load(WORKSPACE, "sess-1")
        assert conversation is not None
        assert conversation.session_id == "sess-1"
        assert conversation.summary == "Count to five"
        assert [m.role for m in conversation.messages] == ["user", "assistant"]
        assert conversation.messages[1].content == "1 2 3 4 5"
        assert conversation.messages[1].thinking == "easy"
        assert conversation.to_dict()["messages"][0] == {
            "role": "user",
            "content": "count to 5",
            "timestamp": "2026-01-01T00:00:00Z",
            "uuid": "u1",
        }


def test_missing_transcript_and_bad_session_ids() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = ConversationStore(tmpdir)
        assert store.load(WORKSPACE, "sess-none") is None
        with pytest.raises(InvalidRequest):
            store.load(WORKSPACE, "../escape")
        with pytest.raises(InvalidRequest):
            store.load(WORKSPACE, "")


def test_session_id_falls_back_to_file_name() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        _write_session(Path(tmpdir), "sess-2", [
            {"type": "user", "uuid": "u1", "message": {"content": "hi"}},
        ])
        conversation = ConversationStore(tmpdir).load(WORKSPACE, "sess-2")
        assert conversation.session_id == "sess-2"
        assert "summary" not in conversation.to_dict()


def test_sessions_newest_first_with_summaries() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        home = Path(tmpdir)
        _write_session(home, "old", [{"type": "summary", "summary": "First try"}], mtime=1_000_000)
        _write_session(home, "new", [{"type": "user", "uuid": "u1", "message": {"content": "x"}}],
                       mtime=2_000_000)

        store = ConversationStore(home)
        sessions = store.sessions(WORKSPACE)
        assert [s.session_id for s in sessions] == ["new", "old"]
        assert sessions[0].summary is None
        assert sessions[1].summary == "First try"
        assert sessions[1].to_dict()["lastModified"].startswith("1970-01-12")
        assert store.sessions(WORKSPACE, limit=1)[0].session_id == "new"
        assert store.sessions("/elsewhere") == []
