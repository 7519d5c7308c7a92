from __future__ import annotations

import asyncio
import sys
import tempfile

import pytest

from taskdeck.engine.config import DeckConfig
from taskdeck.engine.errors import ProcessLost, SpawnFailure
from taskdeck.engine.models import WaitingInputType
from taskdeck.engine.supervisor import (
    OutputChunk,
    ProcessExited,
    ProcessSupervisor,
    SessionIdDetected,
    WaitingForInput,
)


def _supervisor(script: str, **overrides) -> ProcessSupervisor:
    config = DeckConfig(
        cli_command=sys.executable,
        cli_args=["-u", "-c", script],
        input_idle_seconds=0.2,
        interrupt_grace_seconds=2.0,
        **overrides,
    )
    return ProcessSupervisor(config)


async def _collect(handle, until=ProcessExited, timeout: float = 10.0) -> list:
    events: list = []

    async def run() -> None:
        async for event in handle.events():
            events.append(event)
            if isinstance(event, until):
                return

    await asyncio.wait_for(run(), timeout=timeout)
    return events


def _output(events: list) -> bytes:
    return b"".join(e.data for e in events if isinstance(e, OutputChunk))


def test_build_command_appends_flags() -> None:
    supervisor = ProcessSupervisor(DeckConfig(cli_args=["--verbose"], skip_permissions=True))
    assert supervisor.build_command("be brief", "sess-1") == [
        "claude", "--verbose", "--dangerously-skip-permissions",
        "--system-prompt", "be brief", "--resume", "sess-1",
    ]
    assert supervisor.build_command() == ["claude", "--verbose", "--dangerously-skip-permissions"]


@pytest.mark.asyncio
async def test_prompt_is_written_and_output_streamed() -> None:
    script = "import sys; line = sys.stdin.readline(); print('got:', line.strip())"
    with tempfile.TemporaryDirectory() as tmpdir:
        supervisor = _supervisor(script)
        handle = await supervisor.spawn(tmpdir, "count to 5", label="task-1")
        events = await _collect(handle)

        # The terminal echoes the typed prompt before the child answers.
        assert _output(events).endswith(b"got: count to 5\r\n")
        exited = events[-1]
        assert isinstance(exited, ProcessExited)
        assert exited.returncode == 0
        assert exited.crashed is False
        assert handle.alive is False
        assert supervisor.handles == []


@pytest.mark.asyncio
async def test_quiet_prompt_emits_waiting_for_input_once() -> None:
    script = (
        "import sys\n"
        "sys.stdin.readline()\n"
        "print('Overwrite config? (y/n)', flush=True)\n"
        "answer = sys.stdin.readline()\n"
        "print('answer=' + answer.strip(), flush=True)\n"
    )
    with tempfile.TemporaryDirectory() as tmpdir:
        supervisor = _supervisor(script)
        handle = await supervisor.spawn(tmpdir, "go")

        events = await _collect(handle, until=WaitingForInput)
        assert events[-1].input_type == WaitingInputType.CONFIRMATION
        assert "Overwrite config?" in events[-1].recent_output

        await supervisor.write(handle, "y\r")
        rest = await _collect(handle)
        assert b"answer=y" in _output(rest)
        assert not any(isinstance(e, WaitingForInput) for e in rest)


@pytest.mark.asyncio
async def test_session_id_is_detected_once() -> None:
    sid = "0f8fad5b-d9cb-469f-a165-70867728950e"
    script = f"print('session: {sid}'); print('session: {sid}')"
    with tempfile.TemporaryDirectory() as tmpdir:
        supervisor = _supervisor(script)
        handle = await supervisor.spawn(tmpdir, "")
        events = await _collect(handle)

        detected = [e for e in events if isinstance(e, SessionIdDetected)]
        assert [e.session_id for e in detected] == [sid]
        assert handle.session_id == sid


@pytest.mark.asyncio
async def test_resume_skips_prompt_delivery() -> None:
    script = "import sys; print('args', sys.argv[1:]); print('stdin', repr(sys.stdin.read()))"
    with tempfile.TemporaryDirectory() as tmpdir:
        supervisor = _supervisor(script)
        handle = await supervisor.spawn(tmpdir, "ignored", resume_session_id="sess-9")
        await supervisor.write(handle, "\x04")
        events = await _collect(handle)

        output = _output(events).decode()
        assert "'--resume', 'sess-9'" in output
        assert "stdin ''" in output


@pytest.mark.asyncio
async def test_unrequested_nonzero_exit_is_a_crash() -> None:
    script = "import sys; print('boom'); sys.exit(3)"
    with tempfile.TemporaryDirectory() as tmpdir:
        supervisor = _supervisor(script)
        handle = await supervisor.spawn(tmpdir, "")
        events = await _collect(handle)

        assert events[-1].returncode == 3
        assert events[-1].crashed is True
        with pytest.raises(ProcessLost):
            await supervisor.write(handle, "more\n")


@pytest.mark.asyncio
async def test_terminate_is_requested_and_idempotent() -> None:
    script = "import time; print('ready', flush=True); time.sleep(60)"
    with tempfile.TemporaryDirectory() as tmpdir:
        supervisor = _supervisor(script)
        handle = await supervisor.spawn(tmpdir, "")
        await _collect(handle, until=OutputChunk)

        await supervisor.terminate(handle)
        await supervisor.terminate(handle)
        events = await _collect(handle)
        assert events[-1].requested is True
        assert events[-1].crashed is False


@pytest.mark.asyncio
async def test_spawn_failures() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        missing = ProcessSupervisor(DeckConfig(cli_command=f"{tmpdir}/no-such-cli"))
        with pytest.raises(SpawnFailure, match="executable not found"):
            await missing.spawn(tmpdir, "hello")

        supervisor = _supervisor("pass")
        with pytest.raises(SpawnFailure, match="not a directory"):
            await supervisor.spawn(f"{tmpdir}/missing-dir", "hello")


@pytest.mark.asyncio
async def test_shutdown_kills_remaining_processes() -> None:
    script = "import time; time.sleep(60)"
    with tempfile.TemporaryDirectory() as tmpdir:
        supervisor = _supervisor(script)
        first = await supervisor.spawn(tmpdir, "")
        second = await supervisor.spawn(tmpdir, "")

        await supervisor.shutdown()
        assert first.alive is False
        assert second.alive is False
        assert supervisor.handles == []


@pytest.mark.asyncio
async def test_child_runs_on_a_sized_terminal() -> None:
    script = (
        "import os, sys\n"
        "size = os.get_terminal_size()\n"
        "tty = sys.stdin.isatty() and sys.stdout.isatty() and sys.stderr.isatty()\n"
        "print('tty' if tty else 'no-tty', size.columns, size.lines)\n"
    )
    with tempfile.TemporaryDirectory() as tmpdir:
        supervisor = _supervisor(script, terminal_cols=100, terminal_rows=30)
        handle = await supervisor.spawn(tmpdir, "")
        events = await _collect(handle)

        assert _output(events) == b"tty 100 30\r\n"
        assert handle.master_fd == -1


@pytest.mark.asyncio
async def test_truncated_multibyte_output_is_flushed_at_exit() -> None:
    script = "import os; os.write(1, b'caf\\xc3')"
    with tempfile.TemporaryDirectory() as tmpdir:
        supervisor = _supervisor(script)
        handle = await supervisor.spawn(tmpdir, "")
        events = await _collect(handle)

        chunks = [e for e in events if isinstance(e, OutputChunk)]
        assert b"".join(c.data for c in chunks) == b"caf\xc3"
        assert "".join(c.text for c in chunks) == "caf\ufffd"
