"""Process supervision for the external CLI.

One OS process per ProcessHandle. The CLI is an interactive terminal
program, so each process runs on its own pseudo-terminal: the slave
side is the child's stdin, stdout and stderr, and the master side is
read and written through the event loop. The history therefore reads
exactly like a terminal, with echo and CRLF line endings.

The handle exposes an ordered event stream: OutputChunk for every read,
WaitingForInput once output has been quiet for ``input_idle_seconds``
and looks like a prompt, SessionIdDetected the first time a CLI session
id appears, and a final ProcessExited. The stream always ends with
ProcessExited, including when the terminal fails.
"""
from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import pty
import struct
import termios
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Union

from .config import DeckConfig
from .errors import ProcessLost, SpawnFailure
from .input_detection import detect_waiting_for_input, extract_session_id, strip_ansi
from .models import WaitingInputType

logger = logging.getLogger(__name__)

READ_SIZE = 4096
# Amount of recent decoded output scanned for prompts and session ids.
RECENT_CHARS = 2048
# Enter key as a terminal sends it.
ENTER = "\r"


def open_terminal(cols: int, rows: int) -> tuple[int, int]:
    """Open a pseudo-terminal sized ``cols`` x ``rows``.

    Returns ``(master, slave)``. The master is non-blocking.
    """
    master, slave = pty.openpty()
    fcntl.ioctl(slave, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
    os.set_blocking(master, False)
    return master, slave


async def _fd_ready(fd: int, writable: bool = False) -> None:
    loop = asyncio.get_running_loop()
    ready = loop.create_future()

    def wake() -> None:
        if not ready.done():
            ready.set_result(None)

    if writable:
        loop.add_writer(fd, wake)
    else:
        loop.add_reader(fd, wake)
    try:
        await ready
    finally:
        if writable:
            loop.remove_writer(fd)
        else:
            loop.remove_reader(fd)


async def read_terminal(fd: int) -> bytes:
    """Next chunk from a terminal master, ``b""`` once the child side closed."""
    while True:
        try:
            return os.read(fd, READ_SIZE)
        except BlockingIOError:
            await _fd_ready(fd)
        except OSError as exc:
            # Linux reports EIO when every slave descriptor is closed.
            if exc.errno == errno.EIO:
                return b""
            raise


async def write_terminal(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except BlockingIOError:
            await _fd_ready(fd, writable=True)
            continue
        view = view[written:]

@dataclass
class OutputChunk:
    data: bytes
    text: str


@dataclass
class WaitingForInput:
    input_type: WaitingInputType
    recent_output: str = ""


@dataclass
class SessionIdDetected:
    session_id: str


@dataclass
class ProcessExited:
    returncode: int | None
    # True when terminate()/kill() was requested before the exit.
    requested: bool = False

    @property
    def crashed(self) -> bool:
        return not self.requested and self.returncode != 0


SupervisorEvent = Union[OutputChunk, WaitingForInput, SessionIdDetected, ProcessExited]


@dataclass
class ProcessHandle:
    """A running (or finished) external CLI process."""
    handle_id: str
    process: asyncio.subprocess.Process
    command: list[str]
    cwd: str
    label: str = ""
    stop_requested: bool = False
    session_id: str | None = None
    # Terminal master; -1 once closed.
    master_fd: int = -1
    _queue: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    _reader: asyncio.Task | None = field(default=None, repr=False)
    _idle_timer: asyncio.TimerHandle | None = field(default=None, repr=False)
    _recent: str = field(default="", repr=False)
    _wait_signalled: bool = field(default=False, repr=False)
    _finished: bool = field(default=False, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def alive(self) -> bool:
        return not self._finished and self.process.returncode is None

    def _emit(self, event: SupervisorEvent) -> None:
        self._queue.put_nowait(event)

    async def events(self) -> AsyncIterator[SupervisorEvent]:
        """Yield events in production order until ProcessExited."""
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, ProcessExited):
                return


class ProcessSupervisor:
    """Spawns, monitors and tears down external CLI processes."""

    def __init__(self, config: DeckConfig | None = None) -> None:
        self._config = config or DeckConfig()
        self._handles: dict[str, ProcessHandle] = {}

    @property
    def handles(self) -> list[ProcessHandle]:
        return list(self._handles.values())

    def build_command(
        self,
        system_prompt: str | None = None,
        resume_session_id: str | None = None,
    ) -> list[str]:
        cfg = self._config
        cmd = [cfg.cli_command, *cfg.cli_args]
        if cfg.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if system_prompt:
            cmd.extend([cfg.system_prompt_flag, system_prompt])
        if resume_session_id:
            cmd.extend([cfg.resume_flag, resume_session_id])
        return cmd

    async def spawn(
        self,
        workspace: str,
        prompt: str,
        system_prompt: str | None = None,
        resume_session_id: str | None = None,
        label: str = "",
    ) -> ProcessHandle:
        """Start one CLI process in ``workspace``.

        Raises SpawnFailure when the workspace is not a directory or the
        executable cannot be started. Nothing is retried here.
        """
        cmd = self.build_command(system_prompt, resume_session_id)
        if not Path(workspace).is_dir():
            raise SpawnFailure(cmd[0], f"workspace {workspace} is not a directory")

        env = dict(os.environ)
        env.setdefault("TERM", "xterm-256color")
        cfg = self._config
        try:
            master, slave = open_terminal(cfg.terminal_cols, cfg.terminal_rows)
        except OSError as exc:
            raise SpawnFailure(cmd[0], f"no pseudo-terminal available: {exc}") from exc
        try:
            # Args are passed as an array, no shell.
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=workspace,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            os.close(master)
            raise SpawnFailure(cmd[0], "executable not found") from exc
        except OSError as exc:
            os.close(master)
            raise SpawnFailure(cmd[0], str(exc)) from exc
        finally:
            # EOF on the master only arrives once the child holds the last slave copy.
            os.close(slave)

        handle = ProcessHandle(
            handle_id=f"proc-{uuid.uuid4().hex[:12]}",
            process=proc,
            command=cmd,
            cwd=workspace,
            label=label,
            session_id=resume_session_id,
            master_fd=master,
        )
        self._handles[handle.handle_id] = handle
        handle._reader = asyncio.create_task(self._read_output(handle))
        logger.info(
            "Spawned %s for %s (pid=%d, handle=%s, resume=%s, tty=%dx%d)",
            cmd[0], label or "task", proc.pid, handle.handle_id,
            bool(resume_session_id), cfg.terminal_cols, cfg.terminal_rows,
        )

        # A resumed session continues where it stopped; only fresh
        # sessions receive the prompt.
        if prompt and not resume_session_id:
            try:
                await self.write(handle, prompt + ENTER)
            except ProcessLost:
                logger.warning(
                    "Process %s exited before the prompt was delivered",
                    handle.handle_id,
                )
        return handle

    async def write(self, handle: ProcessHandle, text: str) -> None:
        """Type ``text`` into the process terminal. Raises ProcessLost if it is gone."""
        if not handle.alive or handle.master_fd < 0:
            raise ProcessLost(handle.label or handle.handle_id, handle.returncode)
        try:
            await write_terminal(handle.master_fd, text.encode("utf-8"))
        except OSError as exc:
            raise ProcessLost(
                handle.label or handle.handle_id, handle.returncode
            ) from exc

    async def terminate(self, handle: ProcessHandle, grace: float | None = None) -> None:
        """SIGTERM, then SIGKILL after ``grace`` seconds. No-op if already gone."""
        if not handle.alive:
            return
        grace = self._config.interrupt_grace_seconds if grace is None else grace
        handle.stop_requested = True
        try:
            handle.process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(
                "Process %s ignored SIGTERM for %.1fs, killing",
                handle.handle_id, grace,
            )
            await self.kill(handle)

    async def kill(self, handle: ProcessHandle) -> None:
        """Force-kill immediately. No-op if already gone."""
        if handle.process.returncode is not None:
            return
        handle.stop_requested = True
        try:
            handle.process.kill()
        except ProcessLookupError:
            return
        await handle.process.wait()

    async def shutdown(self) -> None:
        """Kill every process this supervisor still owns."""
        handles = list(self._handles.values())
        for handle in handles:
            await self.kill(handle)
        for handle in handles:
            if handle._reader is not None and not handle._reader.done():
                try:
                    await asyncio.wait_for(handle._reader, timeout=2)
                except asyncio.TimeoutError:
                    handle._reader.cancel()
        logger.info("Supervisor shut down (%d process(es) killed)", len(handles))

    # ── Output reader ─────────────────────────────────────────────

    async def _read_output(self, handle: ProcessHandle) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await read_terminal(handle.master_fd)
                if not chunk:
                    break
                self._on_chunk(handle, chunk, decoder.decode(chunk))
        except OSError as exc:
            logger.warning("Terminal for %s failed: %s", handle.handle_id, exc)
        except Exception:
            logger.exception("Reader for %s failed", handle.handle_id)

        # A multibyte sequence cut off by EOF still reaches observers.
        tail = decoder.decode(b"", final=True)
        if tail:
            self._on_chunk(handle, b"", tail)

        returncode = await handle.process.wait()
        if handle._idle_timer is not None:
            handle._idle_timer.cancel()
            handle._idle_timer = None
        handle._finished = True
        fd, handle.master_fd = handle.master_fd, -1
        os.close(fd)
        self._handles.pop(handle.handle_id, None)
        logger.info(
            "Process %s exited (returncode=%s, requested=%s)",
            handle.handle_id, returncode, handle.stop_requested,
        )
        handle._emit(ProcessExited(returncode, requested=handle.stop_requested))

    def _on_chunk(self, handle: ProcessHandle, data: bytes, text: str) -> None:
        handle._recent = (handle._recent + text)[-RECENT_CHARS:]
        handle._emit(OutputChunk(data, text))
        self._check_session_id(handle)
        self._restart_idle_timer(handle)

    def _check_session_id(self, handle: ProcessHandle) -> None:
        if handle.session_id is not None:
            return
        session_id = extract_session_id(strip_ansi(handle._recent))
        if session_id:
            handle.session_id = session_id
            handle._emit(SessionIdDetected(session_id))

    def _restart_idle_timer(self, handle: ProcessHandle) -> None:
        if handle._idle_timer is not None:
            handle._idle_timer.cancel()
        handle._wait_signalled = False
        loop = asyncio.get_running_loop()
        handle._idle_timer = loop.call_later(
            self._config.input_idle_seconds, self._on_quiet, handle
        )

    def _on_quiet(self, handle: ProcessHandle) -> None:
        handle._idle_timer = None
        if handle._wait_signalled or not handle.alive:
            return
        recent = strip_ansi(handle._recent)
        input_type = detect_waiting_for_input(recent)
        if input_type is None:
            return
        handle._wait_signalled = True
        handle._emit(WaitingForInput(input_type, recent[-500:]))
