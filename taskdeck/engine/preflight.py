"""External CLI presence check, run once at startup."""
from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_VERSION = re.compile(r"\d+\.\d+(?:\.\d+)?")


@dataclass
class CliStatus:
    installed: bool
    version: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"installed": self.installed}
        if self.version:
            data["version"] = self.version
        if self.error:
            data["error"] = self.error
        return data


async def check_cli_installed(command: str, timeout: float = 5.0) -> CliStatus:
    """Run ``<command> --version`` and report whether the CLI is usable."""
    if shutil.which(command) is None:
        logger.warning("CLI %r not found on PATH", command)
        return CliStatus(False, error=f"{command} not found on PATH")
    try:
        proc = await asyncio.create_subprocess_exec(
            command, "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        logger.warning("CLI %r could not be started: %s", command, exc)
        return CliStatus(False, error=str(exc))
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("CLI %r --version timed out after %.0fs", command, timeout)
        return CliStatus(False, error="version check timed out")

    output = stdout.decode("utf-8", errors="replace").strip()
    if proc.returncode != 0:
        logger.warning("CLI %r --version exited %s: %s", command, proc.returncode, output)
        return CliStatus(False, error=output or f"exit code {proc.returncode}")
    match = _VERSION.search(output)
    version = match.group(0) if match else (output.splitlines()[0] if output else None)
    logger.info("CLI %r available (version %s)", command, version)
    return CliStatus(True, version=version)
