"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TASKDECK_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}


def _default_data_dir() -> str:
    return str(Path.home() / ".taskdeck")


def _default_cli_home() -> str:
    return str(Path.home() / ".claude")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a number), using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not an integer), using %s", name, raw, default)
        return default


@dataclass
class DeckConfig:
    """Server, CLI and task engine configuration."""

    # Transport
    host: str = "127.0.0.1"
    port: int = 4001

    # External CLI
    cli_command: str = "claude"
    cli_args: list[str] = field(default_factory=list)
    skip_permissions: bool = False
    resume_flag: str = "--resume"
    system_prompt_flag: str = "--system-prompt"
    # Pseudo-terminal size the CLI sees.
    terminal_cols: int = 120
    terminal_rows: int = 40
    # Where the CLI keeps its per-project session transcripts.
    cli_home: str = field(default_factory=_default_cli_home)

    # Task engine
    # Output must stay quiet this long before wait-for-input detection runs.
    input_idle_seconds: float = 1.5
    # Grace period between SIGTERM and SIGKILL on interrupt.
    interrupt_grace_seconds: float = 5.0
    history_max_bytes: int = 10 * 1024 * 1024
    # Archive exited/interrupted tasks idle longer than this. 0 disables.
    stale_task_minutes: float = 0.0
    save_debounce_seconds: float = 0.5

    # Broadcast
    observer_queue_size: int = 1000

    # Storage
    data_dir: str = field(default_factory=_default_data_dir)

    # Logging
    log_level: str = "INFO"

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def tasks_file(self) -> Path:
        return self.data_path / "tasks.json"

    @property
    def archive_dir(self) -> Path:
        return self.data_path / "archive"

    @property
    def workspaces_file(self) -> Path:
        return self.data_path / "workspaces.json"

    @property
    def log_dir(self) -> Path:
        return self.data_path / "logs"

    @classmethod
    def from_env(cls) -> DeckConfig:
        """Load configuration from TASKDECK_* environment variables."""
        deck_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TASKDECK_")
        }
        if deck_vars:
            logger.info(
                "DeckConfig.from_env: TASKDECK_* env overrides: %s",
                ", ".join(sorted(deck_vars)),
            )
        defaults = cls()
        config = cls(
            host=os.getenv("TASKDECK_HOST", defaults.host),
            port=_env_int("TASKDECK_PORT", defaults.port),
            cli_command=os.getenv("TASKDECK_CLI_COMMAND", defaults.cli_command),
            cli_args=shlex.split(os.getenv("TASKDECK_CLI_ARGS", "")),
            skip_permissions=(
                os.getenv("TASKDECK_SKIP_PERMISSIONS", "").lower() in _TRUE
            ),
            terminal_cols=_env_int("TASKDECK_TERMINAL_COLS", defaults.terminal_cols),
            terminal_rows=_env_int("TASKDECK_TERMINAL_ROWS", defaults.terminal_rows),
            cli_home=os.getenv("TASKDECK_CLI_HOME", defaults.cli_home),
            input_idle_seconds=_env_float(
                "TASKDECK_INPUT_IDLE_SECONDS", defaults.input_idle_seconds
            ),
            interrupt_grace_seconds=_env_float(
                "TASKDECK_INTERRUPT_GRACE_SECONDS", defaults.interrupt_grace_seconds
            ),
            history_max_bytes=_env_int(
                "TASKDECK_HISTORY_MAX_BYTES", defaults.history_max_bytes
            ),
            stale_task_minutes=_env_float(
                "TASKDECK_STALE_TASK_MINUTES", defaults.stale_task_minutes
            ),
            save_debounce_seconds=_env_float(
                "TASKDECK_SAVE_DEBOUNCE_SECONDS", defaults.save_debounce_seconds
            ),
            observer_queue_size=_env_int(
                "TASKDECK_OBSERVER_QUEUE_SIZE", defaults.observer_queue_size
            ),
            data_dir=os.getenv("TASKDECK_DATA_DIR", defaults.data_dir),
            log_level=os.getenv("TASKDECK_LOG_LEVEL", defaults.log_level).upper(),
        )
        logger.debug(
            "DeckConfig.from_env: cli=%s port=%s data_dir=%s log_level=%s",
            config.cli_command, config.port, config.data_dir, config.log_level,
        )
        return config
