"""YAML configuration loader.

Loads a single YAML file layered over the TASKDECK_* environment
configuration. Sections that are absent keep their env/default values.

Example YAML:
    server:
      host: 127.0.0.1
      port: 4001

    cli:
      command: claude
      args: [--verbose]
      skip_permissions: false
      terminal_cols: 120
      terminal_rows: 40
      home: ~/.claude

    tasks:
      input_idle_seconds: 1.5
      interrupt_grace_seconds: 5
      history_max_bytes: 10485760
      stale_task_minutes: 0
      save_debounce_seconds: 0.5

    broadcast:
      observer_queue_size: 1000

    storage:
      data_dir: ~/.taskdeck

    log_level: INFO
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .config import DeckConfig

logger = logging.getLogger(__name__)

PROJECT_CONFIG = Path(".taskdeck") / "taskdeck.yaml"
GLOBAL_CONFIG = Path.home() / ".taskdeck" / "config.yaml"

# section -> {yaml key: (DeckConfig field, coercion)}
_SECTIONS: dict[str, dict[str, tuple[str, Any]]] = {
    "server": {
        "host": ("host", str),
        "port": ("port", int),
    },
    "cli": {
        "command": ("cli_command", str),
        "args": ("cli_args", None),
        "skip_permissions": ("skip_permissions", bool),
        "resume_flag": ("resume_flag", str),
        "system_prompt_flag": ("system_prompt_flag", str),
        "terminal_cols": ("terminal_cols", int),
        "terminal_rows": ("terminal_rows", int),
        "home": ("cli_home", str),
    },
    "tasks": {
        "input_idle_seconds": ("input_idle_seconds", float),
        "interrupt_grace_seconds": ("interrupt_grace_seconds", float),
        "history_max_bytes": ("history_max_bytes", int),
        "stale_task_minutes": ("stale_task_minutes", float),
        "save_debounce_seconds": ("save_debounce_seconds", float),
    },
    "broadcast": {
        "observer_queue_size": ("observer_queue_size", int),
    },
    "storage": {
        "data_dir": ("data_dir", str),
    },
}


def _coerce_args(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return [str(v) for v in value]


def resolve_config_path(explicit: str | Path | None = None) -> Path | None:
    """Pick the config file: explicit path, project file, then global file."""
    if explicit:
        return Path(explicit).expanduser()
    for candidate in (PROJECT_CONFIG, GLOBAL_CONFIG):
        if candidate.is_file():
            return candidate
    return None


def load_yaml_config(path: str | Path, base: DeckConfig | None = None) -> DeckConfig:
    """Load a YAML config file on top of ``base`` (env config by default)."""
    path = Path(path)
    base = base or DeckConfig.from_env()
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping at top level")

    overrides: dict[str, Any] = {}
    for section, data in raw.items():
        if section == "log_level":
            overrides["log_level"] = str(data).upper()
            continue
        keys = _SECTIONS.get(section)
        if keys is None:
            logger.warning("load_yaml_config: ignoring unknown section %r", section)
            continue
        if not isinstance(data, dict):
            logger.warning(
                "load_yaml_config: section %r must be a mapping, ignoring", section
            )
            continue
        for key, value in data.items():
            spec = keys.get(key)
            if spec is None:
                logger.warning(
                    "load_yaml_config: ignoring unknown key %s.%s", section, key
                )
                continue
            field_name, coerce = spec
            if coerce is None:
                overrides[field_name] = _coerce_args(value)
                continue
            try:
                overrides[field_name] = coerce(value)
            except (TypeError, ValueError):
                logger.warning(
                    "load_yaml_config: invalid value for %s.%s: %r, keeping %r",
                    section, key, value, getattr(base, field_name),
                )

    logger.info(
        "Parsed YAML config %s: overrides %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    return replace(base, **overrides)


def load_config(explicit: str | Path | None = None) -> DeckConfig:
    """Resolve and load the effective configuration."""
    path = resolve_config_path(explicit)
    if path is None:
        return DeckConfig.from_env()
    return load_yaml_config(path)
