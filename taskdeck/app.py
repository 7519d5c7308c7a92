"""TaskDeck: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from taskdeck.engine.config import DeckConfig


def configure_logging(config: DeckConfig) -> Path:
    """Root logger: rotating file under the data dir plus stderr."""
    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "taskdeck-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


async def _serve(config: DeckConfig) -> None:
    from taskdeck.engine.preflight import check_cli_installed
    from taskdeck.web.server import TaskDeckServer

    logger = logging.getLogger(__name__)
    cli_status = await check_cli_installed(config.cli_command)
    if not cli_status.installed:
        logger.warning(
            "%s is not installed (%s); task creation is disabled",
            config.cli_command, cli_status.error,
        )
    server = TaskDeckServer(config, cli_status=cli_status)
    await server.start()


def main() -> None:
    import argparse

    from taskdeck.engine.yaml_config import load_config, resolve_config_path

    parser = argparse.ArgumentParser(
        prog="taskdeck",
        description="TaskDeck: orchestrate long-running agent CLI sessions",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Interface to bind (default from config, 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Server port (default from config, 4001)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./.taskdeck/taskdeck.yaml, then ~/.taskdeck/config.yaml)",
    )
    parser.add_argument(
        "--data-dir", metavar="DIR",
        help="Directory for tasks, archive, workspaces and logs",
    )
    args = parser.parse_args()

    config_path = resolve_config_path(args.config)
    config = load_config(args.config)
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.data_dir:
        config.data_dir = args.data_dir

    log_file = configure_logging(config)
    logging.getLogger(__name__).info(
        "Starting TaskDeck server cwd=%s port=%s config=%s log=%s",
        Path.cwd(),
        config.port,
        config_path or "<none>",
        log_file,
    )

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
