"""gridbridge: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _configure_logging(level_name: str) -> Path:
    log_dir = Path(os.getenv("GRID_LOG_DIR", str(Path.home() / ".gridbridge" / "logs")))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "gridbridge.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
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


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="gridbridge",
        description="gridbridge: bridge between coding-agent CLIs and a live visualizer",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Interface to bind (default: 127.0.0.1, or GRID_HOST)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Port to listen on (default: 3001, or GRID_PORT)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file for server, observer, bridge and providers",
    )
    parser.add_argument(
        "--watch", metavar="DIR",
        help="Start watching DIR for filesystem changes immediately",
    )
    parser.add_argument(
        "--observer", action="store_true",
        help="Enable observer mode (attribute changes to unbridged agents)",
    )
    args = parser.parse_args()

    import yaml

    from gridbridge.engine.config import BridgeConfig
    from gridbridge.engine.yaml_config import discover_config_path, load_yaml_config
    from gridbridge.server.server import GridServer

    config = BridgeConfig.from_env()
    log_file = _configure_logging(config.log_level)
    logger = logging.getLogger(__name__)

    config_path = discover_config_path(args.config, Path.cwd())
    if config_path is not None:
        logger.info("Using config: %s (exists=%s)", config_path, config_path.exists())
        try:
            config = load_yaml_config(config_path, config)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            logger.error("Could not load config %s: %s", config_path, exc)
            sys.exit(2)
        # Log level may come from the file.
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    else:
        logger.info("No config file found; using defaults")

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if overrides:
        from dataclasses import replace

        config = replace(config, **overrides)

    logger.info(
        "Starting gridbridge cwd=%s host=%s port=%s log=%s",
        Path.cwd(), config.host, config.port, log_file,
    )
    server = GridServer(
        config,
        watch_path=os.path.abspath(args.watch) if args.watch else None,
        observer_mode=args.observer,
    )
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
