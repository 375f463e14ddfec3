"""
Command line entry points.

Usage:
    python -m devloop                 # update check, then watcher + server
    python -m devloop.watch           # bundling watcher only

Options:
    --env-file PATH     Read DEVLOOP_* settings from this .env file
    --log-level LEVEL   Override DEVLOOP_LOG_LEVEL
"""

from typing import List, Optional
import argparse
import asyncio
import logging
import sys

from devloop.config import ConfigError, DevLoopConfig, load_config
from devloop.logging_setup import setup_logging
from devloop.supervisor import ProcessSupervisor
from devloop.watch.watcher import run_watcher

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def build_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--env-file", default=None, help="Path to a .env file with DEVLOOP_* settings")
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (overrides DEVLOOP_LOG_LEVEL)"
    )
    return parser


def _prepare(description: str, argv: Optional[List[str]]) -> DevLoopConfig:
    args = build_parser(description).parse_args(argv)
    try:
        config = load_config(env_file=args.env_file)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)
    if args.log_level:
        config.log_level = args.log_level
    setup_logging(config.log_level, config.log_file)
    return config


async def _supervise(config: DevLoopConfig) -> None:
    supervisor = ProcessSupervisor.from_config(config)
    await supervisor.run()


def main(argv: Optional[List[str]] = None) -> None:
    """Run the supervisor until SIGINT/SIGTERM."""
    config = _prepare("Run the update check, bundling watcher and server", argv)
    logger.info(f"Starting dev services in {config.project_dir}")
    asyncio.run(_supervise(config))


def watch_main(argv: Optional[List[str]] = None) -> None:
    """Run the bundling watcher until SIGINT/SIGTERM."""
    config = _prepare("Rebuild entry points when they change", argv)
    asyncio.run(run_watcher(config))
