#!/usr/bin/env python3
"""
CLI for the producer and consumer processes.

Usage:
    python -m backup_sentinel produce '{"t":"2025/11/3 16:43:40", "e":"删除", ...}'
    python -m backup_sentinel consume --cmd "rsync -a %fullfile% /backup/"
    python -m backup_sentinel consume --check
    python -m backup_sentinel watch --roots /path/to/folder --consume
    python -m backup_sentinel status
"""

import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .actions import ActionChain
from .config import SentinelConfig
from .dispatcher import Dispatcher
from .exceptions import ActionUnresolvedError, SentinelError
from .producer import FSProducer, ingest_arguments
from .store import NotificationStore

logger = logging.getLogger("backup_sentinel.cli")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Handlers installed by setup_logging, replaced on the next call
_installed_handlers: List[logging.Handler] = []


def setup_logging(verbose: bool = False, log_file: Optional[str] = None, console: bool = True) -> None:
    """
    Configure the root logger.

    Args:
        verbose: Log DEBUG to the console instead of INFO
        log_file: Optional file receiving DEBUG and above
        console: Whether to log to the console at all
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)
        _installed_handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        _installed_handlers.append(file_handler)

    logging.getLogger("watchdog").setLevel(logging.WARNING)


class GracefulShutdown:
    """Handle graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self.should_exit = False
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self.should_exit = True


def build_config(args) -> SentinelConfig:
    """Merge environment configuration with command-line overrides."""
    return SentinelConfig.from_env(
        db_path=Path(args.db) if args.db else None,
        window_ms=getattr(args, "window_ms", None),
        tick_interval_ms=getattr(args, "tick_ms", None),
        default_action=getattr(args, "cmd", None),
        action_file=Path(args.cmd_file) if getattr(args, "cmd_file", None) else None,
        create_suppresses_modify=True if getattr(args, "create_suppresses_modify", False) else None,
    )


def open_store(config: SentinelConfig) -> NotificationStore:
    db_path = config.db_path.resolve()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return NotificationStore(db_path)


def cmd_produce(args) -> int:
    """Store one Directory Monitor notification."""
    config = build_config(args)
    try:
        with open_store(config) as store:
            ingest_arguments(store, args.payload, config)
    except SentinelError as e:
        logger.error(f"Producer failed: {e}")
        return 1
    return 0


def cmd_consume(args) -> int:
    """Run the dispatch loop, or list pending notifications with --check."""
    config = build_config(args)

    try:
        store = open_store(config)
    except SentinelError as e:
        logger.error(f"Open store {config.db_path} failed: {e}")
        return 1

    with store:
        if args.check:
            Dispatcher(store, config, resolver=ActionChain([])).check()
            return 0

        try:
            resolver = ActionChain.from_config(config)
        except ActionUnresolvedError as e:
            logger.error(f"Load action file failed: {e}")
            return 1

        dispatcher = Dispatcher(store, config, resolver=resolver)
        logger.info(f"Consumer running on {config.db_path} (window={config.window_ms}ms, tick={config.tick_interval_ms}ms)")
        logger.info("Press Ctrl+C to stop")

        shutdown = GracefulShutdown()
        dispatcher.start_async()
        try:
            while not shutdown.should_exit:
                time.sleep(0.5)
        finally:
            dispatcher.stop()

    logger.info("Consumer stopped")
    return 0


def cmd_watch(args) -> int:
    """Watch directories natively and store their notifications."""
    config = build_config(args)
    config.recursive = not args.no_recursive

    roots = [Path(r).resolve() for r in args.roots]
    for root in roots:
        if not root.is_dir():
            logger.error(f"Root path is not a directory: {root}")
            return 1

    try:
        store = open_store(config)
    except SentinelError as e:
        logger.error(f"Open store {config.db_path} failed: {e}")
        return 1

    try:
        resolver = ActionChain.from_config(config) if args.consume else None
    except ActionUnresolvedError as e:
        logger.error(f"Load action file failed: {e}")
        store.close()
        return 1

    shutdown = GracefulShutdown()
    producer = FSProducer(store, config)
    dispatcher = Dispatcher(store, config, resolver=resolver) if args.consume else None

    with store:
        for root in roots:
            producer.start_watching(root)
        if dispatcher:
            dispatcher.start_async()

        logger.info(f"Watcher running with {len(roots)} root(s), database: {config.db_path}")
        logger.info("Press Ctrl+C to stop")
        try:
            while not shutdown.should_exit:
                time.sleep(0.5)
        finally:
            if dispatcher:
                dispatcher.stop()
            producer.stop_all()

    logger.info("Watcher stopped")
    return 0


def cmd_status(args) -> int:
    """Print the number of notifications per state."""
    config = build_config(args)
    try:
        with open_store(config) as store:
            counts = store.counts()
    except SentinelError as e:
        logger.error(f"Status failed: {e}")
        return 1

    print(f"Database: {config.db_path}")
    for state, count in counts.items():
        print(f"  {state.name.lower():<10} {count}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="backup-sentinel",
        description="Durable, coalescing queue for file system notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Called by Directory Monitor for every change
  backup-sentinel produce {"t":"%date% %time%", "e":"%event%", "d":"%dirpath%", "f":"%fullfile%"}

  # Dispatch pending notifications through an action file
  backup-sentinel consume --cmd-file actions.json

  # Watch folders natively and dispatch in the same process
  backup-sentinel watch --roots ./documents --consume --cmd "echo %fullfile%"
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--db", default=None, help="Notification database path (default: backupSentinel.db or SENTINEL_DB)")
    parser.add_argument("--log-file", default=None, help="Also write debug logs to this file")
    parser.add_argument("--env-file", default=None, help="Load environment variables from this .env file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Producer command
    produce_parser = subparsers.add_parser("produce", help="Store one Directory Monitor notification")
    produce_parser.add_argument("payload", nargs=argparse.REMAINDER, help="Directory Monitor JSON payload")
    produce_parser.set_defaults(func=cmd_produce)

    def add_dispatch_options(p):
        p.add_argument("--cmd", default=None, help="Default action; %%fullfile%% and %%oldfullfile%% are substituted")
        p.add_argument("--cmd-file", default=None, help="JSON action file with add_cmd/modify_cmd/rename_cmd/move_cmd/delete_cmd")
        p.add_argument("--window-ms", type=int, default=None, help="Coalescing window in ms (default: 1000)")
        p.add_argument("--tick-ms", type=int, default=None, help="Dispatch interval in ms (default: 1000)")
        p.add_argument("--create-suppresses-modify", action="store_true",
                       help="Let a CREATE swallow a following MODIFY on the same path")

    # Consumer command
    consume_parser = subparsers.add_parser("consume", help="Dispatch pending notifications")
    consume_parser.add_argument("--check", action="store_true", help="Only list pending notifications")
    add_dispatch_options(consume_parser)
    consume_parser.set_defaults(func=cmd_consume)

    # Native watcher command
    watch_parser = subparsers.add_parser("watch", help="Watch directories and store notifications")
    watch_parser.add_argument("--roots", nargs="+", required=True, help="Root directories to watch")
    watch_parser.add_argument("--no-recursive", action="store_true", help="Do not watch subdirectories")
    watch_parser.add_argument("--consume", action="store_true", help="Also run the dispatch loop")
    add_dispatch_options(watch_parser)
    watch_parser.set_defaults(func=cmd_watch)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show notification counts per state")
    status_parser.set_defaults(func=cmd_status)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.env_file:
        load_dotenv(args.env_file)
    else:
        load_dotenv()

    # Producer runs once per watcher event; stay quiet unless asked
    console = args.command != "produce" or args.verbose
    setup_logging(verbose=args.verbose, log_file=args.log_file, console=console)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
