"""
Backup Sentinel Package

A durable, coalescing queue between a file system watcher and a backup
action. Producers append notifications to a SQLite store; a consumer
periodically selects a time window of pending notifications, merges the
ones that describe a single logical operation, and runs an external
action for each of the rest.

Features:
- Append-only SQLite store with one-way state transitions
- DELETE+CREATE correlation into MOVE within a time window
- Suppression of the MODIFY that trails a rename
- Per-notification, per-process and default action resolution
- Directory Monitor payload parsing and native watchdog watching
"""

from .models import (
    EventKind,
    EventState,
    Notification,
    Window,
    ActionResult,
)

from .config import SentinelConfig

from .exceptions import (
    SentinelError,
    StoreError,
    StoreUnavailableError,
    IntegrityError,
    PayloadError,
    NotFoundError,
    ConflictError,
    ActionError,
    ActionUnresolvedError,
    ActionFailedError,
    DispatcherAlreadyRunningError,
)

from .store import NotificationStore
from .coalescer import Coalescer, find_next_match
from .actions import (
    ActionChain,
    ActionFileCache,
    ActionRunner,
    render_command,
    load_action_file,
)
from .payload import parse_arguments, parse_payload
from .producer import FSProducer, ingest_arguments
from .dispatcher import Dispatcher, DispatchReport


__all__ = [
    # Models
    "EventKind",
    "EventState",
    "Notification",
    "Window",
    "ActionResult",
    # Config
    "SentinelConfig",
    # Exceptions
    "SentinelError",
    "StoreError",
    "StoreUnavailableError",
    "IntegrityError",
    "PayloadError",
    "NotFoundError",
    "ConflictError",
    "ActionError",
    "ActionUnresolvedError",
    "ActionFailedError",
    "DispatcherAlreadyRunningError",
    # Components
    "NotificationStore",
    "Coalescer",
    "find_next_match",
    "ActionChain",
    "ActionFileCache",
    "ActionRunner",
    "render_command",
    "load_action_file",
    "parse_arguments",
    "parse_payload",
    "FSProducer",
    "ingest_arguments",
    # Main Process
    "Dispatcher",
    "DispatchReport",
]

__version__ = "0.1.0"
