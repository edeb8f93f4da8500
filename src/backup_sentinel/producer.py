"""Producer path: turning watcher output into stored notifications."""

import logging
import os
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Dict, List, Optional

MAX_TRACKED_SIZES = 10000

from watchdog.observers import Observer
from watchdog.events import (
    FileSystemEventHandler,
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
)

from .config import SentinelConfig
from .models import EventKind, Notification
from .payload import parse_arguments
from .store import NotificationStore

logger = logging.getLogger(__name__)


def ingest_arguments(store: NotificationStore, args: List[str], config: Optional[SentinelConfig] = None) -> Optional[int]:
    """
    Parse one Directory Monitor invocation and persist it.

    Args:
        store: Store to insert into
        args: Producer command-line arguments
        config: Sentinel configuration (for skip patterns)

    Returns:
        ID of the inserted notification, or None if it was skipped

    Raises:
        PayloadError: If the payload is missing or malformed
        IntegrityError: If the notification is incomplete
        StoreUnavailableError: If the store cannot be written
    """
    config = config or SentinelConfig()
    notification = parse_arguments(args, config.skip_patterns)
    if notification is None:
        return None

    logger.info(f"{notification.to_dict()}")
    notification_id = store.insert(notification)
    logger.debug(f"persisted event id={notification_id}")
    return notification_id


class FSEventHandler(FileSystemEventHandler):
    """Handler that converts watchdog events into notifications."""

    def __init__(
        self,
        sink: Callable[[Notification], None],
        config: SentinelConfig,
        root: Path,
        exclude: Optional[str] = None,
        max_tracked: int = MAX_TRACKED_SIZES,
    ):
        super().__init__()
        self.sink = sink
        self.config = config
        self.root = root
        # The store's own files (db, -wal, -shm) must not feed back into it
        self.exclude = exclude
        # Last size seen per path, so a DELETE can still be paired by size.
        # Least recently touched paths are evicted beyond max_tracked.
        self._sizes: "OrderedDict[str, int]" = OrderedDict()
        self.max_tracked = max_tracked
        self._lock = threading.Lock()

    def _stat_size(self, path: str) -> int:
        try:
            size = os.stat(path).st_size
        except OSError:
            size = 0
        with self._lock:
            self._sizes[path] = size
            self._sizes.move_to_end(path)
            while len(self._sizes) > self.max_tracked:
                self._sizes.popitem(last=False)
        return size

    def _forget_size(self, path: str) -> int:
        with self._lock:
            return self._sizes.pop(path, 0)

    def _emit(self, kind: EventKind, raw_kind: str, path: str, size: int = 0, old_path: str = "") -> None:
        """Build a Notification and hand it to the sink."""
        if self.exclude and path.startswith(self.exclude):
            return
        if self.config.should_skip(path) or (old_path and self.config.should_skip(old_path)):
            return

        notification = Notification(
            occurred_at=time.time(),
            kind=kind,
            raw_kind=raw_kind,
            directory=os.path.dirname(path),
            path=path,
            old_path=old_path,
            size=size,
        )
        self.sink(notification)

    def on_created(self, event):
        if isinstance(event, DirCreatedEvent):
            return
        path = os.fsdecode(event.src_path)
        self._emit(EventKind.CREATE, "created", path, size=self._stat_size(path))

    def on_deleted(self, event):
        if isinstance(event, DirDeletedEvent):
            return
        path = os.fsdecode(event.src_path)
        self._emit(EventKind.DELETE, "deleted", path, size=self._forget_size(path))

    def on_modified(self, event):
        if isinstance(event, DirModifiedEvent):
            return
        path = os.fsdecode(event.src_path)
        self._emit(EventKind.MODIFY, "modified", path, size=self._stat_size(path))

    def on_moved(self, event):
        if isinstance(event, DirMovedEvent):
            return
        src = os.fsdecode(event.src_path)
        dest = os.fsdecode(event.dest_path)
        self._forget_size(src)
        kind = EventKind.RENAME if os.path.dirname(src) == os.path.dirname(dest) else EventKind.MOVE
        self._emit(kind, "moved", dest, size=self._stat_size(dest), old_path=src)


class FSProducer:
    """
    Watches directories natively and inserts notifications into the store.

    Manages one watchdog observer per root, as an alternative to an
    external directory-watching tool invoking the producer per event.
    """

    def __init__(self, store: NotificationStore, config: Optional[SentinelConfig] = None):
        """
        Initialize the producer.

        Args:
            store: Store notifications are inserted into
            config: Sentinel configuration
        """
        self.store = store
        self.config = config or SentinelConfig()
        self._observers: Dict[Path, Observer] = {}
        self._lock = threading.Lock()

    def _insert(self, notification: Notification) -> None:
        # Runs on the observer thread; a failed insert must not kill it
        try:
            notification_id = self.store.insert(notification)
            logger.debug(f"persisted event id={notification_id} {notification.kind.value} {notification.path}")
        except Exception as e:
            logger.error(f"Insert failed for {notification.kind.value} {notification.path}: {e}")

    def start_watching(self, root: Path) -> bool:
        """
        Start watching a root directory.

        Args:
            root: Path to the root directory

        Returns:
            True if watching started, False if already watching
        """
        root = Path(root).resolve()

        with self._lock:
            if root in self._observers:
                return False

            observer = Observer()
            handler = FSEventHandler(self._insert, self.config, root, exclude=str(self.store.db_path.resolve()))
            observer.schedule(handler, str(root), recursive=self.config.recursive)
            observer.start()

            self._observers[root] = observer
            logger.info(f"Started watching {root}")
            return True

    def stop_watching(self, root: Path) -> bool:
        """
        Stop watching a root directory.

        Returns:
            True if watching stopped, False if not watching
        """
        root = Path(root).resolve()

        with self._lock:
            observer = self._observers.pop(root, None)
        if observer is None:
            return False

        observer.stop()
        observer.join(timeout=5.0)
        return True

    def stop_all(self) -> int:
        """
        Stop all watchers.

        Returns:
            Number of watchers stopped
        """
        with self._lock:
            observers = list(self._observers.values())
            self._observers.clear()

        for observer in observers:
            observer.stop()
        for observer in observers:
            observer.join(timeout=5.0)
        return len(observers)

    def is_watching(self, root: Path) -> bool:
        """Check if a root is being watched."""
        with self._lock:
            return Path(root).resolve() in self._observers

    def __len__(self) -> int:
        """Return the number of active watchers."""
        with self._lock:
            return len(self._observers)
