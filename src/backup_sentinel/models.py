"""Data models for the backup sentinel package."""

from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import List, Optional
import ntpath
import posixpath


class EventKind(Enum):
    """Normalized kinds of file system notifications."""
    CREATE = "CREATE"
    MODIFY = "MODIFY"
    RENAME = "RENAME"
    MOVE = "MOVE"
    DELETE = "DELETE"


class EventState(IntEnum):
    """Lifecycle of a stored notification (the ``processed`` column)."""
    PENDING = 0
    PROCESSED = 1
    SKIPPED = 2


@dataclass
class Notification:
    """
    A single file system change as reported by the upstream watcher.

    Attributes:
        occurred_at: Unix timestamp supplied by the source (not insertion time)
        kind: Normalized event kind
        path: Full path of the affected file
        directory: Directory the watcher reported the change in
        raw_kind: Original event token from the source, kept for audit
        old_path: Previous path for MOVE notifications, empty otherwise
        size: File size in bytes, 0 when unknown
        action_ref: Optional action file routing this notification
        id: Store-assigned identifier, None until inserted
        state: Lifecycle state
    """
    occurred_at: float
    kind: EventKind
    path: str
    directory: str = ""
    raw_kind: str = ""
    old_path: str = ""
    size: int = 0
    action_ref: Optional[str] = None
    id: Optional[int] = None
    state: EventState = EventState.PENDING

    @property
    def basename(self) -> str:
        """File name of ``path``, for both Windows and POSIX separators."""
        return ntpath.basename(self.path) if "\\" in self.path else posixpath.basename(self.path)

    @property
    def sort_key(self):
        return (self.occurred_at, self.id if self.id is not None else 0)

    def as_move(self, old_path: str, new_path: str) -> "Notification":
        """Return a copy rewritten into a MOVE from ``old_path`` to ``new_path``."""
        return replace(self, kind=EventKind.MOVE, old_path=old_path, path=new_path)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging and serialization."""
        return {
            "id": self.id,
            "occurred_at": self.occurred_at,
            "kind": self.kind.value,
            "raw_kind": self.raw_kind,
            "directory": self.directory,
            "path": self.path,
            "old_path": self.old_path,
            "size": self.size,
            "action_ref": self.action_ref,
            "state": int(self.state),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Notification":
        """Create from dictionary."""
        return cls(
            occurred_at=float(data["occurred_at"]),
            kind=EventKind(data["kind"]),
            path=data["path"],
            directory=data.get("directory") or "",
            raw_kind=data.get("raw_kind") or "",
            old_path=data.get("old_path") or "",
            size=int(data.get("size") or 0),
            action_ref=data.get("action_ref") or None,
            id=data.get("id"),
            state=EventState(data.get("state", EventState.PENDING)),
        )


@dataclass
class Window:
    """
    A time-ordered slice of pending notifications selected for one pass.

    Attributes:
        tmin: Earliest ``occurred_at`` among the eligible notifications
        notifications: Pending notifications in ``[tmin, tmin + 2W]``,
            ordered by ``(occurred_at, id)``
    """
    tmin: Optional[float] = None
    notifications: List[Notification] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.notifications)

    def __iter__(self):
        return iter(self.notifications)

    @property
    def is_empty(self) -> bool:
        return not self.notifications


@dataclass
class ActionResult:
    """Outcome of one external action invocation."""
    command: str
    returncode: Optional[int]
    output: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0
