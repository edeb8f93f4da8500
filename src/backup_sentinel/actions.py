"""
Resolution and execution of the external action run per notification.
"""

import json
import logging
import re
import shlex
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import SentinelConfig
from .exceptions import ActionUnresolvedError
from .models import ActionResult, EventKind, Notification

logger = logging.getLogger(__name__)


FULLFILE = "%fullfile%"
OLDFULLFILE = "%oldfullfile%"

_PLACEHOLDER_RE = re.compile("|".join(re.escape(p) for p in (OLDFULLFILE, FULLFILE)))

ACTION_FILE_KEYS = {
    "add_cmd": EventKind.CREATE,
    "modify_cmd": EventKind.MODIFY,
    "rename_cmd": EventKind.RENAME,
    "move_cmd": EventKind.MOVE,
    "delete_cmd": EventKind.DELETE,
}

ActionMap = Dict[EventKind, str]


def load_action_file(path: Path) -> ActionMap:
    """
    Read a JSON action file into a mapping of kind to action template.

    Absent or empty fields are left out so the kind falls through to the
    next resolver.

    Raises:
        ActionUnresolvedError: If the file cannot be read or parsed
    """
    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ActionUnresolvedError(f"Cannot load action file {path}: {e}") from e

    if not isinstance(payload, dict):
        raise ActionUnresolvedError(f"Action file {path} must contain a JSON object")

    actions: ActionMap = {}
    for key, kind in ACTION_FILE_KEYS.items():
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            actions[kind] = value
    return actions


def _lookup(actions: ActionMap, kind: EventKind) -> Optional[str]:
    # Renames fall back to the move action of the same source
    template = actions.get(kind)
    if template is None and kind == EventKind.RENAME:
        template = actions.get(EventKind.MOVE)
    return template


def render_command(template: str, notification: Notification) -> str:
    """
    Substitute the path placeholders of an action template.

    ``%fullfile%`` becomes the notification's path and ``%oldfullfile%`` its
    old path (empty unless it is a MOVE or RENAME). Values are shell-quoted.
    A template without ``%fullfile%`` gets ``fullfile <path>`` appended.
    """
    old_path = notification.old_path if notification.kind in (EventKind.MOVE, EventKind.RENAME) else ""
    values = {
        FULLFILE: shlex.quote(notification.path),
        OLDFULLFILE: shlex.quote(old_path or ""),
    }
    # One pass, so substituted paths are never rescanned for placeholders
    command = _PLACEHOLDER_RE.sub(lambda m: values[m.group(0)], template)
    if FULLFILE in template:
        return command
    return f"{command} fullfile {values[FULLFILE]}"


class ActionResolver(ABC):
    """One tier of action lookup."""

    @abstractmethod
    def resolve(self, notification: Notification) -> Optional[str]:
        """
        Look up an action template for a notification.

        Returns:
            The template, or None if this tier has no opinion
        """
        pass


class DefaultActionResolver(ActionResolver):
    """Globally configured action used for every kind."""

    def __init__(self, template: Optional[str]):
        self.template = template or None

    def resolve(self, notification: Notification) -> Optional[str]:
        return self.template


class ActionFileResolver(ActionResolver):
    """Action file supplied at process start; loaded once, fails fast."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.actions = load_action_file(self.path)
        logger.debug(f"Loaded actions from {self.path}: {sorted(k.value for k in self.actions)}")

    def resolve(self, notification: Notification) -> Optional[str]:
        return _lookup(self.actions, notification.kind)


class ActionFileCache:
    """
    Caches parsed action files referenced by notifications.

    Entries expire after ``ttl`` seconds so edits to an action file are picked
    up without restarting the consumer.
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl if ttl > 0 else 300.0
        self._clock = clock
        self._cache: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> ActionMap:
        """
        Get the parsed mapping for an action file, reading it if needed.

        Raises:
            ActionUnresolvedError: If the file cannot be read or parsed
        """
        now = self._clock()
        with self._lock:
            entry = self._cache.get(path)
            if entry is not None and now < entry[1]:
                return entry[0]

        actions = load_action_file(Path(path))
        with self._lock:
            self._cache[path] = (actions, now + self.ttl)
        return actions

    def purge_expired(self) -> int:
        """
        Drop expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires) in self._cache.items() if now >= expires]
            for key in expired:
                del self._cache[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class NotificationActionResolver(ActionResolver):
    """Action file carried on the notification itself (``action_ref``)."""

    def __init__(self, cache: Optional[ActionFileCache] = None):
        self.cache = cache or ActionFileCache()

    def resolve(self, notification: Notification) -> Optional[str]:
        if not notification.action_ref:
            return None
        return _lookup(self.cache.get(notification.action_ref), notification.kind)


class ActionChain:
    """
    Ordered chain of resolvers; the first one with an opinion wins.

    Built most-specific first, so a notification's own action file overrides
    the action file given at start, which overrides the default action.
    """

    def __init__(self, resolvers: List[ActionResolver]):
        self.resolvers = list(resolvers)

    @classmethod
    def from_config(cls, config: SentinelConfig, cache: Optional[ActionFileCache] = None) -> "ActionChain":
        """
        Build the standard chain from configuration.

        Raises:
            ActionUnresolvedError: If the configured action file cannot be loaded
        """
        resolvers: List[ActionResolver] = [
            NotificationActionResolver(cache or ActionFileCache(config.action_file_ttl_s)),
        ]
        if config.action_file:
            resolvers.append(ActionFileResolver(config.action_file))
        if config.default_action:
            resolvers.append(DefaultActionResolver(config.default_action))
        return cls(resolvers)

    def resolve(self, notification: Notification) -> str:
        """
        Resolve the action template for a notification.

        Raises:
            ActionUnresolvedError: If no resolver has an action for its kind
        """
        for resolver in self.resolvers:
            template = resolver.resolve(notification)
            if template:
                return template
        raise ActionUnresolvedError(
            f"No action configured for {notification.kind.value} (id={notification.id})"
        )


class ActionRunner:
    """Runs an action command synchronously and captures its output."""

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize the runner.

        Args:
            timeout: Optional limit in seconds; None waits for the action
        """
        self.timeout = timeout

    def run(self, command: str) -> ActionResult:
        """
        Execute a command line.

        Args:
            command: Rendered command, split with shell-like quoting rules

        Returns:
            ActionResult; ``returncode`` is None if the command never ran
            to completion
        """
        try:
            args = shlex.split(command)
        except ValueError as e:
            return ActionResult(command=command, returncode=None, output=f"invalid command: {e}")
        if not args:
            return ActionResult(command=command, returncode=None, output="empty command")

        try:
            completed = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            return ActionResult(command=command, returncode=None, output=f"timed out after {e.timeout}s")
        except OSError as e:
            return ActionResult(command=command, returncode=None, output=str(e))

        return ActionResult(command=command, returncode=completed.returncode, output=completed.stdout or "")
