"""Temporal coalescing of related notifications within a window."""

import logging
from typing import Callable, List, Optional, Set

from .config import SentinelConfig
from .exceptions import StoreError
from .models import EventKind, Notification, Window
from .store import NotificationStore

logger = logging.getLogger(__name__)


MatchFn = Callable[[Notification, Notification], bool]


def find_next_match(
    notifications: List[Notification],
    start: int,
    match: MatchFn,
    max_delta: float,
    skip: Optional[Set[int]] = None,
) -> int:
    """
    Find the nearest later notification that pairs with ``notifications[start]``.

    Scans forward from ``start + 1`` and stops at the first notification more
    than ``max_delta`` seconds after the base one. Positions in ``skip`` are
    already consumed and never match.

    Args:
        notifications: Window ordered by ``(occurred_at, id)``
        start: Position of the base notification
        match: Predicate ``match(base, candidate)``
        max_delta: Search bound in seconds, measured from the base notification
        skip: Consumed positions

    Returns:
        Position of the first match, or -1 if none
    """
    base = notifications[start]
    for j in range(start + 1, len(notifications)):
        candidate = notifications[j]
        if candidate.occurred_at - base.occurred_at > max_delta:
            break
        if skip and j in skip:
            continue
        if match(base, candidate):
            return j
    return -1


def is_move_partner(delete: Notification, candidate: Notification) -> bool:
    """A CREATE with the same size and file name completes a DELETE into a MOVE."""
    return (
        candidate.kind == EventKind.CREATE
        and candidate.size == delete.size
        and candidate.basename == delete.basename
    )


def is_trailing_modify(base: Notification, candidate: Notification) -> bool:
    """A MODIFY on the identical path right after a rename is part of the rename."""
    return candidate.kind == EventKind.MODIFY and candidate.path == base.path


class Coalescer:
    """
    Merges or suppresses notifications that describe one logical operation.

    Rules, applied in a single left-to-right pass over a window:
    - DELETE + CREATE (same size and file name) within W → one MOVE
    - RENAME (optionally CREATE) + MODIFY on the same path within W → the
      MODIFY is skipped

    Only notifications within W of the window start become dispatch
    candidates; the rest of the window only supplies merge partners.
    """

    def __init__(self, store: NotificationStore, config: Optional[SentinelConfig] = None):
        """
        Initialize the coalescer.

        Args:
            store: Store that merge and skip decisions are written to
            config: Sentinel configuration
        """
        self.store = store
        self.config = config or SentinelConfig()

        self._suppressing_kinds = {EventKind.RENAME}
        if self.config.create_suppresses_modify:
            self._suppressing_kinds.add(EventKind.CREATE)

    def coalesce(self, window: Window) -> List[Notification]:
        """
        Turn a window into the list of notifications to dispatch this cycle.

        Merged rows are returned in their post-merge shape; the store has
        already been updated for them.

        Args:
            window: Window from ``NotificationStore.select_window``

        Returns:
            Dispatch candidates ordered by ``(occurred_at, id)``
        """
        if window.is_empty:
            return []

        all_events = window.notifications
        tmin = window.tmin if window.tmin is not None else all_events[0].occurred_at
        max_delta = self.config.window

        out: List[Notification] = []
        skip: Set[int] = set()

        for i, cur in enumerate(all_events):
            if i in skip:
                continue
            if cur.occurred_at - tmin > max_delta:
                break

            if cur.kind == EventKind.DELETE:
                idx = find_next_match(all_events, i, is_move_partner, max_delta, skip)
                if idx != -1:
                    merged = self._merge_move(cur, all_events[idx])
                    skip.add(idx)
                    if merged is not None:
                        out.append(merged)
                    continue

            if cur.kind in self._suppressing_kinds:
                idx = find_next_match(all_events, i, is_trailing_modify, max_delta, skip)
                if idx != -1:
                    self._suppress(cur, all_events[idx])
                    skip.add(idx)
                    out.append(cur)
                    continue

            out.append(cur)

        return out

    def _merge_move(self, delete: Notification, create: Notification) -> Optional[Notification]:
        """Persist a DELETE+CREATE merge; returns the MOVE, or None if it failed."""
        try:
            self.store.convert_delete_to_move(delete.id, create.id, delete.path, create.path)
        except StoreError as e:
            logger.error(f"Convert delete->move failed delete={delete.id} create={create.id}: {e}")
            return None

        logger.debug(f"Converted delete id={delete.id} -> MOVE to {create.path} and skipped create id={create.id}")
        return delete.as_move(delete.path, create.path)

    def _suppress(self, base: Notification, modify: Notification) -> None:
        """Mark the MODIFY trailing a rename as skipped."""
        try:
            self.store.mark_skipped(modify.id)
        except StoreError as e:
            logger.error(f"Mark skipped id={modify.id} failed: {e}")
            return
        logger.debug(f"Skipped modify id={modify.id} following {base.kind.value} id={base.id}")
