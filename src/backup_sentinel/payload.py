"""
Parsing of Directory Monitor payloads into notifications.

Directory Monitor is configured to run the producer with a JSON object as its
arguments, e.g.::

    "{\"t\":\"%date% %time%\", \"e\":\"%event%\", \"d\":\"%dirpath%\",
      \"f\":\"%fullfile%\", \"of\":\"%oldfullfile%\"}"

It does not escape the values it substitutes, so the raw arguments need some
repair before they are valid JSON: paths containing spaces arrive split over
several arguments, Windows backslashes are not escaped, and an empty ``of``
value is rendered as three quotes.
"""

import json
import logging
from datetime import datetime
from typing import List, Optional

from .exceptions import PayloadError
from .models import EventKind, Notification

logger = logging.getLogger(__name__)


TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S"

EVENT_VOCABULARY = {
    "新增": EventKind.CREATE,
    "创建": EventKind.CREATE,
    "修改": EventKind.MODIFY,
    "重命名": EventKind.RENAME,
    "删除": EventKind.DELETE,
    "MOVE": EventKind.MOVE,
    "created": EventKind.CREATE,
    "modified": EventKind.MODIFY,
    "renamed": EventKind.RENAME,
    "moved": EventKind.MOVE,
    "deleted": EventKind.DELETE,
}


def join_arguments(args: List[str]) -> str:
    """
    Rebuild the raw JSON text from command-line arguments.

    Args:
        args: Arguments as received by the producer

    Returns:
        Repaired payload text
    """
    raw = " ".join(args)
    raw = raw.replace("\\", "\\\\")
    if '""""' not in raw and '"""' in raw:
        raw = raw.replace('"""', '""')
    return raw


def _parse_size(value) -> int:
    try:
        size = int(str(value).strip())
    except (TypeError, ValueError):
        return 0
    return size if size >= 0 else 0


def parse_payload(raw: str) -> Notification:
    """
    Convert a repaired Directory Monitor payload into a notification.

    Args:
        raw: JSON text, usually from ``join_arguments``

    Returns:
        A Notification ready for insertion

    Raises:
        PayloadError: If the payload is empty, not JSON, has an invalid
            timestamp, or an unknown event token
    """
    trimmed = raw.strip()
    if not trimmed:
        raise PayloadError("empty Directory Monitor payload")

    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError as e:
        raise PayloadError(f"unmarshal json: {e}") from e
    if not isinstance(payload, dict):
        raise PayloadError("payload must be a JSON object")

    timestamp = str(payload.get("t", "")).strip()
    try:
        occurred_at = datetime.strptime(timestamp, TIMESTAMP_FORMAT).timestamp()
    except ValueError as e:
        raise PayloadError(f"parse timestamp {timestamp!r}: {e}") from e

    raw_kind = str(payload.get("e", "")).strip()
    kind = EVENT_VOCABULARY.get(raw_kind)
    if kind is None:
        raise PayloadError(f"unmapped event type {raw_kind!r}")

    file_path = payload.get("f") or ""
    if not file_path:
        raise PayloadError("payload has no file path")

    return Notification(
        occurred_at=occurred_at,
        kind=kind,
        raw_kind=raw_kind,
        directory=payload.get("d") or "",
        path=file_path,
        old_path=payload.get("of") or "",
        size=_parse_size(payload.get("s", 0)),
        action_ref=payload.get("cmd_file") or None,
    )


def parse_arguments(args: List[str], skip_patterns: Optional[List[str]] = None) -> Optional[Notification]:
    """
    Parse producer arguments, honouring skip patterns.

    Args:
        args: Arguments as received by the producer
        skip_patterns: Substrings that cause the payload to be ignored

    Returns:
        The parsed notification, or None if the payload is skipped

    Raises:
        PayloadError: If there are no arguments or the payload is invalid
    """
    if not args:
        raise PayloadError("missing Directory Monitor payload")

    raw = join_arguments(args)
    logger.debug(f"raw payload: {raw}")

    if skip_patterns and any(p in raw for p in skip_patterns):
        logger.debug("skipping event for path matching skip patterns")
        return None

    return parse_payload(raw)
