"""Configuration for the backup sentinel package."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


DEFAULT_SKIP_PATTERNS = [
    "@eaDir",
    "@SynoEAStream",
    "._",
    ".DS_Store",
    "Thumbs.db",
]


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SentinelConfig:
    """
    Configuration options shared by the producer and consumer paths.

    Attributes:
        db_path: Path to the SQLite notification store
        window_ms: Coalescing window W; the selector looks 2W ahead and only
            considers notifications older than 2W
        tick_interval_ms: Interval between dispatch ticks
        create_suppresses_modify: Whether a CREATE swallows a following
            MODIFY on the same path, like a RENAME does
        default_action: Action template used for every kind without a more
            specific mapping
        action_file: JSON action file supplied at process start
        action_file_ttl_s: How long per-notification action files are cached
        action_timeout_s: Optional limit on a single action's runtime
        skip_patterns: Substrings of paths/payloads that are never ingested
        recursive: Whether the native watcher watches subdirectories
    """
    db_path: Path = field(default_factory=lambda: Path("backupSentinel.db"))
    window_ms: int = 1000
    tick_interval_ms: int = 1000
    create_suppresses_modify: bool = False
    default_action: Optional[str] = None
    action_file: Optional[Path] = None
    action_file_ttl_s: float = 300.0
    action_timeout_s: Optional[float] = None
    skip_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_SKIP_PATTERNS))
    recursive: bool = True

    def __post_init__(self):
        if isinstance(self.db_path, str):
            self.db_path = Path(self.db_path)
        if isinstance(self.action_file, str):
            self.action_file = Path(self.action_file) if self.action_file else None
        if self.window_ms <= 0:
            raise ValueError(f"window_ms must be positive: {self.window_ms}")
        if self.tick_interval_ms <= 0:
            raise ValueError(f"tick_interval_ms must be positive: {self.tick_interval_ms}")

    @property
    def window(self) -> float:
        """Coalescing window W in seconds."""
        return self.window_ms / 1000.0

    @property
    def tick_interval(self) -> float:
        """Dispatch tick interval in seconds."""
        return self.tick_interval_ms / 1000.0

    def should_skip(self, text: str) -> bool:
        """
        Check if a path or raw payload matches one of the skip patterns.

        Args:
            text: Path or payload to check

        Returns:
            True if the notification should not be ingested
        """
        return any(pattern in text for pattern in self.skip_patterns)

    @classmethod
    def from_env(cls, **overrides) -> "SentinelConfig":
        """
        Build a configuration from ``SENTINEL_*`` environment variables.

        Keyword overrides that are not None take precedence over the
        environment.
        """
        values = {}
        if os.environ.get("SENTINEL_DB"):
            values["db_path"] = Path(os.environ["SENTINEL_DB"])
        if os.environ.get("SENTINEL_WINDOW_MS"):
            values["window_ms"] = int(os.environ["SENTINEL_WINDOW_MS"])
        if os.environ.get("SENTINEL_TICK_MS"):
            values["tick_interval_ms"] = int(os.environ["SENTINEL_TICK_MS"])
        if os.environ.get("SENTINEL_ACTION"):
            values["default_action"] = os.environ["SENTINEL_ACTION"]
        if os.environ.get("SENTINEL_ACTION_FILE"):
            values["action_file"] = Path(os.environ["SENTINEL_ACTION_FILE"])
        if os.environ.get("SENTINEL_CREATE_SUPPRESSES_MODIFY"):
            values["create_suppresses_modify"] = _env_bool(os.environ["SENTINEL_CREATE_SUPPRESSES_MODIFY"])

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
