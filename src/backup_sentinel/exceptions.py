"""Custom exceptions for the backup sentinel package."""

from typing import Optional


class SentinelError(Exception):
    """Base exception for all sentinel errors."""
    pass


class StoreError(SentinelError):
    """Error related to the notification store."""
    pass


class StoreUnavailableError(StoreError):
    """Store database cannot be opened or written."""
    pass


class IntegrityError(StoreError):
    """Notification is malformed or missing required fields."""
    pass


class PayloadError(IntegrityError):
    """Upstream watcher payload could not be parsed."""
    pass


class NotFoundError(StoreError):
    """No notification exists with the requested id."""
    pass


class ConflictError(StoreError):
    """State transition affected no rows (missing or already terminal)."""
    pass


class ActionError(SentinelError):
    """Error related to resolving or running an external action."""
    pass


class ActionUnresolvedError(ActionError):
    """No action is configured for a notification's kind."""
    pass


class ActionFailedError(ActionError):
    """External action returned an error or a non-zero exit status."""
    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class DispatcherAlreadyRunningError(SentinelError):
    """Dispatch loop is already running."""
    pass
