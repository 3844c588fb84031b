"""
Cooperative cancellation for backup runs.

A CancellationToken is shared by the scheduler and the running pipeline.
Stages receive `token.check` as their `cancellation_check` callable and call
it at every blocking point; once the token is cancelled the call raises
BackupCancelled.
"""

import threading
from typing import Optional

from dumper.errors import DumperError


class BackupCancelled(DumperError):
    """Raised when a run is aborted because its token was cancelled."""
    pass


class CancellationToken:
    """Thread-safe, one-way cancellation flag."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = None

    def cancel(self, reason: Optional[str] = None):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def check(self):
        """
        Raise if the token has been cancelled.

        Raises:
            BackupCancelled: If cancel() was called
        """
        if self._event.is_set():
            message = "Backup cancelled"
            if self.reason:
                message += f" ({self.reason})"
            raise BackupCancelled(message)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout expires. Returns True if cancelled."""
        return self._event.wait(timeout)
