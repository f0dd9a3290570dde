"""
Cooperative cancellation for job execution and retry waits.
"""

import threading
from typing import Optional


class CancellationToken:
    """
    One-shot cancellation flag backed by a threading.Event.

    Waiting on the token doubles as an interruptible sleep, so retry and
    backoff loops wake immediately when the token is cancelled.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Cancel the token. Only the first reason is kept.

        Returns:
            True if this call cancelled the token
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout. Returns True if cancelled."""
        if timeout is not None:
            timeout = max(0.0, timeout)
        return self._event.wait(timeout)
