"""Deadline-bearing cancellation shared by every wait in an operation."""

from __future__ import annotations

import threading
import time
from typing import Optional


class Deadline:
    """
    A point in time after which waits should give up.

    Cancelling the deadline is the only way to abort an operation early.
    Waits check the deadline once per polling iteration.
    """

    def __init__(self, timeout_s: Optional[float] = None) -> None:
        """
        Args:
            timeout_s: Seconds until expiry; None means no expiry (cancellation only)
        """
        self._expires_at = None if timeout_s is None else time.monotonic() + timeout_s
        self._cancelled = threading.Event()

    def remaining(self) -> Optional[float]:
        """Seconds left before expiry, or None if the deadline never expires."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        if self._cancelled.is_set():
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def wait(self, interval_s: float) -> bool:
        """
        Sleep for the interval or until the deadline expires or is cancelled.

        Returns:
            True if the deadline is still live after sleeping
        """
        remaining = self.remaining()
        timeout = interval_s if remaining is None else min(interval_s, remaining)
        self._cancelled.wait(timeout)
        return not self.expired

    def timeout_for(self, request_timeout_s: float) -> float:
        """Per-request timeout bounded by the time remaining."""
        remaining = self.remaining()
        if remaining is None:
            return request_timeout_s
        return max(0.001, min(request_timeout_s, remaining))

