"""
Cycle deadlines and cancellation.

A ``Deadline`` bundles a monotonic expiry time with the owning loop's stop
event. Every database call, EC2 call and remote RPC made during one cycle is
bounded by ``remaining()``, and long operations call ``check()`` between steps
so a stop request propagates within one outstanding operation.
"""

import threading
import time
from typing import Callable, Optional

from .errors import Cancelled, DeadlineExceeded


class Deadline:
    def __init__(
        self,
        timeout: float,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self.expires_at = clock() + timeout
        self.stop_event = stop_event or threading.Event()

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def cancelled(self) -> bool:
        return self.stop_event.is_set()

    @property
    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def check(self, operation: str = "operation") -> None:
        """Raise if the owning loop stopped or the deadline passed."""
        if self.cancelled:
            raise Cancelled(f"Cancelled before {operation}")
        if self.expired:
            raise DeadlineExceeded(f"Deadline exceeded before {operation}")

    def child(self, timeout: float) -> "Deadline":
        """A deadline no later than this one, sharing the same stop event."""
        child = Deadline(timeout, self.stop_event, self._clock)
        child.expires_at = min(child.expires_at, self.expires_at)
        return child

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, waking early on stop; raises if stopped."""
        if self.stop_event.wait(min(seconds, self.remaining())):
            raise Cancelled("Cancelled while waiting")
