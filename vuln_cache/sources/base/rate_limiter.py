"""
Rate Limiter for upstream vulnerability APIs

Bounds outbound calls to at most `quantity` permits in any trailing `duration`
window. Every granted permit is remembered with its expiry time; once the window
is full a caller waits for the oldest permit to expire before taking its own.

Both paged sources call acquire() before every request. Limiter instances may
be shared between sources, so acquire() is safe for concurrent callers.
"""

import logging
import threading
import time
from collections import deque
from datetime import timedelta
from typing import Optional, Union

from .exceptions import RateLimitInterruptedException

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window permit limiter shared by the paged sources"""

    def __init__(self, quantity: int, duration: Union[float, timedelta], name: str = "rate_limiter"):
        """
        Args:
            quantity: Maximum permits granted within one window
            duration: Window length in seconds (or a timedelta)
            name: Label used in log messages
        """
        if isinstance(duration, timedelta):
            duration = duration.total_seconds()
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValueError(f"quantity must be a positive integer, got {quantity!r}")
        if duration <= 0:
            raise ValueError(f"duration must be positive, got {duration!r}")

        self.quantity = quantity
        self.duration = float(duration)
        self.name = name

        # expiry times in grant order; constant duration keeps this sorted
        self._permits = deque()
        self._lock = threading.Lock()

    def acquire(self, cancel_event: Optional[threading.Event] = None) -> None:
        """
        Block until a permit is available, then record it.

        Args:
            cancel_event: When set before or during the wait, the call gives up

        Raises:
            RateLimitInterruptedException: If cancel_event was set. No permit is recorded.
        """
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise RateLimitInterruptedException(f"{self.name}: interrupted while waiting for a permit")

            with self._lock:
                now = time.monotonic()
                self._expire(now)
                if len(self._permits) < self.quantity:
                    self._permits.append(now + self.duration)
                    return
                delay = self._permits[0] - now

            logger.debug(f"{self.name}: window full, waiting {delay:.3f}s")
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise RateLimitInterruptedException(f"{self.name}: interrupted while waiting for a permit")
            else:
                time.sleep(delay)

    def outstanding(self) -> int:
        """Number of permits still inside the current window"""
        with self._lock:
            self._expire(time.monotonic())
            return len(self._permits)

    def _expire(self, now: float) -> None:
        while self._permits and self._permits[0] <= now:
            self._permits.popleft()

    def __repr__(self):
        return f"RateLimiter(quantity={self.quantity}, duration={self.duration})"
