from __future__ import annotations

from typing import Callable
import time

from .errors import DeadlineExceeded


class Deadline:
    """A point in time after which blocking work should stop.

    Every stage of a run receives one of these instead of a bare timeout so that
    time spent upstream is subtracted from what is left downstream. ``child``
    carves out a shorter sub-deadline that never outlives its parent.
    """

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, operation: str) -> None:
        if self.expired:
            raise DeadlineExceeded(f"deadline exceeded while trying to {operation}")

    def request_timeout(self, minimum: float = 1.0) -> float:
        """Timeout for one API call; never zero so the client does not block forever."""
        return max(minimum, self.remaining())

    def child(self, seconds: float) -> Deadline:
        return Deadline(min(seconds, self.remaining()), clock=self._clock)
