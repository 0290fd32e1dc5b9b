"""Spacing and cool-down bookkeeping shared by everything that calls Slack."""

from __future__ import annotations

import time
from collections.abc import Callable


class RateLimitGate:
    """
    Track the earliest moment the next platform call may be made.

    Two rules apply: a recorded "retry after" deadline, and a minimum gap
    between consecutive calls. Share one gate per bot token so separate
    strategies do not undo each other's back-off.
    """

    def __init__(self, min_interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._last_call: float | None = None
        self._retry_deadline = 0.0

    def delay(self) -> float:
        """Seconds to wait before the next call is allowed (0 when free)."""
        now = self._clock()
        wait = max(0.0, self._retry_deadline - now)
        if self._last_call is not None:
            wait = max(wait, self._last_call + self.min_interval - now)
        return wait

    def mark_call(self) -> None:
        self._last_call = self._clock()

    def record_rate_limit(self, retry_after: float) -> float:
        """Push the deadline out by ``retry_after`` seconds; returns the deadline."""
        deadline = self._clock() + max(0.0, float(retry_after))
        self._retry_deadline = max(self._retry_deadline, deadline)
        return self._retry_deadline

    @property
    def rate_limited(self) -> bool:
        return self._retry_deadline > self._clock()
