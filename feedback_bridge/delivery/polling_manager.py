"""Adaptive idle-ping scheduler for a session."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger as _logger

from feedback_bridge.config.schema import PollingConfig

PollCallback = Callable[[], Awaitable[None]]


class PollingManager:
    """
    Run ``poll_callback`` on an interval that adapts to activity.

    Recent activity keeps the normal interval; once idle the interval grows
    by 1.5x per tick, starting from the idle interval and capped at the max.
    ``record_activity`` snaps back to the initial delay and wakes a pending
    sleep. This scheduler is passive: it never blocks a caller waiting for an
    answer, that is ``PollingStrategy``'s job.
    """

    def __init__(
        self,
        session_id: str,
        poll_callback: PollCallback,
        config: PollingConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: Any = None,
    ):
        self.session_id = session_id
        self.poll_callback = poll_callback
        self.config = config or PollingConfig()
        self._clock = clock
        self.log = logger or _logger.bind(component="polling_manager")
        self._last_activity = clock()
        self._current_interval = self.config.initial_delay
        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self.poll_count = 0

    @property
    def current_interval(self) -> float:
        return self._current_interval

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_active:
            self.log.debug("Already polling, skipping start")
            return
        self.log.debug(f"Starting automatic polling for session {self.session_id}")
        self._current_interval = self.config.initial_delay
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._task is None:
            return
        self.log.debug(f"Stopping polling for session {self.session_id}")
        self._task.cancel()
        self._task = None

    async def aclose(self) -> None:
        """Stop and wait for the loop to unwind."""
        task = self._task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def record_activity(self) -> None:
        self._last_activity = self._clock()
        if self._current_interval > self.config.normal_interval:
            self.log.debug("Activity detected, increasing poll frequency")
            self._current_interval = self.config.initial_delay
            if self.is_active:
                self._wake.set()

    def next_interval(self) -> float:
        """Interval before the next tick, based on time since last activity."""
        idle_for = self._clock() - self._last_activity
        if idle_for < self.config.activity_threshold:
            self._current_interval = self.config.normal_interval
        else:
            grown = max(self._current_interval * 1.5, self.config.idle_interval)
            self._current_interval = min(grown, self.config.max_interval)
        return self._current_interval

    async def _run(self) -> None:
        delay = self.config.initial_delay
        while True:
            self.log.debug(f"Next poll in {delay:.1f}s")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
                # Woken by activity: restart the countdown at the faster rate.
                self._wake.clear()
                delay = self._current_interval
                continue
            except asyncio.TimeoutError:
                pass

            try:
                await self.poll_callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.log.error(f"Poll callback error: {e!r}")
            self.poll_count += 1
            delay = self.next_interval()
