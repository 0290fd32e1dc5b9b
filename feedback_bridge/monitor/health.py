"""Webhook liveness checks for hybrid sessions."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from loguru import logger as _logger

from feedback_bridge.config.schema import HybridConfig

HealthFetcher = Callable[[], Awaitable[dict[str, Any]]]
FallbackHandler = Callable[[str], Any]


def http_health_fetcher(url: str, timeout: float = 5.0) -> HealthFetcher:
    """Build a fetcher that GETs the webhook listener's ``/health`` endpoint."""

    async def fetch() -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, dict) else {}

    return fetch


class HealthMonitor:
    """
    Check the local webhook listener while a session is in hybrid mode.

    Checks run every ``health_check_interval`` seconds plus once shortly after
    start. A check passes only when the listener echoes this session's id.
    After ``fallback_after_failures`` consecutive failures ``on_fallback`` is
    invoked once and monitoring stops.
    """

    def __init__(
        self,
        session_id: str,
        fetch_health: HealthFetcher,
        on_fallback: FallbackHandler,
        config: HybridConfig | None = None,
        *,
        initial_delay: float = 30.0,
        logger: Any = None,
    ):
        self.session_id = session_id
        self.fetch_health = fetch_health
        self.on_fallback = on_fallback
        self.config = config or HybridConfig()
        self.initial_delay = max(0.0, float(initial_delay))
        self.log = logger or _logger.bind(component="health")
        self.failure_count = 0
        self.checks_run = 0
        self.fell_back = False
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.is_running:
            return
        interval = self.config.health_check_interval
        self.log.debug(f"Starting health checks every {interval:.0f}s for session {self.session_id}")
        self.fell_back = False
        self._tasks = [
            asyncio.create_task(self._run_periodic(interval)),
            asyncio.create_task(self._run_initial()),
        ]

    def stop(self) -> None:
        """Cancel scheduled checks and reset the counter. Safe to call repeatedly."""
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        was_running = bool(self._tasks)
        self._tasks = []
        self.failure_count = 0
        if was_running:
            self.log.debug(f"Stopped monitoring for session {self.session_id}")

    async def _run_initial(self) -> None:
        await asyncio.sleep(self.initial_delay)
        await self.check()

    async def _run_periodic(self, interval: float) -> None:
        while not self.fell_back:
            await asyncio.sleep(interval)
            await self.check()

    async def check(self) -> bool:
        """Run one health check and update the counter; returns True when healthy."""
        if self.fell_back:
            return False
        self.checks_run += 1
        try:
            payload = await self.fetch_health()
        except Exception as e:
            self.log.warning(f"Webhook health check error: {e!r}")
            self.record_failure()
            return False

        if payload.get("sessionId") == self.session_id:
            self.log.debug("Webhook health check passed")
            self.record_success()
            return True

        self.log.warning(
            f"Webhook health check failed - expected session {self.session_id}, "
            f"got {payload.get('sessionId')!r}"
        )
        self.record_failure()
        return False

    def record_success(self) -> None:
        if self.failure_count:
            self.log.debug(f"Webhook success for session {self.session_id}, resetting failure count")
        self.failure_count = 0

    def record_failure(self) -> None:
        if self.fell_back:
            return
        self.failure_count += 1
        self.log.debug(f"Webhook failure #{self.failure_count} for session {self.session_id}")
        if self.failure_count >= self.config.fallback_after_failures:
            self._fallback()

    def _fallback(self) -> None:
        self.fell_back = True
        self.log.warning(
            f"Webhook failed {self.failure_count} times; switching session {self.session_id} to polling"
        )
        self.stop()
        try:
            self.on_fallback(self.session_id)
        except Exception as e:
            self.log.error(f"Failed to switch to polling mode: {e!r}")
