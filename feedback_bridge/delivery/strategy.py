"""Question/answer polling: decide how often to look for a human reply."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger as _logger

from feedback_bridge.config.schema import CadenceConfig
from feedback_bridge.delivery.events import FeedbackResponse, PollingPolicy, PollingResult
from feedback_bridge.delivery.ratelimit import RateLimitGate
from feedback_bridge.delivery.router import WebhookEventRouter
from feedback_bridge.delivery.sources import ResponseSource
from feedback_bridge.errors import ConfigurationError, RateLimitedError
from feedback_bridge.utils.helpers import now_ms

WaitingNotifier = Callable[[str], Awaitable[None]]


class PollingStrategy:
    """
    Wait for a reply to one thread.

    Replies can come from two places at once: the webhook router (push) and
    a ``ResponseSource`` (pull). Whichever yields a fresh reply first wins.
    Without a router the strategy only polls; without a source it only
    listens.

    ``feedback-required`` alternates an intensive phase (short interval for a
    bounded duration) with a pause, forever or until the caller's timeout.
    ``courtesy-inform`` runs one intensive phase plus one pause and then
    returns empty-handed.

    An instance serves one ``execute`` at a time.
    """

    def __init__(
        self,
        *,
        session_id: str,
        channel_id: str,
        policy: PollingPolicy = PollingPolicy.FEEDBACK_REQUIRED,
        source: ResponseSource | None = None,
        router: WebhookEventRouter | None = None,
        cadence: CadenceConfig | None = None,
        gate: RateLimitGate | None = None,
        first_poll_delay: float = 0.0,
        on_waiting: WaitingNotifier | None = None,
        logger: Any = None,
    ):
        if source is None and router is None:
            raise ConfigurationError("PollingStrategy needs a response source or a webhook router")
        self.session_id = session_id
        self.channel_id = channel_id
        self.policy = PollingPolicy(policy)
        self.source = source
        self.router = router
        self.cadence = cadence or CadenceConfig()
        self.gate = gate or RateLimitGate(self.cadence.min_call_interval)
        self.first_poll_delay = max(0.0, float(first_poll_delay))
        self.on_waiting = on_waiting
        self.log = logger or _logger.bind(component="strategy")

        self._waiter: asyncio.Future[FeedbackResponse] | None = None
        self._deadline: float | None = None
        self._since_ms = 0
        self._not_before = 0.0
        self.attempts = 0

    @classmethod
    def feedback_required(cls, **kwargs: Any) -> "PollingStrategy":
        return cls(policy=PollingPolicy.FEEDBACK_REQUIRED, **kwargs)

    @classmethod
    def courtesy_inform(cls, **kwargs: Any) -> "PollingStrategy":
        return cls(policy=PollingPolicy.COURTESY_INFORM, **kwargs)

    # -- public --

    async def execute(self, thread_ts: str, since_ms: int | None = None) -> PollingResult:
        """Run the configured policy for ``thread_ts`` until it finishes."""
        loop = asyncio.get_running_loop()
        self._since_ms = now_ms() if since_ms is None else int(since_ms)
        self._not_before = loop.time() + self.first_poll_delay
        self._deadline = None
        self.attempts = 0
        self.log.info(f"Starting {self.policy.value} polling for session {self.session_id} thread {thread_ts}")

        if self.router is not None:
            self._waiter = self.router.register(self.session_id, thread_ts)
        try:
            if self.policy == PollingPolicy.FEEDBACK_REQUIRED:
                return await self._run_feedback(thread_ts)
            return await self._run_courtesy(thread_ts)
        finally:
            waiter = self._waiter
            self._waiter = None
            if self.router is not None:
                self.router.release(self.session_id, thread_ts, waiter)
                # A reply pushed after the last check goes back to the queue.
                if waiter is not None and waiter.done() and not waiter.cancelled():
                    self.router.dispatch(waiter.result())

    async def execute_with_timeout(
        self, thread_ts: str, timeout_seconds: float = 0, since_ms: int | None = None
    ) -> PollingResult:
        """Race ``execute`` against a timer; ``timeout_seconds <= 0`` waits forever."""
        if not timeout_seconds or timeout_seconds <= 0:
            return await self.execute(thread_ts, since_ms=since_ms)

        task = asyncio.create_task(self.execute(thread_ts, since_ms=since_ms))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()

        # The loop is abandoned; whatever it is awaiting is dropped with it.
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self.log.debug(f"Abandoned polling loop ended with {e!r}")
        self.log.info(f"No reply in {timeout_seconds:.0f}s for thread {thread_ts}; timed out")
        return PollingResult(responses=[], should_stop=True, timed_out=True)

    # -- policies --

    async def _run_feedback(self, thread_ts: str) -> PollingResult:
        loop = asyncio.get_running_loop()
        cycle_start = loop.time()
        intensive = True

        while True:
            responses, source = await self._poll(thread_ts)
            if responses:
                self.log.info(f"Found {len(responses)} response(s) via {source}")
                return PollingResult(responses=responses, should_stop=False, source=source)

            elapsed = loop.time() - cycle_start
            if intensive and elapsed < self.cadence.intensive_duration:
                delay = self.cadence.intensive_interval
            elif intensive:
                intensive = False
                delay = self.cadence.pause_interval
                self.log.debug(f"Entering pause phase: waiting {delay:.1f}s")
                await self._notify_waiting(thread_ts)
            else:
                cycle_start = loop.time()
                intensive = True
                delay = self.cadence.intensive_interval
                self.log.debug("Restarting intensive polling cycle")
            await self._wait(delay)

    async def _run_courtesy(self, thread_ts: str) -> PollingResult:
        loop = asyncio.get_running_loop()
        start = loop.time()
        window = self.cadence.intensive_duration + self.cadence.pause_interval
        self._deadline = start + window

        while True:
            responses, source = await self._poll(thread_ts)
            if responses:
                self.log.info(f"Courtesy window caught {len(responses)} response(s) via {source}")
                return PollingResult(
                    responses=responses,
                    should_stop=False,
                    requires_interpretation=True,
                    source=source,
                )

            elapsed = loop.time() - start
            if elapsed >= window:
                break
            if elapsed < self.cadence.intensive_duration:
                delay = self.cadence.intensive_interval
            else:
                delay = self.cadence.pause_interval
            await self._wait(delay)

        self.log.info("Courtesy polling completed with no response, continuing with work")
        return PollingResult(responses=[], should_stop=True)

    # -- one round --

    async def _poll(self, thread_ts: str) -> tuple[list[FeedbackResponse], str | None]:
        """One check of push then pull. Rate limits and fetch errors are absorbed."""
        pushed = self._take_pushed(thread_ts)
        if pushed:
            return pushed, "webhook"
        if self.source is None:
            return [], None

        loop = asyncio.get_running_loop()
        head_start = self._not_before - loop.time()
        if head_start > 0:
            await self._wait(head_start)
            pushed = self._take_pushed(thread_ts)
            if pushed:
                return pushed, "webhook"
            if loop.time() < self._not_before:
                return [], None

        delay = self.gate.delay()
        if delay > 0:
            if self._deadline is not None and loop.time() + delay > self._deadline:
                return [], None
            self.log.debug(f"Throttling fetch for {delay:.1f}s")
            await self._wait(delay)
            pushed = self._take_pushed(thread_ts)
            if pushed:
                return pushed, "webhook"
            if self.gate.delay() > 0:
                return [], None

        self.gate.mark_call()
        self.attempts += 1
        try:
            fetched = await self.source.fetch(self.session_id, self.channel_id, thread_ts, self._since_ms)
        except ConfigurationError:
            raise
        except RateLimitedError as e:
            self.gate.record_rate_limit(e.retry_after)
            self.log.warning(f"Rate limited by {self.source.name}; waiting {e.retry_after:.1f}s")
            await self._wait(e.retry_after)
            pushed = self._take_pushed(thread_ts)
            return (pushed, "webhook") if pushed else ([], None)
        except Exception as e:
            self.log.warning(
                f"Fetch from {self.source.name} failed ({e!r}); retrying in {self.cadence.error_retry_delay:.1f}s"
            )
            await self._wait(self.cadence.error_retry_delay)
            pushed = self._take_pushed(thread_ts)
            return (pushed, "webhook") if pushed else ([], None)

        if self.router is None:
            return fetched, "poll"
        # The webhook may have delivered while the fetch was in flight.
        pushed = self._take_pushed(thread_ts)
        fresh = sorted(pushed + self.router.claim(fetched), key=lambda r: r.timestamp)
        return fresh, "webhook" if pushed else "poll"

    def _take_pushed(self, thread_ts: str) -> list[FeedbackResponse]:
        """Collect replies delivered by the webhook since the last round."""
        if self.router is None:
            return []
        candidates: list[FeedbackResponse] = []
        waiter = self._waiter
        if waiter is not None and waiter.done():
            if not waiter.cancelled():
                candidates.append(waiter.result())
            # Re-arm so a duplicate that gets filtered below cannot leave a
            # completed future behind and turn every wait into a no-op.
            self._waiter = self.router.register(self.session_id, thread_ts)
        candidates.extend(self.router.take(self.session_id, thread_ts))
        if not candidates:
            return []
        candidates.sort(key=lambda r: r.timestamp)
        return self.router.claim(candidates)

    async def _wait(self, delay: float) -> None:
        """Sleep up to ``delay`` seconds; wakes early when the webhook resolves."""
        if self._deadline is not None:
            delay = min(delay, self._deadline - asyncio.get_running_loop().time())
        if delay <= 0:
            return
        waiter = self._waiter
        if waiter is None:
            await asyncio.sleep(delay)
        elif not waiter.done():
            await asyncio.wait({waiter}, timeout=delay)

    async def _notify_waiting(self, thread_ts: str) -> None:
        if self.on_waiting is None:
            return
        try:
            await self.on_waiting(thread_ts)
        except Exception as e:
            self.log.warning(f"Failed to post waiting notice: {e!r}")
