"""Agent-facing operations: ask, inform, progress updates and mode changes."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger as _logger

from feedback_bridge.config.schema import Config
from feedback_bridge.delivery.events import FeedbackResponse, PollingPolicy, PollingResult
from feedback_bridge.delivery.ratelimit import RateLimitGate
from feedback_bridge.delivery.router import WebhookEventRouter
from feedback_bridge.delivery.sources import DirectPlatformSource, RelaySource, ResponseSource
from feedback_bridge.delivery.strategy import PollingStrategy
from feedback_bridge.errors import ModeTransitionError, RateLimitedError
from feedback_bridge.platform.base import PlatformClient
from feedback_bridge.session.manager import SessionManager
from feedback_bridge.session.models import DeliveryMode, Session
from feedback_bridge.session.store import SessionStore
from feedback_bridge.utils.helpers import now_ms, slack_ts_to_ms
from feedback_bridge.webhook.server import WebhookServer

WAITING_NOTICE = "Still waiting for your response. Reply in this thread when you can."


class FeedbackBridge:
    """
    Post agent messages to a session's channel and collect human replies.

    Which way replies arrive depends on the session's delivery mode, read
    fresh on every call:

    - ``webhook``: only the router (push)
    - ``polling``: only the pull source
    - ``hybrid``: both; the first pull waits half of ``webhook_timeout`` so the
      webhook gets a head start, and the winner feeds the health monitor

    One ``RateLimitGate`` is shared by every call made through this bridge.
    """

    def __init__(
        self,
        config: Config,
        *,
        platform: PlatformClient,
        sessions: SessionManager,
        router: WebhookEventRouter | None = None,
        source: ResponseSource | None = None,
        gate: RateLimitGate | None = None,
        logger: Any = None,
    ):
        self.config = config
        self.platform = platform
        self.sessions = sessions
        self.router = router or WebhookEventRouter(config.slack.bot_user_id)
        self.source = source or self._default_source()
        self.gate = gate or RateLimitGate(config.cadence.min_call_interval)
        self.log = logger or _logger.bind(component="bridge")
        self._inbox: dict[str, list[FeedbackResponse]] = {}
        self._listeners: dict[str, WebhookServer] = {}

    @classmethod
    def from_config(
        cls, config: Config, *, sessions_path: Path | None = None, logger: Any = None
    ) -> "FeedbackBridge":
        """Wire the Slack client, session store and health checks from config."""
        from feedback_bridge.monitor.health import http_health_fetcher
        from feedback_bridge.platform.slack import SlackPlatformClient

        health_timeout = config.webhook.health_timeout_seconds

        def fetcher_for(session: Session):
            return http_health_fetcher(
                f"http://{config.webhook.host}:{session.port}/health", timeout=health_timeout
            )

        manager = SessionManager(
            SessionStore(sessions_path),
            port_range=(config.webhook.port_min, config.webhook.port_max),
            health_fetcher_factory=fetcher_for,
            health_initial_delay=config.cadence.health_initial_delay,
        )
        manager.init()
        return cls(config, platform=SlackPlatformClient(config.slack), sessions=manager, logger=logger)

    def _default_source(self) -> ResponseSource:
        relay = self.config.relay
        if relay.enabled and relay.url:
            return RelaySource(relay)
        return DirectPlatformSource(self.platform)

    async def start(self) -> None:
        """Resolve the bot user id and resume health checks of hybrid sessions."""
        if not self.router.bot_user_id:
            self.router.bot_user_id = await self.platform.auth()
        self.sessions.resume_health_monitoring()

    async def close(self) -> None:
        self.sessions.shutdown()
        for session_id in list(self._listeners):
            await self.stop_listener(session_id)
        await self.source.close()
        await self.platform.close()

    # -- webhook listener --

    async def start_listener(self, session_id: str | None = None) -> WebhookServer:
        session = self.sessions.resolve_session(session_id)
        server = self._listeners.get(session.session_id)
        if server is None:
            server = WebhookServer(
                session_id=session.session_id,
                router=self.router,
                host=self.config.webhook.host,
                port=session.port,
            )
            self._listeners[session.session_id] = server
        await server.start()
        return server

    async def stop_listener(self, session_id: str) -> None:
        server = self._listeners.pop(session_id, None)
        if server is not None:
            await server.stop()

    # -- strategy wiring --

    def _build_strategy(self, session: Session, policy: PollingPolicy) -> PollingStrategy:
        mode = session.mode
        first_poll_delay = 0.0
        if mode == DeliveryMode.HYBRID:
            first_poll_delay = session.hybrid_config.webhook_timeout / 2
            # No-op when this process already monitors the session.
            self.sessions.start_health_monitoring(session.session_id)

        async def post_waiting(thread_ts: str) -> None:
            await self.platform.post_message(session.channel_id, WAITING_NOTICE, thread_ts)

        return PollingStrategy(
            session_id=session.session_id,
            channel_id=session.channel_id,
            policy=policy,
            source=self.source if mode.uses_polling else None,
            router=self.router if mode.uses_webhook else None,
            cadence=self.config.cadence,
            gate=self.gate,
            first_poll_delay=first_poll_delay,
            on_waiting=post_waiting if policy == PollingPolicy.FEEDBACK_REQUIRED else None,
            logger=self.log.bind(component="strategy"),
        )

    @staticmethod
    def _compose(session: Session, text: str) -> str:
        """Prefix a top-level post with the session's contact and label."""
        parts = [p for p in (session.contact, f"[{session.label}]" if session.label else "") if p]
        return " ".join([*parts, text])

    def _record_outcome(self, session: Session, result: PollingResult) -> None:
        if result.answered:
            self.sessions.record_polling_activity(session.session_id)
        if session.mode != DeliveryMode.HYBRID or result.source is None:
            return
        if result.source == "webhook":
            self.sessions.record_webhook_success(session.session_id)
        else:
            self.sessions.record_webhook_failure(session.session_id)

    def _ensure_idle_polling(self, session: Session) -> None:
        if not session.polling_config.auto_start or not session.mode.uses_polling:
            return
        if self.sessions.get_polling_manager(session.session_id) is not None:
            return
        session_id = session.session_id

        async def idle_poll() -> None:
            current = self.sessions.get_session(session_id)
            if not current.last_thread_ts:
                return
            found = await self._pull(current, current.last_thread_ts)
            if found:
                self.log.info(f"Idle poll picked up {len(found)} response(s) for session {session_id}")
                self._inbox.setdefault(session_id, []).extend(found)
                self.sessions.record_polling_activity(session_id)

        self.sessions.start_polling(session_id, idle_poll)

    # -- operations --

    async def ask_feedback(
        self, question: str, *, session_id: str | None = None, timeout_seconds: float = 0
    ) -> PollingResult:
        """Post ``question`` and wait for a reply (forever when ``timeout_seconds`` is 0)."""
        session = self.sessions.resolve_session(session_id)
        started = now_ms()
        thread_ts = await self.platform.post_message(session.channel_id, self._compose(session, question))
        session = self.sessions.update_session(session.session_id, last_thread_ts=thread_ts)
        self._ensure_idle_polling(session)

        strategy = self._build_strategy(session, PollingPolicy.FEEDBACK_REQUIRED)
        result = await strategy.execute_with_timeout(
            thread_ts, timeout_seconds, since_ms=slack_ts_to_ms(thread_ts) or started
        )
        self._record_outcome(session, result)
        return result

    async def inform(self, message: str, *, session_id: str | None = None) -> PollingResult:
        """Post a status message and give the human a short window to object."""
        session = self.sessions.resolve_session(session_id)
        started = now_ms()
        thread_ts = await self.platform.post_message(session.channel_id, self._compose(session, message))
        session = self.sessions.update_session(session.session_id, last_thread_ts=thread_ts)

        strategy = self._build_strategy(session, PollingPolicy.COURTESY_INFORM)
        result = await strategy.execute(thread_ts, since_ms=slack_ts_to_ms(thread_ts) or started)
        self._record_outcome(session, result)
        return result

    async def update_progress(
        self, message: str, *, session_id: str | None = None, thread_ts: str | None = None
    ) -> str:
        """Post into the last thread (or ``thread_ts``) without waiting."""
        session = self.sessions.resolve_session(session_id)
        target = thread_ts or session.last_thread_ts
        ts = await self.platform.post_message(session.channel_id, message, target)
        self.sessions.touch(session.session_id)
        return ts

    async def get_responses(
        self, *, session_id: str | None = None, thread_ts: str | None = None
    ) -> list[FeedbackResponse]:
        """One-shot collection of replies nobody has consumed yet."""
        session = self.sessions.resolve_session(session_id)
        target = thread_ts or session.last_thread_ts
        collected = self._inbox.pop(session.session_id, [])
        collected.extend(self.router.claim(self.router.take(session.session_id, target)))
        if target and session.mode.uses_polling:
            collected.extend(await self._pull(session, target))
        collected.sort(key=lambda r: r.timestamp)
        return collected

    async def _pull(self, session: Session, thread_ts: str) -> list[FeedbackResponse]:
        if self.gate.delay() > 0:
            return []
        self.gate.mark_call()
        try:
            fetched = await self.source.fetch(session.session_id, session.channel_id, thread_ts)
        except RateLimitedError as e:
            self.gate.record_rate_limit(e.retry_after)
            self.log.warning(f"Rate limited while collecting responses; retry after {e.retry_after:.1f}s")
            return []
        return self.router.claim(fetched)

    def set_mode(self, mode: DeliveryMode | str, *, session_id: str | None = None) -> str:
        """Change delivery mode; a rejected change is reported, not raised."""
        session = self.sessions.resolve_session(session_id)
        try:
            change = self.sessions.set_mode(session.session_id, mode)
        except ModeTransitionError as e:
            return str(e)
        if not change.changed:
            return f"Session {session.session_id} is already in {change.current.value} mode."
        # The idle poller restarts on the next wait if the new mode polls.
        if not change.current.uses_polling:
            self.sessions.stop_polling(session.session_id)
        return f"Session {session.session_id} switched from {change.previous.value} to {change.current.value} mode."

    async def end_session(self, session_id: str | None = None) -> Session:
        """Stop everything running for a session and drop replies nobody collected."""
        session = self.sessions.resolve_session(session_id)
        sid = session.session_id
        await self.stop_listener(sid)
        self.router.clear_session(sid)
        dropped = len(self._inbox.pop(sid, []))
        if dropped:
            self.log.info(f"Discarding {dropped} uncollected response(s) of session {sid}")
        await self.source.clear_session(sid)
        self.sessions.end_session(sid)
        return session

    @staticmethod
    def format_responses(result: PollingResult, timeout_seconds: float = 0) -> str:
        """Render a strategy result as text for the agent."""
        if result.timed_out:
            return (
                f"No response received within {timeout_seconds:.0f} seconds. "
                "Continue with your best judgement."
            )
        if not result.responses:
            return "No response received. Continuing with work."

        lines = []
        if result.requires_interpretation:
            lines.append("Received feedback during the courtesy window. Review it before continuing:")
        for response in result.responses:
            lines.append(f"Response from <@{response.user_id}>: {response.response}")
        return "\n".join(lines)
