"""Session lifecycle and delivery-mode coordination."""

from __future__ import annotations

import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger as _logger
from pydantic import ValidationError

from feedback_bridge.config.schema import HybridConfig, PollingConfig
from feedback_bridge.delivery.polling_manager import PollCallback, PollingManager
from feedback_bridge.errors import ConfigurationError, ModeTransitionError, SessionNotFoundError
from feedback_bridge.monitor.health import HealthFetcher, HealthMonitor, http_health_fetcher
from feedback_bridge.session.models import DeliveryMode, Session, SessionStatus
from feedback_bridge.session.store import SessionStore

MIN_HEALTH_CHECK_INTERVAL = 30.0
SLACK_CHANNEL_NAME_LIMIT = 21
_USER_ID = re.compile(r"^[UW][A-Z0-9]{6,}$")


@dataclass(frozen=True, slots=True)
class ModeChange:
    """Result of a mode request."""

    session_id: str
    previous: DeliveryMode
    current: DeliveryMode
    reason: str = ""

    @property
    def changed(self) -> bool:
        return self.previous != self.current


class SessionManager:
    """
    Own sessions and the only path that changes a session's delivery mode.

    ``set_mode`` validates the request, persists the new mode and starts or
    stops the session's ``HealthMonitor`` in one synchronous step. The monitor
    calls back into ``set_mode`` when the webhook stays unhealthy.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        port_range: tuple[int, int] = (3000, 4000),
        health_fetcher_factory: Callable[[Session], HealthFetcher] | None = None,
        health_initial_delay: float = 30.0,
        logger: Any = None,
    ):
        self.store = store
        self.port_range = port_range
        self.health_fetcher_factory = health_fetcher_factory or self._default_health_fetcher
        self.health_initial_delay = health_initial_delay
        self.log = logger or _logger.bind(component="sessions")
        self.current_session_id: str | None = None
        self._monitors: dict[str, HealthMonitor] = {}
        self._pollers: dict[str, PollingManager] = {}
        self._used_ports: set[int] = set()

    @staticmethod
    def _default_health_fetcher(session: Session) -> HealthFetcher:
        return http_health_fetcher(f"http://127.0.0.1:{session.port}/health")

    def init(self) -> None:
        """Expire stale sessions and reserve ports of the remaining ones."""
        expired = self.store.expire_old_sessions()
        if expired:
            self.log.info(f"Expired {expired} stale session(s)")
        self._used_ports = {s.port for s in self.store.get_active_sessions() if s.port}

    # -- lifecycle --

    @staticmethod
    def generate_session_id() -> str:
        # 6 hex chars keeps channel names under Slack's length limit.
        return secrets.token_hex(3)

    def _find_available_port(self) -> int:
        low, high = self.port_range
        for port in range(low, high + 1):
            if port not in self._used_ports:
                return port
        raise ConfigurationError(f"No available ports in range {low}-{high}")

    def create_session(
        self,
        user_id: str,
        channel_id: str = "",
        *,
        polling_config: PollingConfig | None = None,
        hybrid_config: HybridConfig | None = None,
    ) -> Session:
        session_id = self.generate_session_id()
        while self.store.get_session(session_id) is not None:
            session_id = self.generate_session_id()
        port = self._find_available_port()
        session = Session(
            session_id=session_id,
            user_id=user_id,
            channel_id=channel_id,
            port=port,
            mode=DeliveryMode.POLLING,
            polling_config=polling_config or PollingConfig(),
            hybrid_config=hybrid_config or HybridConfig(),
        )
        self._used_ports.add(port)
        self.store.add_session(session)
        self.current_session_id = session_id
        self.log.info(f"Created session {session_id} on port {port}")
        return session

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None or not session.is_active:
            raise SessionNotFoundError(session_id)
        return session

    def get_current_session(self) -> Session | None:
        if not self.current_session_id:
            return None
        session = self.store.get_session(self.current_session_id)
        return session if session is not None and session.is_active else None

    def resolve_session(self, session_id: str | None = None) -> Session:
        """Explicit id, else the current session, else the most recently active one."""
        if session_id:
            return self.get_session(session_id)
        current = self.get_current_session()
        if current is not None:
            return current
        active = sorted(self.get_active_sessions(), key=lambda s: s.last_activity, reverse=True)
        if not active:
            raise ConfigurationError("No active session. Create one with `feedback-bridge new`.")
        self.current_session_id = active[0].session_id
        return active[0]

    def set_current_session(self, session_id: str) -> Session:
        self.get_session(session_id)
        self.current_session_id = session_id
        return self.touch(session_id)

    def touch(self, session_id: str) -> Session:
        """Record activity on a session."""
        updated = self.store.update_session(session_id)
        if updated is None:
            raise SessionNotFoundError(session_id)
        return updated

    def update_session(self, session_id: str, **changes: Any) -> Session:
        if "mode" in changes:
            raise ConfigurationError("Use set_mode() to change a session's delivery mode")
        updated = self.store.update_session(session_id, **changes)
        if updated is None:
            raise SessionNotFoundError(session_id)
        return updated

    def attach_webhook(self, session_id: str, webhook_url: str, tunnel_url: str) -> Session:
        """Record the public endpoint that makes webhook/hybrid modes possible."""
        return self.update_session(session_id, webhook_url=webhook_url, tunnel_url=tunnel_url)

    @staticmethod
    def format_contact(contact: str) -> str:
        """Turn ``here``, ``channel``, a user id or a username into Slack mention markup."""
        value = contact.strip().lstrip("@")
        if not value:
            raise ConfigurationError("Contact must not be empty")
        if value.lower() in {"here", "channel"}:
            return f"<!{value.lower()}>"
        if _USER_ID.match(value):
            return f"<@{value}>"
        return f"@{value}"

    def set_contact(self, session_id: str, contact: str) -> Session:
        """Set who gets mentioned in questions and status posts of a session."""
        return self.update_session(session_id, contact=self.format_contact(contact))

    def end_session(self, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if session is None:
            return
        self.stop_health_monitoring(session_id)
        self.stop_polling(session_id)
        self._used_ports.discard(session.port)
        self.store.update_session(session_id, status=SessionStatus.EXPIRED)
        if self.current_session_id == session_id:
            self.current_session_id = None

    def get_active_sessions(self) -> list[Session]:
        return self.store.get_active_sessions()

    def get_user_sessions(self, user_id: str) -> list[Session]:
        return self.store.get_user_sessions(user_id)

    @staticmethod
    def channel_name(username: str, session_id: str) -> str:
        name = f"agent-{username[:4].lower()}-{session_id}"
        return name[:SLACK_CHANNEL_NAME_LIMIT]

    # -- mode coordination --

    def set_mode(self, session_id: str, mode: DeliveryMode | str, reason: str = "") -> ModeChange:
        """Transition a session's delivery mode.

        Raises ``ModeTransitionError`` (session unchanged) when webhook or
        hybrid is requested without a tunnel.
        """
        target = DeliveryMode(mode)
        session = self.get_session(session_id)
        previous = session.mode

        if target.needs_tunnel and not session.tunnel_url:
            raise ModeTransitionError(target.value, previous.value, "webhook not configured")

        if target != previous:
            session = self.store.update_session(session_id, mode=target) or session
            self.log.info(
                f"Session {session_id} mode {previous.value} -> {target.value}"
                + (f" ({reason})" if reason else "")
            )

        if target == DeliveryMode.HYBRID:
            self.start_health_monitoring(session_id)
        else:
            self.stop_health_monitoring(session_id)
        return ModeChange(session_id=session_id, previous=previous, current=target, reason=reason)

    def start_health_monitoring(self, session_id: str) -> HealthMonitor | None:
        session = self.get_session(session_id)
        if session.mode != DeliveryMode.HYBRID:
            return None
        monitor = self._monitors.get(session_id)
        if monitor is None:
            monitor = HealthMonitor(
                session_id,
                self.health_fetcher_factory(session),
                self._on_webhook_unhealthy,
                session.hybrid_config,
                initial_delay=self.health_initial_delay,
                logger=self.log.bind(component="health"),
            )
            self._monitors[session_id] = monitor
        monitor.start()
        return monitor

    def resume_health_monitoring(self) -> list[str]:
        """Start monitors for hybrid sessions loaded from disk; returns their ids."""
        resumed = []
        for session in self.get_active_sessions():
            if session.mode != DeliveryMode.HYBRID or session.session_id in self._monitors:
                continue
            self.start_health_monitoring(session.session_id)
            resumed.append(session.session_id)
        if resumed:
            self.log.info(f"Resumed webhook health checks for {', '.join(resumed)}")
        return resumed

    def stop_health_monitoring(self, session_id: str) -> None:
        monitor = self._monitors.pop(session_id, None)
        if monitor is not None:
            monitor.stop()

    def get_health_monitor(self, session_id: str) -> HealthMonitor | None:
        return self._monitors.get(session_id)

    def _on_webhook_unhealthy(self, session_id: str) -> None:
        self.set_mode(session_id, DeliveryMode.POLLING, reason="webhook health checks failed")

    def record_webhook_success(self, session_id: str) -> None:
        monitor = self._monitors.get(session_id)
        if monitor is not None:
            monitor.record_success()

    def record_webhook_failure(self, session_id: str) -> None:
        monitor = self._monitors.get(session_id)
        if monitor is not None:
            monitor.record_failure()

    # -- idle polling --

    def start_polling(self, session_id: str, poll_callback: PollCallback) -> PollingManager:
        session = self.get_session(session_id)
        poller = self._pollers.get(session_id)
        if poller is None:
            poller = PollingManager(
                session_id,
                poll_callback,
                session.polling_config,
                logger=self.log.bind(component="polling_manager"),
            )
            self._pollers[session_id] = poller
        poller.start()
        return poller

    def stop_polling(self, session_id: str) -> None:
        poller = self._pollers.pop(session_id, None)
        if poller is not None:
            poller.stop()

    def get_polling_manager(self, session_id: str) -> PollingManager | None:
        return self._pollers.get(session_id)

    def record_polling_activity(self, session_id: str) -> None:
        poller = self._pollers.get(session_id)
        if poller is not None:
            poller.record_activity()

    # -- settings --

    def configure_polling(self, session_id: str, **changes: Any) -> PollingConfig:
        session = self.get_session(session_id)
        try:
            updated = PollingConfig.model_validate({**session.polling_config.model_dump(), **changes})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid polling config: {e}") from e
        self.update_session(session_id, polling_config=updated)
        # A running poller keeps its old cadence; it restarts on the next wait.
        self.stop_polling(session_id)
        return updated

    def configure_hybrid(self, session_id: str, **changes: Any) -> HybridConfig:
        session = self.get_session(session_id)
        interval = changes.get("health_check_interval")
        if interval is not None and interval < MIN_HEALTH_CHECK_INTERVAL:
            raise ConfigurationError(
                f"Health check interval must be at least {MIN_HEALTH_CHECK_INTERVAL:.0f}s"
            )
        try:
            updated = HybridConfig.model_validate({**session.hybrid_config.model_dump(), **changes})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid hybrid config: {e}") from e
        self.update_session(session_id, hybrid_config=updated)
        if session.mode == DeliveryMode.HYBRID:
            self.stop_health_monitoring(session_id)
            self.start_health_monitoring(session_id)
        return updated

    def shutdown(self) -> None:
        for session_id in list(self._monitors):
            self.stop_health_monitoring(session_id)
        for session_id in list(self._pollers):
            self.stop_polling(session_id)
