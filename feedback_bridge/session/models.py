"""Session model and delivery modes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field

from feedback_bridge.config.schema import HybridConfig, PollingConfig

SESSION_TTL = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryMode(str, Enum):
    """How replies reach a waiting caller."""

    WEBHOOK = "webhook"
    POLLING = "polling"
    HYBRID = "hybrid"

    @property
    def needs_tunnel(self) -> bool:
        return self in (DeliveryMode.WEBHOOK, DeliveryMode.HYBRID)

    @property
    def uses_webhook(self) -> bool:
        return self.needs_tunnel

    @property
    def uses_polling(self) -> bool:
        return self in (DeliveryMode.POLLING, DeliveryMode.HYBRID)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class Session(BaseModel):
    """One agent working session bound to a Slack channel."""

    session_id: str
    user_id: str
    channel_id: str = ""
    channel_name: str | None = None
    label: str | None = None
    contact: str | None = None
    port: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)
    status: SessionStatus = SessionStatus.ACTIVE
    mode: DeliveryMode = DeliveryMode.POLLING
    webhook_url: str | None = None
    tunnel_url: str | None = None
    last_thread_ts: str | None = None
    polling_config: PollingConfig = Field(default_factory=PollingConfig)
    hybrid_config: HybridConfig = Field(default_factory=HybridConfig)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def is_stale(self, now: datetime | None = None) -> bool:
        """True when the session has been idle longer than the 24h window."""
        current = now or _utcnow()
        last = self.last_activity
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return current - last > SESSION_TTL
