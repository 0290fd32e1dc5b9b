"""Sessions: model, persistence and mode coordination."""

from feedback_bridge.session.manager import ModeChange, SessionManager
from feedback_bridge.session.models import DeliveryMode, Session, SessionStatus
from feedback_bridge.session.store import SessionStore

__all__ = [
    "DeliveryMode",
    "ModeChange",
    "Session",
    "SessionManager",
    "SessionStatus",
    "SessionStore",
]
