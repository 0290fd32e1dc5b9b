"""Error taxonomy for the delivery engine.

Rate-limit and transient fetch errors are absorbed by the polling loops.
Configuration errors are raised straight to the caller.
"""

from __future__ import annotations


class FeedbackBridgeError(Exception):
    """Base class for all feedback-bridge errors."""


class RateLimitedError(FeedbackBridgeError):
    """The platform asked us to back off for ``retry_after`` seconds."""

    def __init__(self, retry_after: float, message: str = "rate_limited"):
        super().__init__(f"{message} (retry after {retry_after:.1f}s)")
        self.retry_after = max(0.0, float(retry_after))


class PlatformError(FeedbackBridgeError):
    """Slack (or relay) returned an error that is not a rate limit."""

    def __init__(self, method: str, error: str):
        super().__init__(f"{method} failed: {error}")
        self.method = method
        self.error = error


class ConfigurationError(FeedbackBridgeError):
    """Invalid setup or request; never retried."""


class SessionNotFoundError(ConfigurationError):
    """No active session with the requested id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found or inactive")
        self.session_id = session_id


class ModeTransitionError(ConfigurationError):
    """A delivery mode change was rejected; the session keeps ``current``."""

    def __init__(self, requested: str, current: str, reason: str):
        super().__init__(
            f"Cannot set mode to {requested} - {reason}. The session is currently in {current} mode."
        )
        self.requested = requested
        self.current = current
        self.reason = reason
