"""Reply delivery: routing, sources, polling strategy and schedulers."""

from feedback_bridge.delivery.events import FeedbackResponse, PollingPolicy, PollingResult
from feedback_bridge.delivery.polling_manager import PollingManager
from feedback_bridge.delivery.ratelimit import RateLimitGate
from feedback_bridge.delivery.router import WebhookEventRouter
from feedback_bridge.delivery.sources import DirectPlatformSource, RelaySource, ResponseSource
from feedback_bridge.delivery.strategy import PollingStrategy

__all__ = [
    "DirectPlatformSource",
    "FeedbackResponse",
    "PollingManager",
    "PollingPolicy",
    "PollingResult",
    "PollingStrategy",
    "RateLimitGate",
    "RelaySource",
    "ResponseSource",
    "WebhookEventRouter",
]
