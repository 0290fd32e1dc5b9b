"""Chat platform clients."""

from feedback_bridge.platform.base import PlatformClient, PlatformMessage
from feedback_bridge.platform.slack import SlackPlatformClient

__all__ = ["PlatformClient", "PlatformMessage", "SlackPlatformClient"]
