"""Inbound webhook listener."""

from feedback_bridge.webhook.server import WebhookServer

__all__ = ["WebhookServer"]
