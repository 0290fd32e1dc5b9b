"""Webhook health monitoring."""

from feedback_bridge.monitor.health import HealthMonitor, http_health_fetcher

__all__ = ["HealthMonitor", "http_health_fetcher"]
