"""Utility helpers for feedback-bridge."""

from feedback_bridge.utils.helpers import ensure_dir, get_data_path, now_ms, slack_ts_to_ms

__all__ = ["ensure_dir", "get_data_path", "now_ms", "slack_ts_to_ms"]
