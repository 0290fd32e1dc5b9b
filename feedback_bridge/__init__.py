"""Feedback Bridge - deliver human replies from Slack back to an autonomous agent."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("feedback-bridge")
except PackageNotFoundError:
    __version__ = "0.3.0"

__logo__ = "📨"
__brand__ = "feedback-bridge"
