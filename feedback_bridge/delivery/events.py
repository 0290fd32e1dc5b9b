"""Reply records passed between the router, sources and callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PollingPolicy(str, Enum):
    """How long a caller is willing to wait for a reply."""

    FEEDBACK_REQUIRED = "feedback-required"
    COURTESY_INFORM = "courtesy-inform"


@dataclass(frozen=True, slots=True)
class FeedbackResponse:
    """A single human reply to a thread."""

    session_id: str
    user_id: str
    response: str
    timestamp: int  # epoch ms
    thread_ts: str

    @property
    def key(self) -> str:
        return f"{self.session_id}:{self.thread_ts}"

    @property
    def identity(self) -> tuple[str, int, str]:
        """Same reply seen via webhook and via poll shares this identity."""
        return (self.thread_ts, self.timestamp, self.user_id)


@dataclass(slots=True)
class PollingResult:
    """Outcome of one strategy run."""

    responses: list[FeedbackResponse] = field(default_factory=list)
    should_stop: bool = False
    timed_out: bool = False
    requires_interpretation: bool = False
    source: str | None = None  # "webhook" | "poll"

    @property
    def answered(self) -> bool:
        return bool(self.responses)


def resolver_key(session_id: str, thread_ts: str) -> str:
    return f"{session_id}:{thread_ts}"
