"""Base interface for chat platform clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class PlatformMessage:
    """A message as returned by the platform's history APIs."""

    ts: str
    text: str
    user: str = ""
    thread_ts: str = ""
    bot_id: str = ""
    subtype: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


class PlatformClient(ABC):
    """
    Abstract chat platform API wrapper.

    Any method may raise ``RateLimitedError`` carrying the platform's
    retry-after; callers are expected to honour it.
    """

    @abstractmethod
    async def auth(self) -> str:
        """Return the bot's own user id."""
        pass

    @abstractmethod
    async def post_message(self, channel: str, text: str, thread_ts: str | None = None) -> str:
        """Post a message and return its ``ts`` (the thread id for replies)."""
        pass

    @abstractmethod
    async def get_thread_replies(
        self, channel: str, thread_ts: str, since_ms: int = 0
    ) -> list[PlatformMessage]:
        """Return replies in a thread newer than ``since_ms`` (parent excluded)."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
