"""Pull-based reply sources: Slack directly, or the hosted response relay."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
from loguru import logger as _logger

from feedback_bridge.config.schema import RelayConfig
from feedback_bridge.delivery.events import FeedbackResponse, resolver_key
from feedback_bridge.errors import PlatformError, RateLimitedError
from feedback_bridge.platform.base import PlatformClient
from feedback_bridge.utils.helpers import slack_ts_to_ms


class ResponseSource(ABC):
    """Something that can be asked "any replies in this thread since T?"."""

    name: str = "source"

    @abstractmethod
    async def fetch(
        self, session_id: str, channel_id: str, thread_ts: str, since_ms: int = 0
    ) -> list[FeedbackResponse]:
        """Return replies newer than ``since_ms``, oldest first."""
        pass

    async def clear_session(self, session_id: str) -> None:
        """Forget anything kept for a session that has ended."""
        return None

    async def close(self) -> None:
        return None


class DirectPlatformSource(ResponseSource):
    """Read thread replies straight from the platform API."""

    name = "platform"

    def __init__(self, client: PlatformClient, logger: Any = None):
        self.client = client
        self.log = logger or _logger.bind(component="source.platform")

    async def fetch(
        self, session_id: str, channel_id: str, thread_ts: str, since_ms: int = 0
    ) -> list[FeedbackResponse]:
        bot_user_id = await self.client.auth()
        messages = await self.client.get_thread_replies(channel_id, thread_ts, since_ms)
        responses = [
            FeedbackResponse(
                session_id=session_id,
                user_id=msg.user,
                response=msg.text,
                timestamp=slack_ts_to_ms(msg.ts),
                thread_ts=msg.thread_ts or thread_ts,
            )
            for msg in messages
            if msg.user and msg.user != bot_user_id and not msg.bot_id and msg.text
        ]
        responses.sort(key=lambda r: r.timestamp)
        return responses


class RelaySource(ResponseSource):
    """
    Pull replies stored by the hosted relay.

    The relay receives Slack events on a public URL and keeps them until the
    agent fetches them with ``GET /responses/{session}/{thread}?since=<ms>``.
    """

    name = "relay"

    def __init__(
        self,
        config: RelayConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Any = None,
    ):
        self.config = config
        self.log = logger or _logger.bind(component="source.relay")
        self._client = httpx.AsyncClient(
            base_url=config.url.rstrip("/"),
            timeout=config.timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        self._last_timestamp: dict[str, int] = {}

    async def close(self) -> None:
        await self._client.aclose()

    def last_timestamp(self, session_id: str, thread_ts: str) -> int:
        return self._last_timestamp.get(resolver_key(session_id, thread_ts), 0)

    async def fetch(
        self, session_id: str, channel_id: str, thread_ts: str, since_ms: int = 0
    ) -> list[FeedbackResponse]:
        key = resolver_key(session_id, thread_ts)
        since = max(int(since_ms), self._last_timestamp.get(key, 0))
        response = await self._client.get(
            f"/responses/{session_id}/{thread_ts}", params={"since": since}
        )
        if response.status_code == 429:
            raw = response.headers.get("Retry-After", "60")
            try:
                retry_after = float(raw)
            except ValueError:
                retry_after = 60.0
            raise RateLimitedError(retry_after, "relay rate_limited")
        if response.status_code >= 400:
            raise PlatformError("relay.responses", f"HTTP {response.status_code}: {response.text[:200]}")

        data = response.json()
        items = data.get("responses") if isinstance(data, dict) else None
        results: list[FeedbackResponse] = []
        for item in items or []:
            if not isinstance(item, dict):
                continue
            timestamp = int(item.get("timestamp") or slack_ts_to_ms(item.get("ts")))
            if timestamp <= since:
                continue
            results.append(
                FeedbackResponse(
                    session_id=session_id,
                    user_id=str(item.get("user") or ""),
                    response=str(item.get("text") or ""),
                    timestamp=timestamp,
                    thread_ts=str(item.get("threadTs") or thread_ts),
                )
            )
        results.sort(key=lambda r: r.timestamp)

        last = data.get("lastTimestamp") if isinstance(data, dict) else None
        newest = results[-1].timestamp if results else 0
        try:
            tracked = max(int(last or 0), newest)
        except (TypeError, ValueError):
            tracked = newest
        if tracked > self._last_timestamp.get(key, 0):
            self._last_timestamp[key] = tracked
        return results

    async def check_health(self) -> bool:
        try:
            response = await self._client.get("/health")
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.log.warning(f"Relay health check failed: {e}")
            return False
        return isinstance(data, dict) and data.get("status") in {"healthy", "ok"}

    async def clear_session(self, session_id: str) -> None:
        """Delete relay-side replies and local cursors for a session."""
        try:
            await self._client.delete(f"/responses/{session_id}")
        except httpx.HTTPError as e:
            self.log.warning(f"Relay cleanup for {session_id} failed: {e}")
        prefix = f"{session_id}:"
        for key in [k for k in self._last_timestamp if k.startswith(prefix)]:
            self._last_timestamp.pop(key, None)
