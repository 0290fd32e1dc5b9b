"""Slack Web API client over httpx."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger as _logger

from feedback_bridge.config.schema import SlackConfig
from feedback_bridge.errors import ConfigurationError, PlatformError, RateLimitedError
from feedback_bridge.platform.base import PlatformClient, PlatformMessage
from feedback_bridge.utils.helpers import ms_to_slack_ts, slack_ts_to_ms

DEFAULT_RETRY_AFTER = 60.0


class SlackPlatformClient(PlatformClient):
    """
    Minimal Slack Web API wrapper.

    Writes (``post_message``) retry rate limits a bounded number of times.
    Reads used by polling never retry here: they raise ``RateLimitedError`` so
    the polling strategy can schedule its own back-off.
    """

    def __init__(
        self,
        config: SlackConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Any = None,
    ):
        if not config.bot_token:
            raise ConfigurationError("Slack bot token is not configured")
        self.config = config
        self.log = logger or _logger.bind(component="slack")
        self._bot_user_id = config.bot_user_id or ""
        self._client = httpx.AsyncClient(
            base_url=config.api_base.rstrip("/") + "/",
            headers={"Authorization": f"Bearer {config.bot_token}"},
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        raw = response.headers.get("Retry-After", "")
        try:
            return max(0.0, float(raw))
        except (TypeError, ValueError):
            return DEFAULT_RETRY_AFTER

    async def _request_once(
        self, method: str, *, params: dict[str, Any] | None = None, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        if json is not None:
            response = await self._client.post(method, json=json)
        else:
            response = await self._client.get(method, params=params)

        if response.status_code == 429:
            raise RateLimitedError(self._retry_after(response), f"{method} rate_limited")
        if response.status_code >= 400:
            raise PlatformError(method, f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise PlatformError(method, f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise PlatformError(method, "unexpected payload")
        if not data.get("ok", False):
            error = str(data.get("error") or "unknown_error")
            if error in {"ratelimited", "rate_limited"}:
                raise RateLimitedError(self._retry_after(response), f"{method} {error}")
            raise PlatformError(method, error)
        return data

    async def _call(
        self,
        method: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        retries: int | None = None,
    ) -> dict[str, Any]:
        """Call a Web API method, retrying rate limits up to ``retries`` times."""
        max_retries = self.config.max_rate_limit_retries if retries is None else max(0, retries)
        attempt = 0
        while True:
            try:
                return await self._request_once(method, params=params, json=json)
            except RateLimitedError as e:
                if attempt >= max_retries:
                    raise
                attempt += 1
                self.log.warning(
                    f"Slack {method} rate limited; retry {attempt}/{max_retries} in {e.retry_after:.1f}s"
                )
                await asyncio.sleep(e.retry_after)

    async def auth(self) -> str:
        if self._bot_user_id:
            return self._bot_user_id
        data = await self._call("auth.test", json={})
        self._bot_user_id = str(data.get("user_id") or "")
        return self._bot_user_id

    async def post_message(self, channel: str, text: str, thread_ts: str | None = None) -> str:
        payload: dict[str, Any] = {"channel": channel, "text": text, "mrkdwn": True}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        data = await self._call("chat.postMessage", json=payload)
        return str(data.get("ts") or "")

    async def get_thread_replies(
        self, channel: str, thread_ts: str, since_ms: int = 0
    ) -> list[PlatformMessage]:
        params = {
            "channel": channel,
            "ts": thread_ts,
            "oldest": ms_to_slack_ts(since_ms),
            "inclusive": "false",
            "limit": 100,
        }
        data = await self._call("conversations.replies", params=params, retries=0)
        messages: list[PlatformMessage] = []
        for raw in data.get("messages") or []:
            if not isinstance(raw, dict):
                continue
            ts = str(raw.get("ts") or "")
            if not ts or ts == thread_ts:
                continue
            if since_ms and slack_ts_to_ms(ts) <= since_ms:
                continue
            messages.append(
                PlatformMessage(
                    ts=ts,
                    text=str(raw.get("text") or ""),
                    user=str(raw.get("user") or ""),
                    thread_ts=str(raw.get("thread_ts") or thread_ts),
                    bot_id=str(raw.get("bot_id") or ""),
                    subtype=str(raw.get("subtype") or ""),
                    raw=raw,
                )
            )
        return messages
