"""Route pushed Slack events to waiting callers or per-session queues."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any

from loguru import logger as _logger

from feedback_bridge.delivery.events import FeedbackResponse, resolver_key
from feedback_bridge.utils.helpers import now_ms, slack_ts_to_ms

# Subtypes that are edits, joins or bot chatter rather than a human reply.
_IGNORED_SUBTYPES = {
    "bot_message",
    "message_changed",
    "message_deleted",
    "channel_join",
    "channel_leave",
}


class WebhookEventRouter:
    """
    Normalize inbound events into ``FeedbackResponse`` records.

    Each response either fulfils the single pending waiter registered for
    ``session_id:thread_ts`` or lands in the session's queue for a later
    pull. The router also keeps a bounded ledger of delivered replies so the
    same reply seen through both webhook and poll reaches a caller once.
    """

    def __init__(
        self,
        bot_user_id: str = "",
        *,
        ledger_size: int = 2048,
        logger: Any = None,
    ):
        self.bot_user_id = bot_user_id
        self.log = logger or _logger.bind(component="router")
        self._waiters: dict[str, asyncio.Future[FeedbackResponse]] = {}
        self._queues: dict[str, list[FeedbackResponse]] = {}
        self._delivered: OrderedDict[tuple[str, int, str], None] = OrderedDict()
        self._ledger_size = max(1, int(ledger_size))

    # -- waiters --

    def register(self, session_id: str, thread_ts: str) -> asyncio.Future[FeedbackResponse]:
        """Return the pending waiter for the key, creating it when absent."""
        key = resolver_key(session_id, thread_ts)
        existing = self._waiters.get(key)
        if existing is not None and not existing.done():
            return existing
        waiter: asyncio.Future[FeedbackResponse] = asyncio.get_running_loop().create_future()
        self._waiters[key] = waiter
        return waiter

    def release(self, session_id: str, thread_ts: str, waiter: asyncio.Future | None = None) -> None:
        """Drop a waiter that is no longer wanted (caller gave up or got its answer)."""
        key = resolver_key(session_id, thread_ts)
        current = self._waiters.get(key)
        if current is None or (waiter is not None and current is not waiter):
            return
        self._waiters.pop(key, None)
        if not current.done():
            current.cancel()

    # -- inbound --

    def dispatch(self, response: FeedbackResponse) -> bool:
        """Resolve the waiter for the response's key, or queue it.

        Returns True when a waiter was fulfilled. Pop and resolve happen in one
        synchronous step, so a second event for the same key always queues.
        """
        waiter = self._waiters.pop(response.key, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(response)
            self.log.debug(f"Resolved waiter {response.key}")
            return True
        self._queues.setdefault(response.session_id, []).append(response)
        self.log.debug(f"Queued response for {response.key}")
        return False

    def handle_message_event(self, session_id: str, event: dict[str, Any]) -> FeedbackResponse | None:
        """Handle a Slack ``message`` event; returns the response when accepted."""
        if not isinstance(event, dict) or event.get("type") != "message":
            return None
        if event.get("subtype") in _IGNORED_SUBTYPES or event.get("bot_id"):
            return None
        user = str(event.get("user") or "").strip()
        text = str(event.get("text") or "")
        if not user or not text:
            return None
        if self.bot_user_id and user == self.bot_user_id:
            self.log.debug("Ignoring event from own bot user")
            return None

        ts = str(event.get("ts") or "")
        response = FeedbackResponse(
            session_id=session_id,
            user_id=user,
            response=text,
            timestamp=slack_ts_to_ms(ts),
            thread_ts=str(event.get("thread_ts") or ts),
        )
        self.dispatch(response)
        return response

    def handle_interactive(self, session_id: str, payload: dict[str, Any]) -> FeedbackResponse | None:
        """Handle a block/button action payload."""
        if not isinstance(payload, dict):
            return None
        if payload.get("type") not in {"block_actions", "message_action"}:
            return None
        user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
        user_id = str(user.get("id") or "").strip()
        actions = payload.get("actions") if isinstance(payload.get("actions"), list) else []
        if not user_id or not actions:
            return None
        if self.bot_user_id and user_id == self.bot_user_id:
            return None

        action = actions[0] if isinstance(actions[0], dict) else {}
        label = action.get("text") if isinstance(action.get("text"), dict) else {}
        value = str(action.get("value") or label.get("text") or "Action performed")
        message = payload.get("message") if isinstance(payload.get("message"), dict) else {}
        thread_ts = str(message.get("thread_ts") or message.get("ts") or "")

        response = FeedbackResponse(
            session_id=session_id,
            user_id=user_id,
            response=value,
            timestamp=slack_ts_to_ms(action.get("action_ts")) or now_ms(),
            thread_ts=thread_ts,
        )
        self.dispatch(response)
        return response

    # -- pull side --

    def take(self, session_id: str, thread_ts: str | None = None) -> list[FeedbackResponse]:
        """Remove and return queued responses for a session (optionally one thread)."""
        queue = self._queues.get(session_id)
        if not queue:
            return []
        if thread_ts is None:
            self._queues[session_id] = []
            return sorted(queue, key=lambda r: r.timestamp)
        taken = [r for r in queue if r.thread_ts == thread_ts]
        self._queues[session_id] = [r for r in queue if r.thread_ts != thread_ts]
        return sorted(taken, key=lambda r: r.timestamp)

    def claim(self, responses: list[FeedbackResponse]) -> list[FeedbackResponse]:
        """Return only replies not yet delivered and mark them delivered."""
        fresh: list[FeedbackResponse] = []
        for response in responses:
            identity = response.identity
            if identity in self._delivered:
                continue
            self._delivered[identity] = None
            fresh.append(response)
        while len(self._delivered) > self._ledger_size:
            self._delivered.popitem(last=False)
        return fresh

    def clear_session(self, session_id: str) -> None:
        """Forget queued replies and waiters of a session."""
        self._queues.pop(session_id, None)
        prefix = f"{session_id}:"
        for key in [k for k in self._waiters if k.startswith(prefix)]:
            waiter = self._waiters.pop(key)
            if not waiter.done():
                waiter.cancel()
