import asyncio
from pathlib import Path

import pytest

from feedback_bridge.bridge import WAITING_NOTICE, FeedbackBridge
from feedback_bridge.config.schema import CadenceConfig, Config, HybridConfig, PollingConfig
from feedback_bridge.delivery.events import FeedbackResponse, PollingResult
from feedback_bridge.delivery.sources import ResponseSource
from feedback_bridge.errors import SessionNotFoundError
from feedback_bridge.platform.base import PlatformClient, PlatformMessage
from feedback_bridge.session.manager import SessionManager
from feedback_bridge.session.models import DeliveryMode
from feedback_bridge.session.store import SessionStore


class _FakePlatform(PlatformClient):
    def __init__(self):
        self.posted: list[tuple[str, str, str | None, str]] = []
        self.replies: list[PlatformMessage] = []
        self.reply_after_calls = 0
        self.reads = 0
        self._counter = 0

    async def auth(self) -> str:
        return "UBOT"

    async def post_message(self, channel, text, thread_ts=None):
        self._counter += 1
        ts = f"1700000000.{self._counter:06d}"
        self.posted.append((channel, text, thread_ts, ts))
        return ts

    async def get_thread_replies(self, channel, thread_ts, since_ms=0):
        self.reads += 1
        if self.reads <= self.reply_after_calls:
            return []
        return [m for m in self.replies if int(float(m.ts) * 1000) > since_ms]


def _config() -> Config:
    config = Config()
    config.cadence = CadenceConfig(
        intensive_interval=0.01,
        intensive_duration=0.05,
        pause_interval=0.02,
        min_call_interval=0.0,
        error_retry_delay=0.01,
    )
    return config


def _bridge(tmp_path: Path, platform: _FakePlatform | None = None, **session_kwargs):
    platform = platform or _FakePlatform()
    manager = SessionManager(SessionStore(tmp_path / "sessions.json"), health_initial_delay=60.0)
    session_kwargs.setdefault("polling_config", PollingConfig(auto_start=False))
    session = manager.create_session("U1", "C1", **session_kwargs)
    bridge = FeedbackBridge(_config(), platform=platform, sessions=manager)
    return bridge, platform, session


def _reply(text: str, ts: str = "1700000100.000000", user: str = "U1") -> PlatformMessage:
    return PlatformMessage(ts=ts, text=text, user=user)


def test_ask_feedback_polls_until_reply(tmp_path: Path):
    bridge, platform, session = _bridge(tmp_path)
    platform.replies = [_reply("use option B"), _reply("bot echo", user="UBOT")]
    platform.reply_after_calls = 2

    async def run_case():
        await bridge.start()
        return await bridge.ask_feedback("Which option?")

    result = asyncio.run(run_case())

    assert [r.response for r in result.responses] == ["use option B"]
    assert result.source == "poll"
    assert platform.posted[0][:2] == ("C1", "Which option?")
    assert bridge.sessions.get_session(session.session_id).last_thread_ts == platform.posted[0][3]
    assert "Response from <@U1>: use option B" in bridge.format_responses(result)


def test_ask_feedback_times_out(tmp_path: Path):
    bridge, _, _ = _bridge(tmp_path)

    result = asyncio.run(bridge.ask_feedback("Anyone?", timeout_seconds=0.1))

    assert result.timed_out is True
    assert "within 0 seconds" not in bridge.format_responses(result, 5)
    assert "within 5 seconds" in bridge.format_responses(result, 5)


def test_ask_feedback_posts_waiting_notice_in_thread(tmp_path: Path):
    bridge, platform, _ = _bridge(tmp_path)

    asyncio.run(bridge.ask_feedback("Still there?", timeout_seconds=0.2))

    thread_ts = platform.posted[0][3]
    notices = [p for p in platform.posted[1:] if p[1] == WAITING_NOTICE]
    assert notices
    assert all(p[2] == thread_ts for p in notices)


def test_webhook_mode_receives_pushed_reply(tmp_path: Path):
    bridge, platform, session = _bridge(tmp_path)
    bridge.sessions.attach_webhook(session.session_id, "https://t.test/slack/events", "https://t.test")
    assert "switched from polling to webhook" in bridge.set_mode("webhook")

    async def run_case():
        task = asyncio.create_task(bridge.ask_feedback("Deploy?", timeout_seconds=5))
        await asyncio.sleep(0.02)
        thread_ts = platform.posted[0][3]
        bridge.router.handle_message_event(
            session.session_id,
            {"type": "message", "user": "U1", "text": "yes", "ts": "1700000100.000000", "thread_ts": thread_ts},
        )
        return await task

    result = asyncio.run(run_case())

    assert result.source == "webhook"
    assert [r.response for r in result.responses] == ["yes"]
    assert platform.reads == 0


def test_hybrid_records_which_path_won(tmp_path: Path):
    bridge, platform, session = _bridge(
        tmp_path, hybrid_config=HybridConfig(webhook_timeout=1.0, fallback_after_failures=3)
    )
    bridge.sessions.attach_webhook(session.session_id, "https://t.test/slack/events", "https://t.test")
    platform.replies = [_reply("polled answer")]

    async def run_case():
        bridge.set_mode(DeliveryMode.HYBRID)
        monitor = bridge.sessions.get_health_monitor(session.session_id)
        result = await bridge.ask_feedback("Hybrid?")
        failures = monitor.failure_count
        bridge.sessions.shutdown()
        return result, failures

    result, failures = asyncio.run(run_case())

    # Webhook missed its head start, so the poll delivered the answer.
    assert result.source == "poll"
    assert failures == 1


def test_inform_without_reply_keeps_working(tmp_path: Path):
    bridge, platform, _ = _bridge(tmp_path)

    result = asyncio.run(bridge.inform("Refactoring the parser"))

    assert result.should_stop is True
    assert result.responses == []
    assert [p[1] for p in platform.posted] == ["Refactoring the parser"]
    assert bridge.format_responses(result) == "No response received. Continuing with work."


def test_inform_reply_requires_interpretation(tmp_path: Path):
    bridge, platform, _ = _bridge(tmp_path)
    platform.replies = [_reply("hold on")]

    result = asyncio.run(bridge.inform("Dropping the legacy table"))

    assert result.requires_interpretation is True
    assert bridge.format_responses(result).startswith("Received feedback during the courtesy window")


def test_update_progress_posts_into_last_thread(tmp_path: Path):
    bridge, platform, _ = _bridge(tmp_path)

    async def run_case():
        await bridge.inform("Starting")
        return await bridge.update_progress("50% done")

    asyncio.run(run_case())

    first_thread = platform.posted[0][3]
    assert platform.posted[-1][1:3] == ("50% done", first_thread)


def test_set_mode_without_tunnel_reports_current_mode(tmp_path: Path):
    bridge, _, session = _bridge(tmp_path)

    message = bridge.set_mode("hybrid")

    assert "Cannot set mode to hybrid" in message
    assert "polling mode" in message
    assert bridge.sessions.get_session(session.session_id).mode == DeliveryMode.POLLING
    assert "already in polling mode" in bridge.set_mode("polling")


def test_get_responses_merges_queue_and_poll_once(tmp_path: Path):
    bridge, platform, session = _bridge(tmp_path)
    thread_ts = "1700000000.000001"
    bridge.sessions.update_session(session.session_id, last_thread_ts=thread_ts)
    bridge.router.dispatch(FeedbackResponse(session.session_id, "U2", "queued", 1700000050000, thread_ts))
    platform.replies = [_reply("polled")]

    async def run_case():
        first = await bridge.get_responses()
        second = await bridge.get_responses()
        return first, second

    first, second = asyncio.run(run_case())

    assert [r.response for r in first] == ["queued", "polled"]
    assert second == []


def test_idle_polling_starts_on_first_wait(tmp_path: Path):
    bridge, platform, session = _bridge(tmp_path, polling_config=PollingConfig(auto_start=True))
    platform.replies = [_reply("sure")]

    async def run_case():
        await bridge.ask_feedback("Go?")
        poller = bridge.sessions.get_polling_manager(session.session_id)
        active = poller is not None and poller.is_active
        await bridge.close()
        return active

    assert asyncio.run(run_case()) is True
    assert bridge.sessions.get_polling_manager(session.session_id) is None


def test_format_responses_lists_every_reply():
    result = PollingResult(
        responses=[
            FeedbackResponse("s", "U1", "first", 1, "t"),
            FeedbackResponse("s", "U2", "second", 2, "t"),
        ]
    )
    assert FeedbackBridge.format_responses(result).splitlines() == [
        "Response from <@U1>: first",
        "Response from <@U2>: second",
    ]


def _restored_hybrid_bridge(tmp_path: Path):
    """Set hybrid in one manager, then reopen the store the way a new CLI process does."""
    path = tmp_path / "sessions.json"
    first = SessionManager(SessionStore(path), health_initial_delay=60.0)
    session = first.create_session(
        "U1",
        "C1",
        polling_config=PollingConfig(auto_start=False),
        hybrid_config=HybridConfig(fallback_after_failures=1),
    )
    first.attach_webhook(session.session_id, "https://t.test/slack/events", "https://t.test")

    async def switch():
        first.set_mode(session.session_id, DeliveryMode.HYBRID)
        first.shutdown()

    asyncio.run(switch())

    async def wrong_listener() -> dict:
        return {"status": "ok", "sessionId": "someone-else"}

    second = SessionManager(
        SessionStore(path),
        health_fetcher_factory=lambda _session: wrong_listener,
        health_initial_delay=0.0,
    )
    second.init()
    bridge = FeedbackBridge(_config(), platform=_FakePlatform(), sessions=second)
    return bridge, session.session_id, path


def test_restored_hybrid_session_falls_back_during_ask(tmp_path: Path):
    bridge, session_id, path = _restored_hybrid_bridge(tmp_path)

    async def run_case():
        await bridge.ask_feedback("Still hybrid?", timeout_seconds=0.2)
        await asyncio.sleep(0.05)

    asyncio.run(run_case())

    assert bridge.sessions.get_session(session_id).mode == DeliveryMode.POLLING
    assert SessionStore(path).get_session(session_id).mode == DeliveryMode.POLLING


def test_start_resumes_health_checks_of_hybrid_sessions(tmp_path: Path):
    bridge, session_id, _ = _restored_hybrid_bridge(tmp_path)

    async def run_case():
        await bridge.start()
        resumed = bridge.sessions.get_health_monitor(session_id) is not None
        await asyncio.sleep(0.05)
        return resumed

    assert asyncio.run(run_case()) is True
    assert bridge.sessions.get_session(session_id).mode == DeliveryMode.POLLING
    assert bridge.sessions.get_health_monitor(session_id) is None


class _RecordingSource(ResponseSource):
    name = "recording"

    def __init__(self):
        self.cleared: list[str] = []

    async def fetch(self, session_id, channel_id, thread_ts, since_ms=0):
        return []

    async def clear_session(self, session_id: str) -> None:
        self.cleared.append(session_id)


def test_end_session_clears_router_inbox_and_source(tmp_path: Path):
    platform = _FakePlatform()
    manager = SessionManager(SessionStore(tmp_path / "sessions.json"))
    session = manager.create_session("U1", "C1", polling_config=PollingConfig(auto_start=False))
    source = _RecordingSource()
    bridge = FeedbackBridge(_config(), platform=platform, sessions=manager, source=source)
    sid = session.session_id
    bridge.router.dispatch(FeedbackResponse(sid, "U1", "queued", 1, "1700000000.000001"))
    bridge._inbox[sid] = [FeedbackResponse(sid, "U1", "idle", 2, "1700000000.000001")]

    ended = asyncio.run(bridge.end_session(sid))

    assert ended.session_id == sid
    assert source.cleared == [sid]
    assert bridge.router.take(sid) == []
    assert sid not in bridge._inbox
    with pytest.raises(SessionNotFoundError):
        manager.get_session(sid)


def test_contact_and_label_prefix_top_level_posts(tmp_path: Path):
    bridge, platform, session = _bridge(tmp_path)
    bridge.sessions.update_session(session.session_id, label="api-refactor")
    bridge.sessions.set_contact(session.session_id, "U0123ABCD")

    async def run_case():
        await bridge.inform("Dropping the legacy table")
        await bridge.update_progress("half way")

    asyncio.run(run_case())

    assert platform.posted[0][1] == "<@U0123ABCD> [api-refactor] Dropping the legacy table"
    # Thread replies stay unprefixed.
    assert platform.posted[1][1] == "half way"
