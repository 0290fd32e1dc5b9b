import asyncio
import json
from typing import Any
from urllib.parse import urlencode

from feedback_bridge.delivery.router import WebhookEventRouter
from feedback_bridge.webhook.server import WebhookServer

SESSION = "abc123"
THREAD = "1700000000.000100"


class _FakeReader:
    def __init__(self, payload: bytes):
        self.payload = payload

    async def read(self, _size: int = -1) -> bytes:
        return self.payload


class _FakeWriter:
    def __init__(self):
        self._chunks: list[bytes] = []
        self.closed = False
        self.wait_closed_called = False

    def write(self, data: bytes) -> None:
        self._chunks.append(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        self.wait_closed_called = True

    @property
    def payload(self) -> bytes:
        return b"".join(self._chunks)


def _parse_http(payload: bytes) -> tuple[int, str, str]:
    head, _, body = payload.partition(b"\r\n\r\n")
    head_text = head.decode("utf-8", errors="ignore")
    status_line = head_text.splitlines()[0] if head_text.splitlines() else ""
    try:
        status = int(status_line.split()[1])
    except (IndexError, ValueError):
        status = 0
    return status, head_text, body.decode("utf-8", errors="ignore")


def _request(method: str, path: str, body: str = "", content_type: str = "application/json") -> str:
    data = body.encode("utf-8")
    return (
        f"{method} {path} HTTP/1.1\r\nHost: localhost\r\n"
        f"Content-Type: {content_type}\r\nContent-Length: {len(data)}\r\n\r\n{body}"
    )


async def _send(server: WebhookServer, raw_request: str) -> tuple[int, str, str]:
    reader = _FakeReader(raw_request.encode("utf-8"))
    writer = _FakeWriter()
    await server._handle_client(reader, writer)
    assert writer.closed is True
    assert writer.wait_closed_called is True
    return _parse_http(writer.payload)


def test_health_reports_session_id():
    server = WebhookServer(session_id=SESSION, router=WebhookEventRouter(), port=0)

    status, headers, body = asyncio.run(_send(server, "GET /health HTTP/1.1\r\nHost: localhost\r\n\r\n"))

    assert status == 200
    assert "application/json" in headers.lower()
    assert json.loads(body) == {"status": "ok", "sessionId": SESSION}


def test_url_verification_echoes_challenge():
    server = WebhookServer(session_id=SESSION, router=WebhookEventRouter(), port=0)
    body = json.dumps({"type": "url_verification", "challenge": "c-123"})

    status, _, response = asyncio.run(_send(server, _request("POST", "/slack/events", body)))

    assert status == 200
    assert json.loads(response) == {"challenge": "c-123"}


def test_message_event_resolves_waiting_caller():
    router = WebhookEventRouter("UBOT")
    server = WebhookServer(session_id=SESSION, router=router, port=0)
    body = json.dumps(
        {
            "type": "event_callback",
            "event": {"type": "message", "user": "U1", "text": "go ahead", "ts": "1700000002.000000", "thread_ts": THREAD},
        }
    )

    async def run_case():
        waiter = router.register(SESSION, THREAD)
        status, _, _ = await _send(server, _request("POST", "/slack/events", body))
        return status, waiter

    status, waiter = asyncio.run(run_case())

    assert status == 200
    assert waiter.done()
    assert waiter.result().response == "go ahead"
    assert server.events_received == 1


def test_interactive_payload_is_routed():
    router = WebhookEventRouter("UBOT")
    server = WebhookServer(session_id=SESSION, router=router, port=0)
    payload = {
        "type": "block_actions",
        "user": {"id": "U1"},
        "actions": [{"value": "approve"}],
        "message": {"ts": THREAD},
    }
    form = urlencode({"payload": json.dumps(payload)})

    status, _, _ = asyncio.run(
        _send(server, _request("POST", "/slack/interactive", form, "application/x-www-form-urlencoded"))
    )

    assert status == 200
    queued = router.take(SESSION, THREAD)
    assert [r.response for r in queued] == ["approve"]


def test_bad_requests_are_rejected():
    server = WebhookServer(session_id=SESSION, router=WebhookEventRouter(), port=0)

    async def run_case():
        return [
            (await _send(server, "GET /missing HTTP/1.1\r\n\r\n"))[0],
            (await _send(server, "GET /slack/events HTTP/1.1\r\n\r\n"))[0],
            (await _send(server, "POST /health HTTP/1.1\r\n\r\n"))[0],
            (await _send(server, _request("POST", "/slack/events", "{not json")))[0],
            (await _send(server, "garbage"))[0],
        ]

    assert asyncio.run(run_case()) == [404, 405, 405, 400, 400]


def test_start_stop_with_mocked_server(monkeypatch):
    server = WebhookServer(session_id=SESSION, router=WebhookEventRouter(), host="127.0.0.1", port=3005)

    class _FakeSocket:
        def getsockname(self):
            return ("127.0.0.1", 3005)

    class _FakeAsyncServer:
        def __init__(self):
            self.sockets = [_FakeSocket()]
            self.closed = False
            self.wait_closed_called = False

        def close(self) -> None:
            self.closed = True

        async def wait_closed(self) -> None:
            self.wait_closed_called = True

    capture: dict[str, Any] = {}
    fake_server = _FakeAsyncServer()

    async def fake_start_server(handler, host, port):
        capture["host"] = host
        capture["port"] = port
        return fake_server

    monkeypatch.setattr("feedback_bridge.webhook.server.asyncio.start_server", fake_start_server)

    async def run_case() -> None:
        await server.start()
        assert server.is_running is True
        assert server.bound_port == 3005
        assert capture == {"host": "127.0.0.1", "port": 3005}

        await server.stop()
        assert fake_server.closed is True
        assert server.is_running is False

    asyncio.run(run_case())
