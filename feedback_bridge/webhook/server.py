"""Minimal HTTP listener for Slack event and interactivity callbacks."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from urllib.parse import parse_qs, urlsplit

from loguru import logger as _logger

from feedback_bridge.delivery.router import WebhookEventRouter

_MAX_BODY = 1024 * 1024


class WebhookServer:
    """Serve one session's Slack callbacks and hand events to the router."""

    def __init__(
        self,
        *,
        session_id: str,
        router: WebhookEventRouter,
        host: str = "127.0.0.1",
        port: int = 3000,
        logger: Any = None,
    ):
        self.session_id = session_id
        self.router = router
        self.host = str(host or "127.0.0.1").strip()
        self.port = max(0, int(port))
        self.log = logger or _logger.bind(component="webhook")
        self._server: asyncio.AbstractServer | None = None
        self.events_received = 0

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> int:
        if not self._server or not self._server.sockets:
            return self.port
        return int(self._server.sockets[0].getsockname()[1])

    async def start(self) -> None:
        if self._server:
            return
        self._server = await asyncio.start_server(
            self._handle_client, host=self.host, port=self.port
        )
        self.log.info(f"Webhook listener for session {self.session_id} on {self.host}:{self.bound_port}")

    async def stop(self) -> None:
        if not self._server:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    def _http_response(
        self, status: int, body: str, content_type: str = "text/plain; charset=utf-8"
    ) -> bytes:
        reason = {
            200: "OK",
            400: "Bad Request",
            404: "Not Found",
            405: "Method Not Allowed",
            413: "Payload Too Large",
            500: "Internal Server Error",
        }.get(status, "OK")
        data = body.encode("utf-8")
        headers = [
            f"HTTP/1.1 {status} {reason}",
            f"Content-Type: {content_type}",
            f"Content-Length: {len(data)}",
            "Connection: close",
            "",
            "",
        ]
        return "\r\n".join(headers).encode("utf-8") + data

    def _json_response(self, status: int, payload: dict[str, Any]) -> bytes:
        return self._http_response(
            status, json.dumps(payload) + "\n", content_type="application/json; charset=utf-8"
        )

    async def _read_request(
        self, reader: asyncio.StreamReader
    ) -> tuple[str, str, dict[str, str], bytes] | None:
        raw = await reader.read(65536)
        head, sep, body = raw.partition(b"\r\n\r\n")
        if not sep:
            head, _, body = raw.partition(b"\n\n")
        lines = head.decode("utf-8", errors="ignore").splitlines()
        parts = lines[0].split() if lines else []
        if len(parts) < 2:
            return None

        headers: dict[str, str] = {}
        for line in lines[1:]:
            name, colon, value = line.partition(":")
            if colon:
                headers[name.strip().lower()] = value.strip()

        try:
            length = int(headers.get("content-length", "0"))
        except ValueError:
            length = 0
        if length > _MAX_BODY:
            raise ValueError("payload too large")
        while len(body) < length:
            chunk = await reader.read(length - len(body))
            if not chunk:
                break
            body += chunk
        return parts[0].upper(), parts[1], headers, body[:length] if length else body

    def _handle_events(self, body: bytes) -> bytes:
        try:
            payload = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            return self._http_response(400, "invalid json\n")
        if not isinstance(payload, dict):
            return self._http_response(400, "invalid payload\n")

        kind = payload.get("type")
        if kind == "url_verification":
            return self._json_response(200, {"challenge": payload.get("challenge", "")})
        if kind == "event_callback":
            event = payload.get("event")
            if isinstance(event, dict):
                self.events_received += 1
                response = self.router.handle_message_event(self.session_id, event)
                if response is not None:
                    self.log.debug(f"Webhook reply from {response.user_id} in thread {response.thread_ts}")
        return self._json_response(200, {"ok": True})

    def _handle_interactive(self, body: bytes) -> bytes:
        form = parse_qs(body.decode("utf-8", errors="ignore"))
        raw = (form.get("payload") or [""])[0]
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return self._http_response(400, "invalid payload\n")
        self.events_received += 1
        self.router.handle_interactive(self.session_id, payload)
        return self._json_response(200, {"ok": True})

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            try:
                request = await self._read_request(reader)
            except ValueError:
                writer.write(self._http_response(413, "payload too large\n"))
                await writer.drain()
                return
            if request is None:
                writer.write(self._http_response(400, "bad request\n"))
                await writer.drain()
                return

            method, target, _, body = request
            path = urlsplit(target).path or "/"
            if path == "/health":
                if method != "GET":
                    writer.write(self._http_response(405, "method not allowed\n"))
                else:
                    writer.write(self._json_response(200, {"status": "ok", "sessionId": self.session_id}))
                await writer.drain()
                return

            routes = {
                "/slack/events": self._handle_events,
                "/slack/interactive": self._handle_interactive,
            }
            handler = routes.get(path)
            if handler is None:
                writer.write(self._http_response(404, "not found\n"))
            elif method != "POST":
                writer.write(self._http_response(405, "method not allowed\n"))
            else:
                writer.write(handler(body))
            await writer.drain()
        except Exception as e:
            self.log.error(f"Webhook request failed: {e!r}")
            writer.write(self._http_response(500, "internal error\n"))
            await writer.drain()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
