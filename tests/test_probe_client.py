from __future__ import annotations

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from line_checks.probe_client import (
    SHAPE_BARE,
    SHAPE_NESTED,
    SHAPE_TOP_LEVEL,
    SHAPE_UNRECOGNIZED,
    ProbeConfig,
    check_address_availability,
    decode_availability,
    ping_health,
)


@pytest.mark.parametrize(
    ("body", "available", "shape"),
    [
        ({"status": 200, "message": "Success", "data": {"available": True}}, True, SHAPE_NESTED),
        ({"data": {"available": False}, "available": True}, False, SHAPE_NESTED),
        ({"available": True}, True, SHAPE_TOP_LEVEL),
        ({"data": {"other": 1}, "available": False}, False, SHAPE_TOP_LEVEL),
        (True, True, SHAPE_BARE),
        (False, False, SHAPE_BARE),
        ({"data": {"available": "true"}}, False, SHAPE_UNRECOGNIZED),
        ({"available": 1}, False, SHAPE_UNRECOGNIZED),
        ("yes", False, SHAPE_UNRECOGNIZED),
        (None, False, SHAPE_UNRECOGNIZED),
        ([True], False, SHAPE_UNRECOGNIZED),
    ],
)
def test_decode_availability(body: Any, available: bool, shape: str) -> None:
    assert decode_availability(body) == (available, shape)


class _FakeLineHandler(BaseHTTPRequestHandler):
    token = "line-guid"

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _send(self, status: int, body: bytes, content_type: str = "application/json") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_json(self, status: int, obj: Any) -> None:
        self._send(status, json.dumps(obj).encode("utf-8"))

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        qs = parse_qs(parsed.query)
        if (qs.get("guid") or [""])[0] != self.token:
            self._send_json(401, {"status": 401, "message": "Unauthorized"})
            return

        prefix, _, rest = parsed.path.lstrip("/").partition("/")
        path = "/" + rest
        if path == "/api/v1/ping":
            if prefix == "ok":
                self._send_json(200, {"status": 200, "message": "Ping received!", "data": "pong", "extra": 1})
            elif prefix == "slow":
                time.sleep(1.0)
                self._send_json(200, {"status": 200, "message": "Ping received!", "data": "pong"})
            elif prefix == "wrong":
                self._send_json(200, {"status": 200, "message": "Ping received!", "data": "ping"})
            elif prefix == "text":
                self._send(200, b"pong", content_type="text/plain")
            else:
                self._send_json(503, {"status": 503, "message": "Service Unavailable"})
            return

        if path == "/api/v1/handle/availability/imessage":
            address = (qs.get("address") or [""])[0]
            if prefix == "down":
                self._send_json(500, {"status": 500, "message": "Internal Server Error"})
            elif address == "+1000":
                self._send_json(200, {"status": 200, "message": "Success", "data": {"available": True}})
            elif address == "top@example.com":
                self._send_json(200, {"available": True})
            elif address == "bare":
                self._send_json(200, True)
            else:
                self._send_json(200, {"status": 200, "message": "Success", "data": {"available": False}})
            return

        self.send_error(404)


@pytest.fixture(scope="module")
def fake_line_base_url() -> str:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _FakeLineHandler)
    httpd.daemon_threads = True
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.mark.asyncio
async def test_ping_success_envelope(fake_line_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await ping_health(client, f"{fake_line_base_url}/ok", "line-guid")
    assert outcome.success is True
    assert outcome.error is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("prefix", "error_kind"),
    [
        ("wrong", "shape_mismatch"),
        ("text", "shape_mismatch"),
        ("down", "http_status"),
    ],
)
async def test_ping_failures(fake_line_base_url: str, prefix: str, error_kind: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await ping_health(client, f"{fake_line_base_url}/{prefix}", "line-guid")
    assert outcome.success is False
    assert outcome.error_kind == error_kind
    assert outcome.error


@pytest.mark.asyncio
async def test_ping_wrong_token_is_http_failure(fake_line_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await ping_health(client, f"{fake_line_base_url}/ok", "nope")
    assert outcome.success is False
    assert outcome.error_kind == "http_status"
    assert "401" in (outcome.error or "")


@pytest.mark.asyncio
async def test_ping_timeout(fake_line_base_url: str) -> None:
    config = ProbeConfig(timeout_seconds=0.2)
    async with httpx.AsyncClient() as client:
        outcome = await ping_health(client, f"{fake_line_base_url}/slow", "line-guid", config=config)
    assert outcome.success is False
    assert outcome.error_kind == "timeout"


@pytest.mark.asyncio
async def test_ping_transport_error() -> None:
    async with httpx.AsyncClient() as client:
        outcome = await ping_health(client, "http://127.0.0.1:1", "line-guid", config=ProbeConfig(timeout_seconds=1.0))
    assert outcome.success is False
    assert outcome.error_kind in {"transport", "timeout"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("address", "available", "shape"),
    [
        ("+1000", True, SHAPE_NESTED),
        ("top@example.com", True, SHAPE_TOP_LEVEL),
        ("bare", True, SHAPE_BARE),
        ("+1999", False, SHAPE_NESTED),
    ],
)
async def test_check_address_availability(fake_line_base_url: str, address: str, available: bool, shape: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await check_address_availability(client, f"{fake_line_base_url}/ok/", "line-guid", address)
    assert outcome.success is True
    assert outcome.available is available
    assert outcome.shape == shape


@pytest.mark.asyncio
async def test_check_address_availability_http_error_is_probe_failure(fake_line_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        outcome = await check_address_availability(client, f"{fake_line_base_url}/down", "line-guid", "+1000")
    assert outcome.success is False
    assert outcome.available is None
    assert outcome.error_kind == "http_status"


@pytest.mark.asyncio
async def test_custom_paths_and_token_param() -> None:
    seen: list[httpx.URL] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, json={"status": 200, "message": "Ping received!", "data": "pong"})

    config = ProbeConfig(ping_path="health/ping", token_param="token")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        outcome = await ping_health(client, "http://line.test/base/", "abc", config=config)
    assert outcome.success is True
    assert seen[0].path == "/base/health/ping"
    assert seen[0].params["token"] == "abc"
