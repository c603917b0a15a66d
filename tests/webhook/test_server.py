"""Tests for the webhook HTTP application (aiohttp)."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp.test_utils import TestClient, TestServer, make_mocked_request
from conftest import make_config, sign

from webhook_listener.config import CommandRule
from webhook_listener.log_context import current_log_context
from webhook_listener.webhook.auth import SIGNATURE_HEADER
from webhook_listener.webhook.dispatcher import CommandDispatcher
from webhook_listener.webhook.server import EVENT_HEADER, WebhookServer

_PING = CommandRule(event="ping", command="/bin/echo", args=("pong",))
_PUSH_A = CommandRule(event="push", command="/usr/bin/deploy")
_PUSH_B = CommandRule(event="push", command="/usr/bin/notify")
_BODY = b'{"zen": "Design for failure."}'
_LIMIT = 1024

ClientFactory = Callable[..., Any]


def _headers(event: str | None = "ping", body: bytes = _BODY, **extra: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json", SIGNATURE_HEADER: sign(body)}
    if event is not None:
        headers[EVENT_HEADER] = event
    headers.update(extra)
    return headers


@pytest.fixture
def dispatcher() -> MagicMock:
    return MagicMock(spec=CommandDispatcher)


@pytest.fixture
async def make_client() -> AsyncIterator[ClientFactory]:
    clients: list[TestClient[Any, Any]] = []

    async def _make(server: WebhookServer) -> TestClient[Any, Any]:
        client = TestClient(TestServer(server.build_app()))
        await client.start_server()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.close()


@pytest.fixture
async def server_client(
    dispatcher: MagicMock, make_client: ClientFactory
) -> TestClient[Any, Any]:
    config = make_config(_PING, _PUSH_A, _PUSH_B, max_body_bytes=_LIMIT)
    return await make_client(WebhookServer(config, dispatcher))


# ---------------------------------------------------------------------------
# Accepted requests
# ---------------------------------------------------------------------------


class TestAccepted:
    async def test_valid_request_returns_204(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock
    ) -> None:
        resp = await server_client.post("/", data=_BODY, headers=_headers("ping"))
        assert resp.status == 204
        assert await resp.read() == b""
        dispatcher.dispatch.assert_called_once_with([_PING], "ping", _BODY)

    async def test_all_matching_rules_dispatched(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock
    ) -> None:
        resp = await server_client.post("/", data=_BODY, headers=_headers("push"))
        assert resp.status == 204
        dispatcher.dispatch.assert_called_once_with([_PUSH_A, _PUSH_B], "push", _BODY)

    async def test_no_matching_rule_still_204(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock
    ) -> None:
        resp = await server_client.post("/", data=_BODY, headers=_headers("issues"))
        assert resp.status == 204
        dispatcher.dispatch.assert_not_called()

    async def test_connection_is_closed_after_response(
        self, server_client: TestClient[Any, Any]
    ) -> None:
        resp = await server_client.post("/", data=_BODY, headers=_headers("ping"))
        assert resp.headers.get("Connection", "").lower() == "close"

    async def test_body_at_limit_accepted(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock
    ) -> None:
        body = b"a" * _LIMIT
        resp = await server_client.post("/", data=body, headers=_headers("ping", body))
        assert resp.status == 204
        dispatcher.dispatch.assert_called_once()


# ---------------------------------------------------------------------------
# Rejected requests
# ---------------------------------------------------------------------------


class TestRejected:
    async def test_missing_event_header(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock
    ) -> None:
        resp = await server_client.post("/", data=_BODY, headers=_headers(None))
        assert resp.status == 400
        assert await resp.text() == "Missing header: X-GitHub-Event"
        dispatcher.dispatch.assert_not_called()

    async def test_non_ascii_event_header(self, dispatcher: MagicMock) -> None:
        server = WebhookServer(make_config(_PING), dispatcher)
        request = make_mocked_request(
            "POST", "/", headers={EVENT_HEADER: "pïng", SIGNATURE_HEADER: sign(_BODY)}
        )
        resp = await server._handle_webhook(request)
        assert resp.status == 400
        assert resp.text == "Invalid ASCII in header: X-GitHub-Event"
        dispatcher.dispatch.assert_not_called()

    async def test_missing_signature(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock
    ) -> None:
        headers = _headers("ping")
        del headers[SIGNATURE_HEADER]
        resp = await server_client.post("/", data=_BODY, headers=headers)
        assert resp.status == 400
        assert await resp.text() == "Missing or invalid signature"
        dispatcher.dispatch.assert_not_called()

    @pytest.mark.parametrize("signature", ["sha256=abc", "sha256=not-hex", "sha1=00"])
    async def test_malformed_signature(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock, signature: str
    ) -> None:
        headers = _headers("ping", **{SIGNATURE_HEADER: signature})
        resp = await server_client.post("/", data=_BODY, headers=headers)
        assert resp.status == 400
        dispatcher.dispatch.assert_not_called()

    async def test_signature_for_other_body(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock
    ) -> None:
        resp = await server_client.post("/", data=_BODY + b"!", headers=_headers("ping"))
        assert resp.status == 400
        dispatcher.dispatch.assert_not_called()

    async def test_declared_length_too_large(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock
    ) -> None:
        body = b"a" * (_LIMIT + 1)
        resp = await server_client.post("/", data=body, headers=_headers("ping", body))
        assert resp.status == 413
        assert await resp.text() == "Body too big"
        dispatcher.dispatch.assert_not_called()

    async def test_declared_length_rejected_without_reading(self, dispatcher: MagicMock) -> None:
        server = WebhookServer(make_config(_PING, max_body_bytes=_LIMIT), dispatcher)
        payload = MagicMock()
        payload.readany = AsyncMock(side_effect=AssertionError("body must not be read"))
        payload.read = AsyncMock(side_effect=AssertionError("body must not be read"))
        request = make_mocked_request(
            "POST",
            "/",
            headers={EVENT_HEADER: "ping", "Content-Length": str(10**9)},
            payload=payload,
        )
        resp = await server._handle_webhook(request)
        assert resp.status == 413
        payload.readany.assert_not_called()
        payload.read.assert_not_called()

    async def test_streamed_body_too_large(
        self, server_client: TestClient[Any, Any], dispatcher: MagicMock
    ) -> None:
        async def chunks() -> AsyncIterator[bytes]:
            for _ in range(8):
                yield b"b" * 512

        headers = _headers("ping")
        resp = await server_client.post("/", data=chunks(), headers=headers)
        assert resp.status == 413
        dispatcher.dispatch.assert_not_called()


# ---------------------------------------------------------------------------
# Other routes
# ---------------------------------------------------------------------------


class TestNotFound:
    @pytest.mark.parametrize(
        ("method", "path"),
        [("GET", "/"), ("PUT", "/"), ("POST", "/hooks"), ("GET", "/health"), ("DELETE", "/x/y")],
    )
    async def test_other_routes_are_empty_404(
        self,
        server_client: TestClient[Any, Any],
        dispatcher: MagicMock,
        method: str,
        path: str,
    ) -> None:
        resp = await server_client.request(method, path, data=_BODY, headers=_headers("ping"))
        assert resp.status == 404
        assert await resp.read() == b""
        dispatcher.dispatch.assert_not_called()


class TestRequestNumbering:
    async def test_every_request_gets_the_next_number(self, dispatcher: MagicMock) -> None:
        server = WebhookServer(make_config(_PING), dispatcher)

        async def handled(handler: Callable[..., Any], request: Any) -> int | None:
            await handler(request)
            return current_log_context().request_id

        webhook = make_mocked_request("POST", "/", headers={})
        stray = make_mocked_request("GET", "/favicon.ico")
        numbers = [
            await asyncio.create_task(handled(server._handle_webhook, webhook)),
            await asyncio.create_task(handled(server._handle_not_found, stray)),
            await asyncio.create_task(handled(server._handle_webhook, webhook)),
        ]
        assert numbers == [1, 2, 3]


# ---------------------------------------------------------------------------
# With real commands
# ---------------------------------------------------------------------------


class TestEndToEndDispatch:
    async def test_ping_runs_echo_with_body(self, make_client: ClientFactory) -> None:
        dispatcher = CommandDispatcher(output="log")
        tasks: list[asyncio.Task[Any]] = []
        real_dispatch = dispatcher.dispatch

        def _record(*args: Any) -> list[asyncio.Task[Any]]:
            tasks.extend(real_dispatch(*args))
            return tasks

        spy = MagicMock(side_effect=_record)
        dispatcher.dispatch = spy  # type: ignore[method-assign]
        client = await make_client(WebhookServer(make_config(_PING), dispatcher))

        resp = await client.post("/", data=b"{}", headers=_headers("ping", b"{}"))

        assert resp.status == 204
        spy.assert_called_once_with([_PING], "ping", b"{}")
        results = await asyncio.wait_for(asyncio.gather(*tasks), 10)
        assert [(r.command, r.args, r.status) for r in results] == [
            ("/bin/echo", ("pong",), "success")
        ]

    async def test_response_does_not_wait_for_commands(
        self, make_client: ClientFactory, tmp_path: Path
    ) -> None:
        outputs = [tmp_path / "one", tmp_path / "two"]
        rules = [
            CommandRule(
                event="push",
                command="/bin/sh",
                args=("-c", 'sleep 1.5; cat > "$1"', "sh", str(out)),
            )
            for out in outputs
        ]
        dispatcher = CommandDispatcher()
        client = await make_client(WebhookServer(make_config(*rules), dispatcher))

        started = time.monotonic()
        resp = await client.post("/", data=_BODY, headers=_headers("push"))
        elapsed = time.monotonic() - started

        assert resp.status == 204
        assert elapsed < 1.0
        assert dispatcher.pending == 2

        await asyncio.wait_for(dispatcher.drain(), 10)
        assert [out.read_bytes() for out in outputs] == [_BODY, _BODY]
