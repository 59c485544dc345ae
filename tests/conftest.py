"""Shared test fixtures: an in-memory Foundry server and Socket.IO client."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import httpx
import pytest
import socketio

from foundry_mcp.config import FoundryConfig
from foundry_mcp.foundry_client import FoundryClient
from foundry_mcp.rpc import FoundryRpc

GM_USER_ID = "gmUser000000001"
SESSION_TOKEN = "s3ss10nt0k3n"


def default_reply(event: str, data: Any) -> Any:
    """Answer modifyDocument with an empty result, anything else with None."""
    if event == "modifyDocument":
        return {
            "type": data["type"],
            "action": data["action"],
            "result": [],
            "userId": GM_USER_ID,
        }
    return None


class FakeSocket:
    """Stands in for ``socketio.AsyncClient``.

    ``reply(event, data)`` answers ``call``; returning an exception instance
    raises it.  ``emit`` records the arguments the server would receive and
    passes them to ``on_emit(socket, event, *args)``, so tests can script
    server-side reactions.  Setting ``emit_error`` makes ``emit`` raise it.
    """

    def __init__(
        self,
        reply: Callable[[str, Any], Any],
        session_data: Any,
        on_emit: Callable[..., None] | None = None,
        connect_error: Exception | None = None,
    ) -> None:
        self.reply = reply
        self.session_data = session_data
        self.on_emit = on_emit
        self.connect_error = connect_error
        self.handlers: dict[str, Callable[..., Any]] = {}
        self.connected = False
        self.disconnect_count = 0
        self.connect_args: dict[str, Any] | None = None
        self.calls: list[tuple[str, Any, float]] = []
        self.emitted: list[tuple[str, tuple[Any, ...]]] = []
        self.emit_error: Exception | None = None

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.handlers[event] = handler

    def trigger(self, event: str, *args: Any) -> None:
        handler = self.handlers.get(event)
        if handler is not None:
            handler(*args)

    async def connect(self, url: str, **kwargs: Any) -> None:
        self.connect_args = {"url": url, **kwargs}
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        self.trigger("connect")
        if self.session_data is not None:
            asyncio.get_running_loop().call_soon(self.trigger, "session", self.session_data)

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnect_count += 1

    async def emit(self, event: str, data: Any = None) -> None:
        if self.emit_error is not None:
            raise self.emit_error
        # Same spreading as python-socketio: a tuple is several arguments,
        # None is none.
        if isinstance(data, tuple):
            args = data
        elif data is None:
            args = ()
        else:
            args = (data,)
        self.emitted.append((event, args))
        if self.on_emit is not None:
            self.on_emit(self, event, *args)

    async def call(self, event: str, data: Any = None, timeout: float = 60) -> Any:
        self.calls.append((event, data, timeout))
        result = self.reply(event, data)
        if isinstance(result, BaseException):
            raise result
        return result


class SocketFactory:
    """Creates a ``FakeSocket`` per connection attempt and remembers them all.

    Settings apply to sockets created afterwards, so a test can make the
    first socket misbehave and the next one work.
    """

    def __init__(self) -> None:
        self.sockets: list[FakeSocket] = []
        self.reply: Callable[[str, Any], Any] = default_reply
        self.session_data: Any = {"userId": GM_USER_ID}
        self.on_emit: Callable[..., None] | None = None
        self.connect_error: Exception | None = None

    def __call__(self) -> FakeSocket:
        sock = FakeSocket(self.reply, self.session_data, self.on_emit, self.connect_error)
        self.sockets.append(sock)
        return sock

    @property
    def current(self) -> FakeSocket:
        return self.sockets[-1]


class FakeFoundryServer:
    """``httpx.MockTransport`` handler for Foundry's HTTP endpoints."""

    def __init__(self) -> None:
        self.status: dict[str, Any] = {
            "active": True,
            "version": "12.331",
            "world": "test-world",
            "system": "dnd5e",
            "systemVersion": "3.3.1",
            "users": 2,
            "uptime": 1234.5,
        }
        self.status_code = 200
        self.session_token: str | None = SESSION_TOKEN
        self.upload_status = 200
        self.upload_reply: Any = {
            "status": "success",
            "path": "worlds/test-world/uploads/map.webp",
        }
        self.requests: list[httpx.Request] = []
        self.unreachable = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)
        path = request.url.path
        if path == "/api/status":
            return httpx.Response(self.status_code, json=self.status)
        if path == "/join":
            headers = []
            if self.session_token:
                headers.append(("set-cookie", f"session={self.session_token}; Path=/; HttpOnly"))
            return httpx.Response(302, headers=headers, text="Redirecting to /game")
        if path == "/upload":
            return httpx.Response(self.upload_status, json=self.upload_reply)
        return httpx.Response(404)

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    def last(self, path: str) -> httpx.Request:
        return [r for r in self.requests if r.url.path == path][-1]


@pytest.fixture
def foundry():
    return FakeFoundryServer()


@pytest.fixture
def sockets():
    return SocketFactory()


@pytest.fixture
def config():
    return FoundryConfig(url="http://foundry.test:30000/", user_id=GM_USER_ID, password="hunter2")


@pytest.fixture
def client(config, foundry, sockets):
    """A FoundryClient wired to the fakes, with short timeouts."""
    c = FoundryClient(
        config,
        http_transport=httpx.MockTransport(foundry.handler),
        socket_factory=sockets,
    )
    c.handshake_timeout = 0.2
    c.reconnect_confirm_timeout = 0.05
    c.activity_window = 0.05
    c.macro_poll_interval = 0.01
    return c


@pytest.fixture
def rpc(client):
    return FoundryRpc(client)


def bridge_responder(*, result: Any = "ok", copies: int = 1, version: str = "1.2.0"):
    """Return an ``on_emit`` hook acting like browsers running the bridge module.

    Each RPC request is answered ``copies`` times, as happens with several
    GM tabs open.  Pings are answered with a pong.
    """

    def on_emit(sock: FakeSocket, event: str, data: Any = None, *_: Any) -> None:
        if event != "module.foundry-mcp-bridge" or not isinstance(data, dict):
            return
        loop = asyncio.get_running_loop()
        if data["type"] == "rpc-request":
            for n in range(copies):
                value = result(data) if callable(result) else result
                message = {
                    "type": "rpc-response",
                    "requestId": data["requestId"],
                    "success": True,
                    "result": value if copies == 1 else f"{value}-{n}",
                    "duration": 4,
                }
                loop.call_soon(sock.trigger, event, message)
        elif data["type"] == "rpc-ping":
            pong = {
                "type": "rpc-pong",
                "requestId": data["requestId"],
                "moduleVersion": version,
                "userId": GM_USER_ID,
            }
            loop.call_soon(sock.trigger, event, pong)

    return on_emit


def transport_timeout() -> socketio.exceptions.TimeoutError:
    return socketio.exceptions.TimeoutError()
