"""Test doubles shared by the test modules: a scripted VEX backend and a fake Socket.IO client."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Callable

import httpx
from socketio import exceptions as sio_exceptions

SESSION_ID = "sess-1"

# Returned by a fake server to leave a call() unanswered.
NO_ACK = object()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll `predicate` until it is true or fail the test after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class FakeBackend:
    """In-memory VEX REST backend, served through httpx.MockTransport."""

    def __init__(self, session_id: str = SESSION_ID):
        self.session_id = session_id
        self.up = True
        self.requests: list[tuple[str, str]] = []
        self.init_bodies: list[dict] = []
        self.sent_messages: list[dict] = []
        self.init_response: dict[str, Any] = {
            "sessionUUID": session_id,
            "status": "connecting",
            "isConnected": False,
        }
        self.info: dict[str, Any] = {
            "sessionUUID": session_id,
            "status": "connecting",
            "isConnected": False,
        }
        self.events: list[dict] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def count(self, method: str, path: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p == path)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))

        if not self.up:
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})

        if request.method == "POST" and path == "/sessions/init":
            self.init_bodies.append(json.loads(request.content))
            return httpx.Response(200, json=self.init_response)

        match = re.fullmatch(r"/sessions/([^/]+)(/events|/messages)?", path)
        if match is None or match.group(1) != self.session_id:
            return httpx.Response(404, json={"error": "Session not found"})

        suffix = match.group(2)
        if suffix == "/events":
            events, self.events = self.events, []
            return httpx.Response(200, json={"events": events})
        if suffix == "/messages":
            self.sent_messages.append(json.loads(request.content))
            return httpx.Response(200, json={
                "success": True,
                "messageId": f"http-{len(self.sent_messages)}",
            })
        if request.method == "DELETE":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(200, json=self.info)


class FakeSioClient:
    """
    Stand-in for socketio.AsyncClient. Acknowledged emits are answered by `server`;
    the test delivers server events with `push()` and server-side drops with `drop()`.
    """

    def __init__(self, connector: "FakeConnector"):
        self.handlers: dict[str, Callable] = {}
        self.sent: list[tuple[str, Any]] = []
        self.connect_args: dict[str, Any] | None = None
        self.connected = False
        self.disconnected = False
        self.fail_sends = False
        self._connector = connector

    def on(self, event: str, handler: Callable) -> None:
        self.handlers[event] = handler

    async def connect(self, url: str, auth: Any = None, transports: Any = None, wait_timeout: float = 1) -> None:
        self.connect_args = {"url": url, "auth": auth, "transports": transports}
        if self._connector.fail_with is not None:
            raise self._connector.fail_with
        self.connected = True

    async def call(self, event: str, data: Any = None, timeout: float = 60) -> Any:
        if not self.connected:
            raise sio_exceptions.BadNamespaceError("/ is not a connected namespace.")
        if self.fail_sends and event == "session:send-message":
            raise sio_exceptions.DisconnectedError()
        self.sent.append((event, data))
        response = self._connector.server(event, data)
        if response is NO_ACK:
            await asyncio.sleep(timeout)
            raise sio_exceptions.TimeoutError()
        return response

    async def disconnect(self) -> None:
        was_connected, self.connected = self.connected, False
        self.disconnected = True
        if was_connected:
            self.handlers["disconnect"]("client disconnect")

    def push(self, event: str, data: Any) -> None:
        handler = self.handlers.get(event)
        if handler is not None:
            handler(data)

    def push_event(self, name: str, data: Any, session_id: str = SESSION_ID) -> None:
        self.push(name, {"sessionUUID": session_id, "data": data})

    def drop(self, reason: str = "transport close") -> None:
        """Server-side close: the disconnect handler fires without a local disconnect()."""
        self.connected = False
        self.handlers["disconnect"](reason)


def default_server(event: str, data: Any) -> Any:
    if event in ("session:subscribe", "session:unsubscribe"):
        return {"success": True}
    if event == "session:send-message":
        return {"success": True, "messageId": "ws-1"}
    return None


def rejecting_server(event: str, data: Any) -> Any:
    if event == "session:subscribe":
        return {"success": False}
    return default_server(event, data)


def nacking_server(event: str, data: Any) -> Any:
    if event == "session:send-message":
        return {"success": False, "error": "boom"}
    return default_server(event, data)


class FakeConnector:
    """Client factory for EventTransport; hands out FakeSioClients in order."""

    def __init__(self, server: Callable[[str, Any], Any] | None = None):
        self.server = server if server is not None else default_server
        self.clients: list[FakeSioClient] = []
        self.fail_with: Exception | None = None

    def __call__(self) -> FakeSioClient:
        client = FakeSioClient(self)
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeSioClient:
        return self.clients[-1]
