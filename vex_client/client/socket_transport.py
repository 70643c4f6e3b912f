"""
MODULE OVERVIEW:
The push transport: one persistent Socket.IO connection to the backend per session.

WHAT IS HAPPENING HERE:
We use `python-socketio`'s AsyncClient over the websocket transport, authenticated
with `{"apiKey", "clientId"}` in the handshake `auth` payload. Requests that need
an answer (subscribe, send-message) go through `call()`, which waits for the
server's acknowledgement.

The client's own reconnection is switched off. When the socket drops we emit
`disconnected`, then reconnect with exponential backoff on a fresh client and
resubscribe, so attempts, `error` and `failed` are reported by us. The backend
itself reconnects to the upstream network all the time and forwards every
intermediate `connection.update: close`; those are filtered out here unless the
reason says the session is really gone.
"""
import asyncio
import math
import time
from typing import Any, Callable, Optional

import socketio
from socketio import exceptions as sio_exceptions
from loguru import logger

from vex_client.shared.client_utils import backoff_delay
from vex_client.shared.config import PushConfig
from vex_client.shared.errors import TransportError
from vex_client.shared.events import EventEmitter
from vex_client.shared.models import BACKEND_EVENT_NAMES, EventKind, SendResult, SessionStatusPayload

# connection.update close reasons that are forwarded while push is active.
FORWARDED_CLOSE_REASONS = frozenset({"logged_out", "max_reconnect_attempts"})

ClientFactory = Callable[[], Any]


def close_reason(update: dict) -> str | None:
    reason = update.get("reason")
    if reason is None and isinstance(update.get("lastDisconnect"), dict):
        reason = update["lastDisconnect"].get("reason")
    return reason


def should_suppress(event_name: str, data: Any) -> bool:
    """True for backend-internal reconnect churn that consumers must not see."""
    if event_name != EventKind.CONNECTION_UPDATE.value or not isinstance(data, dict):
        return False
    if data.get("connection") != "close":
        return False
    return close_reason(data) not in FORWARDED_CLOSE_REASONS


def _default_client_factory() -> socketio.AsyncClient:
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class EventTransport:
    def __init__(
        self,
        url: str,
        api_key: str,
        session_id: str,
        config: PushConfig | None = None,
        client_id: str | None = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config or PushConfig()
        self.session_id = session_id
        self.client_id = client_id or f"sdk_{int(time.time() * 1000)}"
        self.api_key = api_key
        self.url = url.rstrip('/')
        self.ev = EventEmitter()

        self._client_factory = client_factory or _default_client_factory
        self._sio: Any = None
        self._reconnect_task: asyncio.Task | None = None

        self._connected = False
        self._subscribed = False
        self._reconnect_attempts = 0
        self._closing = False
        self._destroyed = False

    @property
    def auth(self) -> dict:
        return {"apiKey": self.api_key, "clientId": self.client_id}

    @property
    def connected(self) -> bool:
        return self._connected and self._sio is not None

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    # ==========================
    # CONNECT / DISCONNECT
    # ==========================
    async def connect(self) -> None:
        """Open the socket and subscribe to the session. Raises TransportError."""
        if self._destroyed:
            raise TransportError("EventTransport has been destroyed")
        if self.connected:
            return

        self._closing = False
        try:
            await asyncio.wait_for(self._open(), timeout=self.config.connection_timeout_s)
        except asyncio.TimeoutError as e:
            await self._drop_client()
            error = TransportError("Socket connection timeout")
            self.ev.emit("error", error)
            raise error from e
        except Exception as e:
            await self._drop_client()
            logger.error(f"session_id={self.session_id} protocol=socketio event=connect_error reason='{e}'")
            self.ev.emit("error", e)
            raise TransportError(f"Socket connection failed: {e}") from e

        try:
            await self._subscribe()
        except TransportError:
            self._closing = True
            await self._drop_client()
            self._closing = False
            raise

    async def _open(self) -> None:
        sio = self._client_factory()
        self._register_handlers(sio)
        self._sio = sio
        await sio.connect(
            self.url,
            auth=self.auth,
            transports=["websocket"],
            wait_timeout=self.config.connection_timeout_s,
        )
        self._connected = True
        self._reconnect_attempts = 0
        logger.info(f"session_id={self.session_id} protocol=socketio event=connect reason=accepted")
        self.ev.emit("connected")

    async def _drop_client(self) -> None:
        sio, self._sio = self._sio, None
        self._connected = False
        self._subscribed = False
        if sio is not None:
            try:
                await sio.disconnect()
            except Exception as e:
                logger.debug(f"session_id={self.session_id} protocol=socketio close error='{e}'")

    async def disconnect(self) -> None:
        self._closing = True
        if self._reconnect_task and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        await self._drop_client()

    async def destroy(self) -> None:
        self._destroyed = True
        await self.disconnect()
        self.ev.remove_all_listeners()

    # ==========================
    # INBOUND
    # ==========================
    def _register_handlers(self, sio: Any) -> None:
        def on_disconnect(reason: Any = None) -> None:
            if sio is self._sio and not self._closing:
                self._on_disconnect(str(reason) if reason else "transport close")

        def on_event(name: str) -> Callable[[Any], None]:
            def handler(data: Any = None) -> None:
                if sio is self._sio:
                    self._dispatch_event(name, data)
            return handler

        sio.on("disconnect", on_disconnect)
        for name in ("session:subscribed", "session:unsubscribed", "session:status", *BACKEND_EVENT_NAMES):
            sio.on(name, on_event(name))

    def _on_disconnect(self, reason: str) -> None:
        self._sio = None
        self._connected = False
        self._subscribed = False
        logger.info(f"session_id={self.session_id} protocol=socketio event=disconnect reason='{reason}'")
        self.ev.emit("disconnected", reason)

        if self.config.auto_reconnect and not self._destroyed and not self._closing:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._destroyed and not self._closing:
            if self._reconnect_attempts >= self.config.max_reconnect_attempts:
                logger.error(f"session_id={self.session_id} protocol=socketio event=reconnect_failed")
                self.ev.emit("failed", TransportError("Max reconnect attempts reached"))
                return

            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts
            delay = backoff_delay(
                attempt - 1,
                self.config.reconnect_delay_s,
                self.config.max_reconnect_delay_s,
                jitter=0.1,
            )
            logger.info(f"session_id={self.session_id} protocol=socketio Attempt {attempt} Delay {delay:.2f}s")
            self.ev.emit("reconnecting", attempt)
            await asyncio.sleep(delay)

            try:
                await asyncio.wait_for(self._open(), timeout=self.config.connection_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._drop_client()
                # Attempts survive the failed _open().
                self._reconnect_attempts = attempt
                error = e if not isinstance(e, asyncio.TimeoutError) else TransportError("Socket connection timeout")
                self.ev.emit("error", error)
                continue

            self._reconnect_task = None
            try:
                await self._subscribe()
            except TransportError as e:
                logger.error(f"session_id={self.session_id} Failed to resubscribe: {e}")
            return

    def _dispatch_event(self, name: str, data: Any) -> None:
        if name == "session:subscribed":
            self._subscribed = True
            self.ev.emit("subscribed", (data or {}).get("sessionUUID", self.session_id))
        elif name == "session:unsubscribed":
            self._subscribed = False
            self.ev.emit("unsubscribed", (data or {}).get("sessionUUID", self.session_id))
        elif name == "session:status":
            try:
                status = SessionStatusPayload.model_validate(data)
            except ValueError as e:
                logger.warning(f"session_id={self.session_id} invalid session:status payload: {e}")
                return
            if status.session_id == self.session_id:
                self.ev.emit("session:status", status)
        elif name in BACKEND_EVENT_NAMES:
            if not isinstance(data, dict) or data.get("sessionUUID") != self.session_id:
                return
            inner = data.get("data")
            if should_suppress(name, inner):
                logger.debug(f"session_id={self.session_id} event={name} suppressed reason='{close_reason(inner)}'")
                return
            self.ev.emit("backend:event", name, inner)

    # ==========================
    # OUTBOUND
    # ==========================
    async def _call(self, event: str, data: Any, timeout_s: float) -> Any:
        if not self.connected:
            raise TransportError("Socket not connected")
        try:
            return await self._sio.call(event, data, timeout=timeout_s)
        except sio_exceptions.TimeoutError as e:
            raise TransportError(f"{event} timeout after {timeout_s}s") from e
        except sio_exceptions.SocketIOError as e:
            raise TransportError(f"{event} failed: {e}") from e

    async def _subscribe(self) -> None:
        response = await self._call("session:subscribe", self.session_id, self.config.subscribe_timeout_s)
        if not (isinstance(response, dict) and response.get("success")):
            raise TransportError("Failed to subscribe to session")
        self._subscribed = True
        logger.info(f"session_id={self.session_id} protocol=socketio event=subscribed")
        self.ev.emit("subscribed", self.session_id)

    async def unsubscribe(self) -> None:
        if not self.connected or not self._subscribed:
            return
        await self._call("session:unsubscribe", self.session_id, self.config.subscribe_timeout_s)
        self._subscribed = False
        self.ev.emit("unsubscribed", self.session_id)

    async def send_message(self, to: str, message: Any, timeout_s: float | None = None) -> SendResult:
        """Send over the socket; large base64 media is why the default timeout is minutes."""
        if not self.connected:
            raise TransportError("Socket not connected")
        effective = self.config.message_timeout_s if timeout_s is None else timeout_s
        response = await self._call(
            "session:send-message",
            {"sessionUUID": self.session_id, "to": to, "message": message},
            effective,
        )
        return SendResult.model_validate(response or {"success": False, "error": "empty ack"})

    @staticmethod
    def estimate_payload_size(base64_data: str) -> int:
        return math.ceil(len(base64_data) * 0.75)

    @staticmethod
    def is_within_size_limit(base64_data: str, limit_mb: float = 500) -> bool:
        return EventTransport.estimate_payload_size(base64_data) <= limit_mb * 1024 * 1024
