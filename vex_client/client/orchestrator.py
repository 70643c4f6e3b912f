"""
MODULE OVERVIEW:
The session orchestrator: one object per backend session, and the only place
events are emitted to consumers.

WHAT IS HAPPENING HERE:
On start we call `POST /sessions/init`, then pick exactly one way of receiving
events for this session:

    1. webhook  - a backend_url is configured; the backend POSTs events to the app,
                  which hands them to `inject_event()`. We hold no transport.
    2. push     - a Socket.IO subscription (EventTransport). Its own disconnect
                  detection is authoritative, so no health check runs.
    3. poll     - fallback when push is disabled or has failed once. Session status
                  and pending events are fetched on an interval, and a periodic
                  health check watches for the backend going away.

Whatever the origin, every event goes through the normalizer and out of `_emit()`.
When the backend goes offline (HTTP edge notification, failed health check, failed
init) we emit a close and reconnect with exponential backoff + jitter: each attempt
probes /health, then re-runs the full initialization.

Every timer is an asyncio task held in one attribute per duty (init, reconnect,
poll, health), and starting a duty cancels the previous task for it, so two timers
for the same job never overlap.
"""
import asyncio
import time
from typing import Any, Callable, Optional

from loguru import logger

from vex_client.client.http_client import ResilientHttp
from vex_client.client.normalizer import normalize
from vex_client.client.outbox import PersistentOutbox
from vex_client.client.session_state import SessionStateMachine
from vex_client.client.socket_transport import EventTransport
from vex_client.shared.client_utils import backoff_delay, make_client_stats, now_utc
from vex_client.shared.config import ClientConfig
from vex_client.shared.errors import ClientDestroyedError, NotInitializedError, VexError
from vex_client.shared.events import EventEmitter
from vex_client.shared.models import (
    ConnectionStatus,
    EventKind,
    InitSessionResponse,
    NormalizedEvent,
    PollEventsResponse,
    QueuedSendOperation,
    SendResult,
    SessionInfo,
    SessionStatusPayload,
)
from vex_client.shared.registry import SessionRegistry

TransportFactory = Callable[..., EventTransport]


def _close_update(error: str, **extra: Any) -> dict:
    return {
        "connection": "close",
        "lastDisconnect": {"error": VexError(error), "date": now_utc()},
        **extra,
    }


class SessionOrchestrator:
    def __init__(
        self,
        config: ClientConfig,
        registry: SessionRegistry | None = None,
        outbox: PersistentOutbox | None = None,
        transport_factory: Optional[TransportFactory] = None,
        http: ResilientHttp | None = None,
        autostart: bool = True,
    ):
        self.config = config
        self.ev = EventEmitter()
        self.state = SessionStateMachine()
        self.registry = registry
        self.outbox = outbox
        self.stats = make_client_stats()
        self._token = config.token or ""
        self._transport_factory = transport_factory or EventTransport

        self.http = http or ResilientHttp(config.url, config.api_key, config.retry)
        self.http.on_offline = self._handle_server_offline
        self.http.on_online = self._handle_server_online

        if outbox is not None and outbox.send_function is None:
            outbox.set_send_function(self._deliver_queued)

        self._mode: str | None = None
        self._transport: EventTransport | None = None
        self._push_failed = False

        self._server_online = True
        self._reconnect_attempts = 0
        self._reconnecting = False
        self._destroyed = False

        self._init_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._fallback_task: asyncio.Task | None = None

        # Last values seen by the poll loop.
        self._last_qr: str | None = None
        self._last_status: str | None = None

        if autostart:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                pass
            else:
                self.start()

    # ==========================
    # PUBLIC STATE
    # ==========================
    @property
    def session_id(self) -> str:
        return self.state.session_id or self._token

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.state.status

    @property
    def mode(self) -> str | None:
        return self._mode

    @property
    def is_server_online(self) -> bool:
        return self._server_online

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnecting

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def is_socket_connected(self) -> bool:
        return self._transport is not None and self._transport.connected

    @property
    def user(self) -> dict | None:
        identity = self.state.session.last_known_identity
        if not (identity or self.session_id):
            return None
        return {"id": f"{identity or self.session_id}@s.whatsapp.net", "name": identity}

    # ==========================
    # LIFECYCLE
    # ==========================
    def start(self) -> asyncio.Task:
        if self._destroyed:
            raise ClientDestroyedError()
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initial_startup())
        return self._init_task

    async def wait_for_init(self) -> None:
        await self.start()

    async def _initial_startup(self) -> None:
        try:
            await self._initialize()
        except Exception as e:
            logger.error(f"session_id={self.session_id or '-'} Init failed: {e}")
            if self._destroyed:
                return
            if self.state.status != "close":
                self._set_status("close", _close_update(str(e)))
            if self._reconnection_enabled() and not self._reconnecting:
                self._schedule_reconnect()

    async def _initialize(self) -> None:
        webhook_url = self.config.webhook_url()

        response = InitSessionResponse.model_validate(await self.http.post("/sessions/init", {
            "sessionUUID": self.session_id or None,
            "webhookUrl": webhook_url,
            "metadata": self.config.metadata,
        }))
        if self._destroyed:
            return

        self.state.assign_session_id(response.session_id)
        self.state.set_identity(response.phone_number)
        if self.registry is not None:
            self.registry.register(response.session_id, self)

        self._last_qr = response.qr_code
        self._last_status = response.status

        self._reconnect_attempts = 0
        self._reconnecting = False
        self._handle_server_online()

        if response.is_connected:
            self._set_status("open", {"connection": "open"})
        elif response.qr_code:
            self._set_status("qrcode", {"qrCode": response.qr_code})
        else:
            self._set_status("connecting", {"connection": "connecting"})

        await self._select_transport(webhook_url)

    async def destroy(self) -> None:
        """Idempotent. Cancels every timer, drops the socket, emits a final close."""
        if self._destroyed:
            return
        self._destroyed = True

        for task in (self._init_task, self._reconnect_task, self._poll_task, self._health_task, self._fallback_task):
            self._cancel(task)
        self._reconnect_task = self._poll_task = self._health_task = self._fallback_task = None
        await self._teardown_push()
        self._mode = None
        self._reconnecting = False

        self.state.transition("close")
        self._emit(NormalizedEvent(
            name=EventKind.CONNECTION_UPDATE.value,
            kind=EventKind.CONNECTION_UPDATE,
            data=_close_update("Client destroyed"),
        ))
        self.ev.remove_all_listeners()

        if self.registry is not None and self.state.session_id:
            self.registry.unregister(self.state.session_id, self)
        await self.http.aclose()
        logger.info(f"session_id={self.session_id or '-'} Client destroyed")

    async def reconnect(self) -> None:
        """Re-run initialization now, giving push another chance."""
        if self._destroyed:
            raise ClientDestroyedError()
        if not self.session_id:
            raise NotInitializedError("No session to reconnect. Use a new client instead.")

        self._set_status("connecting", {"connection": "connecting"})
        self._reconnect_attempts = 0
        self._push_failed = False
        await self._teardown_push()
        await self._initialize()

    async def force_reconnect(self) -> None:
        if self._destroyed:
            raise ClientDestroyedError()
        self._cancel(self._reconnect_task)
        self._reconnect_task = None
        self._reconnect_attempts = 0
        await self._attempt_reconnect()

    async def logout(self) -> None:
        self._ensure_initialized()

        self._cancel(self._reconnect_task)
        self._reconnect_task = None
        self._stop_health_check()
        self._stop_polling()
        await self._teardown_push()
        self._mode = None
        self._reconnecting = False

        await self.http.delete(f"/sessions/{self.session_id}")

        self._set_status("close", _close_update("Logged out"))
        if self.registry is not None:
            self.registry.unregister(self.session_id, self)

    # ==========================
    # TRANSPORT SELECTION
    # ==========================
    async def _select_transport(self, webhook_url: str | None) -> None:
        if webhook_url:
            self._stop_polling()
            self._stop_health_check()
            await self._teardown_push()
            self._mode = "webhook"
            logger.info(f"session_id={self.session_id} Using webhook mode (events via {webhook_url})")
        elif self.config.push.enabled and not self._push_failed:
            await self._connect_push()
        else:
            await self._teardown_push()
            self._enter_poll_mode()

    async def _connect_push(self) -> None:
        if not self.session_id or self._destroyed:
            return
        await self._teardown_push()
        self._stop_polling()
        self._stop_health_check()

        transport = self._transport_factory(
            self.config.url,
            self.config.api_key,
            self.session_id,
            self.config.push,
            client_id=f"sdk_{self.session_id}",
        )
        self._transport = transport
        self._wire_transport(transport)

        logger.info(f"session_id={self.session_id} Connecting push transport to {self.config.url}")
        try:
            await transport.connect()
        except Exception as e:
            logger.error(f"session_id={self.session_id} Push connection failed, falling back to polling: {e}")
            self._push_failed = True
            await self._teardown_push()
            self._enter_poll_mode()
            return

        if self._transport is transport:
            self._mode = "push"
            logger.info(f"session_id={self.session_id} Push connected, polling and health check disabled")

    def _wire_transport(self, transport: EventTransport) -> None:
        def on_backend_event(name: str, data: Any) -> None:
            self.inject_event(name, data)

        def on_disconnected(reason: str) -> None:
            logger.info(f"session_id={self.session_id} Push disconnected: {reason}")

        def on_reconnecting(attempt: int) -> None:
            logger.info(f"session_id={self.session_id} Push reconnecting... attempt {attempt}")

        def on_error(error: Exception) -> None:
            if self._transport is not transport or self._mode != "push" or transport.connected:
                return
            if self._fallback_task is None or self._fallback_task.done():
                self._fallback_task = asyncio.create_task(self._fallback_to_polling(transport, error))

        transport.ev.on("backend:event", on_backend_event)
        transport.ev.on("session:status", self._on_session_status)
        transport.ev.on("disconnected", on_disconnected)
        transport.ev.on("reconnecting", on_reconnecting)
        transport.ev.on("error", on_error)
        transport.ev.on("failed", on_error)

    async def _fallback_to_polling(self, transport: EventTransport, error: Exception) -> None:
        if self._destroyed or self._transport is not transport or self._mode != "push":
            return
        logger.warning(f"session_id={self.session_id} Push transport failed ({error}), enabling polling fallback")
        self._push_failed = True
        await self._teardown_push()
        self._enter_poll_mode()

    async def _teardown_push(self) -> None:
        transport, self._transport = self._transport, None
        if self._mode == "push":
            self._mode = None
        if transport is not None:
            await transport.destroy()

    def _enter_poll_mode(self) -> None:
        if self._destroyed:
            return
        self._mode = "poll"
        logger.info(f"session_id={self.session_id} Using HTTP polling")
        self._start_polling()
        self._start_health_check()

    def _on_session_status(self, payload: SessionStatusPayload) -> None:
        if payload.status == "connected":
            self._last_qr = None
            self.state.set_identity(payload.phone_number)
            self._set_status("open", {"connection": "open"})
        elif payload.status == "qrcode" and payload.qr_code:
            self._last_qr = payload.qr_code
            self._set_status("qrcode", {"qrCode": payload.qr_code})
        elif payload.status in ("disconnected", "timeout"):
            self._set_status("close", _close_update(payload.status))
        elif payload.status == "connecting":
            self._set_status("connecting", {"connection": "connecting"})

    # ==========================
    # POLLING
    # ==========================
    def _start_polling(self) -> None:
        interval = self.config.poll_interval_s
        if interval <= 0 or self._destroyed:
            return
        self._stop_polling()
        logger.info(f"session_id={self.session_id} Starting internal polling (interval: {interval}s)")
        self._poll_task = asyncio.create_task(self._poll_loop(interval))

    def _stop_polling(self) -> None:
        self._cancel(self._poll_task)
        self._poll_task = None

    async def _poll_loop(self, interval: float) -> None:
        while not self._destroyed:
            await asyncio.sleep(interval)
            await self.poll_once()

    async def poll_once(self) -> None:
        """One status + events fetch. Errors are logged; the health check owns outages."""
        if not self.session_id or self._destroyed:
            return
        self.stats["poll_cycles"] += 1

        try:
            info = SessionInfo.model_validate(await self.http.get(f"/sessions/{self.session_id}"))
        except Exception as e:
            logger.debug(f"session_id={self.session_id} Polling error: {e}")
            return

        if info.qr_code and info.qr_code != self._last_qr:
            self._last_qr = info.qr_code
            self._set_status("qrcode", {"qrCode": info.qr_code})

        if info.status != self._last_status:
            previous, self._last_status = self._last_status, info.status

            if info.is_connected and previous != "connected":
                self._last_qr = None
                self.state.set_identity(info.phone_number)
                self._set_status("open", {"connection": "open"})

            if not info.is_connected and previous == "connected":
                self._set_status("close", _close_update("Disconnected"))

        await self._poll_events()

    async def _poll_events(self) -> None:
        if self.state.status != "open" or self._destroyed:
            return
        try:
            response = PollEventsResponse.model_validate(
                await self.http.get(f"/sessions/{self.session_id}/events")
            )
        except Exception as e:
            logger.debug(f"session_id={self.session_id} Event poll error: {e}")
            return

        for polled in response.events:
            self.inject_event(polled.event, polled.data)

    # ==========================
    # HEALTH CHECK (poll mode only)
    # ==========================
    def _start_health_check(self) -> None:
        interval = self.config.health_check_interval_s
        if interval <= 0 or self._destroyed:
            return
        self._stop_health_check()
        self._health_task = asyncio.create_task(self._health_loop(interval))

    def _stop_health_check(self) -> None:
        self._cancel(self._health_task)
        self._health_task = None

    async def _health_loop(self, interval: float) -> None:
        while not self._destroyed:
            await asyncio.sleep(interval)
            try:
                healthy = await self.http.health_check()
            except Exception as e:
                logger.debug(f"session_id={self.session_id} Health check error: {e}")
                continue
            if not healthy and self._server_online:
                self._handle_server_offline()

    # ==========================
    # ONLINE / OFFLINE / RECONNECT
    # ==========================
    def _handle_server_offline(self) -> None:
        if self._destroyed:
            return
        was_online = self._server_online
        self._server_online = False
        if self.outbox is not None:
            self.outbox.set_offline()
        if not was_online:
            return

        logger.warning(f"session_id={self.session_id or '-'} Server went offline")
        self._set_status("close", _close_update("Server offline"))

        if self._reconnection_enabled() and not self._reconnecting:
            self._schedule_reconnect()

    def _handle_server_online(self) -> None:
        if self._destroyed:
            return
        if not self._server_online:
            logger.info(f"session_id={self.session_id or '-'} Server is back online")
        self._server_online = True
        if self.outbox is not None:
            self.outbox.set_online()

    def _reconnection_enabled(self) -> bool:
        return self.config.reconnection.enabled

    def _can_reconnect(self) -> bool:
        if self._destroyed:
            return False
        return self._reconnect_attempts < self.config.reconnection.max_attempts

    def reconnect_delay(self) -> float:
        cfg = self.config.reconnection
        return backoff_delay(
            self._reconnect_attempts,
            cfg.initial_delay_s,
            cfg.max_delay_s,
            multiplier=cfg.multiplier,
            jitter=0.1,
        )

    def _schedule_reconnect(self) -> None:
        if not self._reconnection_enabled() or not self._can_reconnect():
            return
        self._cancel(self._reconnect_task)

        delay = self.reconnect_delay()
        self._reconnecting = True
        logger.info(
            f"session_id={self.session_id or '-'} Scheduling reconnect attempt "
            f"{self._reconnect_attempts + 1} in {delay:.2f}s"
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._attempt_reconnect()

    async def _attempt_reconnect(self) -> None:
        if self._destroyed:
            return

        self._reconnect_attempts += 1
        self.stats["reconnect_count"] += 1
        attempt = self._reconnect_attempts
        logger.info(f"session_id={self.session_id or '-'} Reconnect attempt {attempt}")
        self._set_status("connecting", {
            "connection": "connecting",
            "isReconnecting": True,
            "reconnectAttempt": attempt,
        })

        try:
            if not await self.http.health_check():
                raise VexError("Server health check failed")
            await self._initialize()
            logger.info(f"session_id={self.session_id} Reconnected successfully")
        except Exception as e:
            logger.error(f"session_id={self.session_id or '-'} Reconnect attempt {attempt} failed: {e}")
            if self._destroyed:
                return
            if self._can_reconnect():
                self._schedule_reconnect()
            else:
                logger.error(f"session_id={self.session_id or '-'} Max reconnect attempts reached, giving up")
                self._reconnecting = False
                self._set_status("close", _close_update(
                    "Max reconnect attempts reached",
                    reason="max_reconnect_attempts",
                    isTerminal=True,
                ))

    # ==========================
    # EVENTS
    # ==========================
    def inject_event(self, name: str, data: Any) -> NormalizedEvent:
        """
        Entry point for every inbound event (webhook receiver, push, poll).
        A payload the normalizer chokes on is delivered raw rather than dropped.
        """
        if self._destroyed:
            raise ClientDestroyedError()

        try:
            event = normalize(name, data)
        except Exception as e:
            logger.error(f"session_id={self.session_id} Error normalizing event {name}: {e}")
            self.stats["normalization_errors"] += 1
            event = NormalizedEvent(name=name, kind=EventKind.from_name(name), data=data, normalized=False)

        if event.kind is EventKind.CONNECTION_UPDATE and isinstance(event.data, dict):
            update = event.data
            if update.get("connection") == "open":
                self.state.transition("open")
            elif update.get("connection") == "close":
                self.state.transition("close")
            elif update.get("qrCode"):
                self.state.transition("qrcode")

        self._emit(event)
        return event

    def _set_status(self, status: ConnectionStatus, update: dict) -> None:
        transition = self.state.transition(status)
        if not transition.accepted:
            return
        self._emit(NormalizedEvent(
            name=EventKind.CONNECTION_UPDATE.value,
            kind=EventKind.CONNECTION_UPDATE,
            data=update,
        ))

    def _emit(self, event: NormalizedEvent) -> None:
        self.stats["events_received"] += 1
        self.stats["last_event_at"] = now_utc().isoformat()
        self.ev.emit(event.name, event.data)

    # ==========================
    # OUTBOUND
    # ==========================
    def _ensure_initialized(self) -> None:
        if self._destroyed:
            raise ClientDestroyedError()
        if not self.session_id:
            raise NotInitializedError()

    async def _http_send(self, to: str, content: Any, options: Any = None) -> dict:
        body: dict = {"to": to, "message": content}
        if options is not None:
            body["options"] = options
        return await self.http.post(f"/sessions/{self.session_id}/messages", body) or {}

    async def send_message(self, to: str, content: Any, options: Any = None) -> dict:
        self._ensure_initialized()
        response = await self._http_send(to, content, options)
        return {
            "key": {"remoteJid": to, "fromMe": True, "id": response.get("messageId")},
            "message": content,
            "messageTimestamp": response.get("timestamp") or int(time.time()),
            "status": "PENDING",
        }

    async def send_text(self, to: str, text: str) -> dict:
        return await self.send_message(to, {"text": text})

    async def send_message_fast(self, to: str, message: Any, timeout_s: float | None = None) -> SendResult:
        """Socket send when push is connected, HTTP otherwise or when the socket send fails."""
        self._ensure_initialized()

        transport = self._transport
        if transport is not None and transport.connected:
            try:
                result = await transport.send_message(to, message, timeout_s)
            except Exception as e:
                logger.warning(f"session_id={self.session_id} Socket send failed, using HTTP: {e}")
            else:
                if result.success:
                    return result
                logger.warning(f"session_id={self.session_id} Socket send rejected ({result.error}), using HTTP")

        response = await self._http_send(to, message)
        return SendResult(success=True, message_id=response.get("messageId"))

    def queue_message(self, to: str, content: Any, options: Any = None) -> QueuedSendOperation:
        """Hand a send to the outbox; delivery is reported through the outbox's events."""
        self._ensure_initialized()
        if self.outbox is None:
            raise VexError("No outbox configured for this client")
        return self.outbox.enqueue(self.session_id, to, content, options)

    async def _deliver_queued(self, session_id: str, to: str, content: Any, options: Any) -> dict:
        if session_id == self.session_id and not self._destroyed:
            return await self._http_send(to, content, options)
        other = self.registry.get(session_id) if self.registry is not None else None
        if other is None or other.is_destroyed:
            raise VexError(f"No live client for session {session_id}")
        return await other._http_send(to, content, options)

    async def get_session_info(self) -> SessionInfo:
        self._ensure_initialized()
        return SessionInfo.model_validate(await self.http.get(f"/sessions/{self.session_id}"))

    # ==========================
    # HELPERS
    # ==========================
    @staticmethod
    def _cancel(task: asyncio.Task | None) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


def create_session(config: ClientConfig, **kwargs: Any) -> SessionOrchestrator:
    """Build an orchestrator and start initializing it. Needs a running event loop."""
    client = SessionOrchestrator(config, autostart=False, **kwargs)
    client.start()
    return client
