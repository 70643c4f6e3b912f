"""Reconnecting, dual-transport session client for the VEX messaging backend."""
from vex_client.client.http_client import ResilientHttp
from vex_client.client.normalizer import normalize
from vex_client.client.orchestrator import SessionOrchestrator, create_session
from vex_client.client.outbox import PersistentOutbox
from vex_client.client.socket_transport import EventTransport
from vex_client.server.webhooks import create_webhook_router, process_webhook_payload
from vex_client.shared.config import ClientConfig, OutboxConfig, Settings, VEX_WEBHOOK_PATH
from vex_client.shared.errors import (
    ClientDestroyedError,
    NotInitializedError,
    TransportError,
    VexApiError,
    VexError,
)
from vex_client.shared.registry import SessionRegistry

__all__ = [
    "ClientConfig",
    "ClientDestroyedError",
    "EventTransport",
    "NotInitializedError",
    "OutboxConfig",
    "PersistentOutbox",
    "ResilientHttp",
    "SessionOrchestrator",
    "SessionRegistry",
    "Settings",
    "TransportError",
    "VEX_WEBHOOK_PATH",
    "VexApiError",
    "VexError",
    "create_session",
    "create_webhook_router",
    "normalize",
    "process_webhook_payload",
]
