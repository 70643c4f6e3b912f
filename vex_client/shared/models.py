"""
MODULE OVERVIEW:
This module defines the typed data structures shared by the HTTP client, the push
transport, the outbox and the webhook receiver, powered by Pydantic v2.

WHAT IS HAPPENING HERE:
The backend speaks camelCase JSON (`sessionUUID`, `isConnected`, `qrCode`). We keep
snake_case attributes in Python and map the wire names with aliases, so every
response is validated once at the edge and the rest of the code works with typed
objects. Event payloads themselves stay opaque (`Any`); only their envelope is typed.
"""
import time
from enum import Enum
from typing import Any, Literal
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field

ConnectionStatus = Literal["connecting", "qrcode", "open", "close"]


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# WHAT IS HAPPENING HERE:
# The closed set of backend event names we know how to normalize. Anything else
# still flows through as UNKNOWN with its raw payload, so new backend events never
# get dropped just because this list is behind.
class EventKind(str, Enum):
    CONNECTION_UPDATE = "connection.update"
    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_UPDATE = "messages.update"
    MESSAGES_DELETE = "messages.delete"
    MESSAGES_REACTION = "messages.reaction"
    MESSAGE_RECEIPT_UPDATE = "message-receipt.update"
    PRESENCE_UPDATE = "presence.update"
    CONTACTS_UPSERT = "contacts.upsert"
    CONTACTS_UPDATE = "contacts.update"
    GROUPS_UPSERT = "groups.upsert"
    GROUPS_UPDATE = "groups.update"
    GROUP_PARTICIPANTS_UPDATE = "group-participants.update"
    CHATS_UPSERT = "chats.upsert"
    CHATS_UPDATE = "chats.update"
    CHATS_DELETE = "chats.delete"
    BLOCKLIST_SET = "blocklist.set"
    BLOCKLIST_UPDATE = "blocklist.update"
    LABELS_EDIT = "labels.edit"
    LABELS_ASSOCIATION = "labels.association"
    MESSAGING_HISTORY_SET = "messaging-history.set"
    CALL = "call"
    UNKNOWN = "unknown"

    @classmethod
    def from_name(cls, name: str) -> "EventKind":
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


# Backend events forwarded over the push socket (everything but UNKNOWN).
BACKEND_EVENT_NAMES: tuple[str, ...] = tuple(k.value for k in EventKind if k is not EventKind.UNKNOWN)


class NormalizedEvent(BaseModel):
    """What consumers receive, whichever transport produced it."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    kind: EventKind
    data: Any = None
    normalized: bool = True


class Session(BaseModel):
    session_id: str = ""
    status: ConnectionStatus = "connecting"
    last_known_identity: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QueuedSendOperation(BaseModel):
    id: str
    session_id: str
    target: str
    payload: Any = None
    options: Any = None
    enqueued_at: float = Field(default_factory=time.time)
    attempt_count: int = 0
    last_attempt_at: float | None = None
    last_error: str | None = None


class QueueStats(BaseModel):
    total_sessions: int
    total_operations: int
    by_session: dict[str, int]


# ==========================
# BACKEND RESPONSES
# ==========================
class InitSessionResponse(_WireModel):
    session_id: str = Field(alias="sessionUUID")
    status: str = "connecting"
    is_connected: bool = Field(default=False, alias="isConnected")
    qr_code: str | None = Field(default=None, alias="qrCode")
    phone_number: str | None = Field(default=None, alias="phoneNumber")
    created_at: str | None = Field(default=None, alias="createdAt")


class SessionInfo(_WireModel):
    session_id: str = Field(alias="sessionUUID")
    status: str
    qr_code: str | None = Field(default=None, alias="qrCode")
    phone_number: str | None = Field(default=None, alias="phoneNumber")
    is_connected: bool = Field(default=False, alias="isConnected")
    last_activity: str | None = Field(default=None, alias="lastActivity")
    reconnect_count: int = Field(default=0, alias="reconnectCount")


class PolledEvent(_WireModel):
    event: str
    data: Any = None
    timestamp: float | None = None


class PollEventsResponse(_WireModel):
    events: list[PolledEvent] = Field(default_factory=list)


class SendResult(_WireModel):
    success: bool
    message_id: str | None = Field(default=None, alias="messageId")
    error: str | None = None


# ==========================
# INBOUND ENVELOPES
# ==========================
class WebhookPayload(_WireModel):
    event: str | None = None
    session_id: str | None = Field(default=None, alias="sessionUUID")
    data: Any = None
    timestamp: str | float | None = None


class SessionStatusPayload(_WireModel):
    session_id: str = Field(alias="sessionUUID")
    status: Literal["connecting", "qrcode", "connected", "disconnected", "timeout"]
    phone_number: str | None = Field(default=None, alias="phoneNumber")
    qr_code: str | None = Field(default=None, alias="qrCode")
    timestamp: str | None = None
