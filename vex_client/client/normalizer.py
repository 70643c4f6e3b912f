"""
MODULE OVERVIEW:
Converts wire-format event payloads into the in-memory shapes consumers expect.

WHAT IS HAPPENING HERE:
JSON cannot carry 64-bit timestamps or byte buffers, so the backend ships them as
decimal strings and base64 text. Whether an event arrives over the push socket, a
poll response or a webhook, it comes through `normalize()` before anyone sees it.
Each known event kind has its own parser; unknown kinds pass through untouched.
The caller's payload is never mutated, and normalizing twice is a no-op.
"""
import base64
import binascii
import copy
from typing import Any, Callable, Dict

from vex_client.shared.client_utils import parse_int
from vex_client.shared.models import EventKind, NormalizedEvent

# Byte-buffer fields in message content. Exact, case-sensitive names.
BUFFER_FIELDS = frozenset({"jpegThumbnail", "mediaKey", "fileEncSha256", "fileSha256", "fileLength"})

CHAT_TIMESTAMP_FIELDS = ("conversationTimestamp", "lastMessageRecvTimestamp")


def decode_buffers(obj: Any) -> None:
    """Base64-decode recognized string fields in place, at any depth."""
    if isinstance(obj, dict):
        for key, value in obj.items():
            if key in BUFFER_FIELDS and isinstance(value, str):
                try:
                    obj[key] = base64.b64decode(value, validate=True)
                except (binascii.Error, ValueError):
                    pass
            elif isinstance(value, (dict, list)):
                decode_buffers(value)
    elif isinstance(obj, list):
        for item in obj:
            decode_buffers(item)


def _int_fields(record: dict, *fields: str) -> None:
    for field in fields:
        if isinstance(record.get(field), str):
            record[field] = parse_int(record[field])


def reconstruct_message(msg: Any) -> Any:
    if not isinstance(msg, dict):
        return msg
    _int_fields(msg, "messageTimestamp")
    decode_buffers(msg)
    return msg


def reconstruct_chat(chat: Any) -> Any:
    if isinstance(chat, dict):
        _int_fields(chat, *CHAT_TIMESTAMP_FIELDS)
    return chat


def reconstruct_group(group: Any) -> Any:
    if isinstance(group, dict):
        _int_fields(group, "creation")
    return group


def _each(fn: Callable[[Any], Any]) -> Callable[[Any], Any]:
    def _parse(payload: Any) -> Any:
        if not isinstance(payload, list):
            return payload
        return [fn(item) for item in payload]
    return _parse


def _parse_messages_upsert(payload: Any) -> Any:
    if not isinstance(payload, dict) or not isinstance(payload.get("messages"), list):
        return payload
    payload["messages"] = [reconstruct_message(m) for m in payload["messages"]]
    return payload


def _parse_history_set(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return payload
    if isinstance(payload.get("messages"), list):
        payload["messages"] = [reconstruct_message(m) for m in payload["messages"]]
    if isinstance(payload.get("chats"), list):
        payload["chats"] = [reconstruct_chat(c) for c in payload["chats"]]
    return payload


_PARSERS: Dict[EventKind, Callable[[Any], Any]] = {
    EventKind.MESSAGES_UPSERT: _parse_messages_upsert,
    EventKind.MESSAGING_HISTORY_SET: _parse_history_set,
    EventKind.CHATS_UPSERT: _each(reconstruct_chat),
    EventKind.CHATS_UPDATE: _each(reconstruct_chat),
    EventKind.GROUPS_UPSERT: _each(reconstruct_group),
    EventKind.GROUPS_UPDATE: _each(reconstruct_group),
}


def normalize(event_name: str, data: Any) -> NormalizedEvent:
    """
    Normalize one event. May raise on pathological payloads; callers that must
    not drop events fall back to the raw data themselves.
    """
    kind = EventKind.from_name(event_name)
    parser = _PARSERS.get(kind)
    if parser is None:
        return NormalizedEvent(name=event_name, kind=kind, data=data)
    return NormalizedEvent(name=event_name, kind=kind, data=parser(copy.deepcopy(data)))
