"""Tests for the payload normalizer."""

from __future__ import annotations

import base64
import copy

from vex_client.client.normalizer import decode_buffers, normalize
from vex_client.shared.models import EventKind

THUMB = base64.b64encode(b"\xff\xd8jpeg-bytes").decode()


def upsert_payload():
    return {
        "type": "notify",
        "messages": [
            {
                "key": {"id": "ABC", "remoteJid": "5511@s.whatsapp.net"},
                "messageTimestamp": "1700000000",
                "message": {
                    "imageMessage": {
                        "jpegThumbnail": THUMB,
                        "mediaKey": "not base64 !!",
                        "caption": "hello",
                    },
                },
            },
        ],
    }


class TestMessagesUpsert:
    """messages.upsert reconstruction."""

    def test_timestamp_and_buffers_restored(self):
        event = normalize("messages.upsert", upsert_payload())

        msg = event.data["messages"][0]
        assert event.kind is EventKind.MESSAGES_UPSERT
        assert msg["messageTimestamp"] == 1700000000
        assert msg["message"]["imageMessage"]["jpegThumbnail"] == b"\xff\xd8jpeg-bytes"
        assert msg["message"]["imageMessage"]["caption"] == "hello"

    def test_invalid_base64_left_as_text(self):
        event = normalize("messages.upsert", upsert_payload())
        image = event.data["messages"][0]["message"]["imageMessage"]
        assert image["mediaKey"] == "not base64 !!"

    def test_input_not_mutated(self):
        raw = upsert_payload()
        before = copy.deepcopy(raw)
        normalize("messages.upsert", raw)
        assert raw == before

    def test_idempotent(self):
        once = normalize("messages.upsert", upsert_payload()).data
        twice = normalize("messages.upsert", once).data
        assert twice == once

    def test_missing_messages_passes_through(self):
        assert normalize("messages.upsert", {"type": "notify"}).data == {"type": "notify"}


class TestOtherKinds:
    """Chats, groups, history and unknown events."""

    def test_history_set(self):
        event = normalize("messaging-history.set", {
            "messages": [{"messageTimestamp": "12"}],
            "chats": [{"id": "c1", "conversationTimestamp": "34", "lastMessageRecvTimestamp": "56"}],
            "isLatest": True,
        })
        assert event.data["messages"][0]["messageTimestamp"] == 12
        assert event.data["chats"][0]["conversationTimestamp"] == 34
        assert event.data["chats"][0]["lastMessageRecvTimestamp"] == 56
        assert event.data["isLatest"] is True

    def test_chats_update(self):
        event = normalize("chats.update", [{"id": "c1", "conversationTimestamp": "99"}])
        assert event.data == [{"id": "c1", "conversationTimestamp": 99}]

    def test_groups_upsert(self):
        event = normalize("groups.upsert", [{"id": "g1", "creation": "1600000000", "subject": "x"}])
        assert event.data[0]["creation"] == 1600000000

    def test_unknown_event_passthrough(self):
        data = {"anything": ["goes"]}
        event = normalize("custom.thing", data)
        assert event.kind is EventKind.UNKNOWN
        assert event.name == "custom.thing"
        assert event.data == data

    def test_known_event_without_parser_passthrough(self):
        event = normalize("presence.update", {"id": "x"})
        assert event.kind is EventKind.PRESENCE_UPDATE
        assert event.data == {"id": "x"}


class TestDecodeBuffers:
    """Buffer decoding at any depth."""

    def test_nested_lists(self):
        payload = {"outer": [{"inner": {"fileSha256": base64.b64encode(b"abc").decode()}}]}
        decode_buffers(payload)
        assert payload["outer"][0]["inner"]["fileSha256"] == b"abc"

    def test_field_names_case_sensitive(self):
        payload = {"JpegThumbnail": base64.b64encode(b"abc").decode()}
        decode_buffers(payload)
        assert isinstance(payload["JpegThumbnail"], str)
