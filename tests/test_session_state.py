"""Tests for the session state machine and the event emitter."""

from __future__ import annotations

import pytest

from vex_client.client.session_state import SessionStateMachine
from vex_client.shared.client_utils import backoff_delay, new_operation_id, parse_int
from vex_client.shared.events import ANY_EVENT, EventEmitter


class TestTransitions:
    """Allowed and forbidden status changes."""

    def test_starts_connecting(self):
        assert SessionStateMachine().status == "connecting"

    def test_pairing_path(self):
        sm = SessionStateMachine()
        assert sm.transition("qrcode").changed
        assert sm.transition("qrcode").accepted
        assert sm.transition("open").changed
        assert sm.status == "open"

    def test_open_to_qrcode_rejected(self):
        sm = SessionStateMachine()
        sm.transition("open")
        assert not sm.can_transition("qrcode")
        result = sm.transition("qrcode")
        assert not result.accepted
        assert sm.status == "open"

    def test_close_reconnect_cycle(self):
        sm = SessionStateMachine()
        sm.transition("open")
        assert sm.transition("close").changed
        assert sm.transition("connecting").changed
        assert sm.transition("open").changed

    def test_same_state_accepted_without_change(self):
        sm = SessionStateMachine()
        result = sm.transition("connecting")
        assert result.accepted
        assert not result.changed


class TestSessionId:
    """Session id assignment."""

    def test_assign_once(self):
        sm = SessionStateMachine()
        sm.assign_session_id("abc")
        sm.assign_session_id("abc")
        assert sm.session_id == "abc"

    def test_reassign_different_id_rejected(self):
        sm = SessionStateMachine()
        sm.assign_session_id("abc")
        with pytest.raises(ValueError):
            sm.assign_session_id("xyz")


class TestEventEmitter:
    """Observer registration."""

    def test_on_off_once(self):
        ev = EventEmitter()
        calls = []
        handler = ev.on("a", lambda x: calls.append(("on", x)))
        ev.once("a", lambda x: calls.append(("once", x)))

        ev.emit("a", 1)
        ev.emit("a", 2)
        ev.off("a", handler)
        ev.emit("a", 3)

        assert calls == [("on", 1), ("once", 1), ("on", 2)]
        assert ev.listener_count("a") == 0

    def test_wildcard_receives_name(self):
        ev = EventEmitter()
        seen = []
        ev.on(ANY_EVENT, lambda name, *args: seen.append((name, args)))
        ev.emit("connection.update", {"connection": "open"})
        assert seen == [("connection.update", ({"connection": "open"},))]

    def test_failing_handler_does_not_stop_others(self):
        ev = EventEmitter()
        calls = []

        def broken(_):
            raise RuntimeError("listener bug")

        ev.on("a", broken)
        ev.on("a", calls.append)
        ev.emit("a", "payload")
        assert calls == ["payload"]


class TestClientUtils:
    """Backoff and parsing helpers."""

    def test_backoff_grows_and_caps(self):
        delays = [backoff_delay(n, 1, 30) for n in range(8)]
        assert delays == [1, 2, 4, 8, 16, 30, 30, 30]

    def test_backoff_huge_attempt_stays_capped(self):
        assert backoff_delay(1024, 1.0, 30.0) == 30.0
        assert 30.0 <= backoff_delay(100_000, 1.0, 30.0, jitter=0.1) <= 33.0

    def test_backoff_jitter_bounds(self):
        for _ in range(50):
            assert 4 <= backoff_delay(2, 1, 30, jitter=0.1) <= 4.4

    @pytest.mark.parametrize("value,expected", [
        ("1700000000", 1700000000),
        ("12ab", 12),
        ("abc", 0),
        (42, 42),
        (None, 0),
    ])
    def test_parse_int(self, value, expected):
        assert parse_int(value) == expected

    def test_operation_ids_unique(self):
        ids = {new_operation_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("q_") for i in ids)
