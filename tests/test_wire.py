"""Tests for agentdeck.session (Wire, WireEvent, EventType, Connection)."""

from __future__ import annotations

import asyncio

from agentdeck.session.connection import Connection
from agentdeck.session.wire import (
    EventType,
    Wire,
    WireEvent,
    error_event,
    exit_event,
    output_event,
    sessions_event,
    spawned_event,
)


# ---------------------------------------------------------------------------
# EventType / WireEvent
# ---------------------------------------------------------------------------


class TestEventType:
    def test_all_variants_exist(self) -> None:
        expected = {
            "OUTPUT",
            "EXIT",
            "SPAWNED",
            "SESSIONS",
            "INIT",
            "LINES",
            "ERROR",
            "HEARTBEAT",
        }
        assert {e.name for e in EventType} == expected

    def test_values_are_lowercase(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower()


class TestWireEvent:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.HEARTBEAT)
        assert event.data == {}

    def test_to_dict_flattens_data(self) -> None:
        event = WireEvent(type=EventType.LINES, data={"lines": ["a", "b"]})
        assert event.to_dict() == {"type": "lines", "lines": ["a", "b"]}

    def test_terminal_helpers(self) -> None:
        assert output_event("t1", "hi").to_dict() == {"type": "output", "id": "t1", "data": "hi"}
        assert exit_event("t1", 0).to_dict() == {"type": "exit", "id": "t1", "code": 0}
        assert spawned_event("t1", "Terminal 1").data == {"id": "t1", "name": "Terminal 1"}
        assert sessions_event([]).data == {"sessions": []}

    def test_error_event_carries_id(self) -> None:
        event = error_event("Session not found", "nope")
        assert event.to_dict() == {"type": "error", "id": "nope", "message": "Session not found"}


# ---------------------------------------------------------------------------
# Wire
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send_lines(["x"])
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.LINES

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send_heartbeat()
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)  # Should not raise

    def test_send_init(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_init(42, recently_active=True)
        event = q.get_nowait()
        assert event is not None
        assert event.data == {"offset": 42, "recently_active": True}

    def test_send_init_reset_flag(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_init(0, reset=True)
        event = q.get_nowait()
        assert event is not None
        assert event.data["reset"] is True

    def test_send_error(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_error("File not found")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.ERROR
        assert event.data["message"] == "File not found"


class TestWireClosedGuard:
    def test_close_sends_sentinel_to_all_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.close()
        assert q1.get_nowait() is None
        assert q2.get_nowait() is None

    def test_send_after_close_is_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        q.get_nowait()  # drain sentinel
        wire.send_lines(["too late"])
        wire.send_heartbeat()
        assert q.empty()
        assert wire.closed

    def test_close_idempotent(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        wire.close()
        assert q.get_nowait() is None
        assert q.empty()


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class TestConnection:
    def test_send_and_drain(self) -> None:
        conn = Connection()
        conn.send(output_event("t", "a"))
        conn.send(output_event("t", "b"))
        events = conn.drain()
        assert [e.data["data"] for e in events] == ["a", "b"]

    def test_send_after_close_dropped(self) -> None:
        conn = Connection("c1")
        conn.close()
        conn.send(output_event("t", "late"))
        assert conn.drain() == []
        assert not conn.open

    async def test_events_iterator_stops_on_close(self) -> None:
        conn = Connection()
        conn.send(exit_event("t", 0))
        conn.close()
        received = [event async for event in conn.events()]
        assert len(received) == 1
        assert received[0].type == EventType.EXIT
