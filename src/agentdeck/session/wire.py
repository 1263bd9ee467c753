"""Wire protocol — decouples orchestration from transports.

Components emit ``WireEvent``s; whichever collaborator owns the transport
(WebSocket, SSE, TUI, CLI pipe) subscribes and frames them. The core only
guarantees ordering and content.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    OUTPUT = "output"
    EXIT = "exit"
    SPAWNED = "spawned"
    SESSIONS = "sessions"
    INIT = "init"
    LINES = "lines"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Flatten into the ``{"type": ..., **data}`` shape used on transports."""
        return {"type": self.type.value, **self.data}


class Wire:
    """Async message bus: producer -> subscribers.

    Single-producer, multi-consumer broadcast. ``close()`` pushes a
    ``None`` sentinel so consumers can stop iterating.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_init(
        self, offset: int, recently_active: bool = False, reset: bool = False
    ) -> None:
        data: dict[str, Any] = {"offset": offset, "recently_active": recently_active}
        if reset:
            data["reset"] = True
        self.send(WireEvent(type=EventType.INIT, data=data))

    def send_lines(self, lines: list[str]) -> None:
        self.send(WireEvent(type=EventType.LINES, data={"lines": lines}))

    def send_output_text(self, text: str) -> None:
        self.send(WireEvent(type=EventType.OUTPUT, data={"text": text}))

    def send_error(self, message: str) -> None:
        self.send(WireEvent(type=EventType.ERROR, data={"message": message}))

    def send_heartbeat(self) -> None:
        self.send(WireEvent(type=EventType.HEARTBEAT))

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)


# ---------------------------------------------------------------------------
# Terminal event helpers
# ---------------------------------------------------------------------------


def output_event(session_id: str, data: str) -> WireEvent:
    return WireEvent(type=EventType.OUTPUT, data={"id": session_id, "data": data})


def exit_event(session_id: str, code: int | None) -> WireEvent:
    return WireEvent(type=EventType.EXIT, data={"id": session_id, "code": code})


def spawned_event(session_id: str, name: str) -> WireEvent:
    return WireEvent(type=EventType.SPAWNED, data={"id": session_id, "name": name})


def sessions_event(sessions: list[dict[str, Any]]) -> WireEvent:
    return WireEvent(type=EventType.SESSIONS, data={"sessions": sessions})


def error_event(message: str, session_id: str = "") -> WireEvent:
    return WireEvent(type=EventType.ERROR, data={"id": session_id, "message": message})
