"""Connection — one viewer endpoint on a shared duplex channel."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator

from agentdeck.session.wire import WireEvent


class Connection:
    """Outbound side of a single client connection.

    The transport collaborator drains ``events()`` and frames each event;
    the core only calls ``send()``. Sends after ``close()`` are dropped so
    a disconnect racing with a broadcast is harmless.
    """

    def __init__(self, conn_id: str | None = None) -> None:
        self.id = conn_id or uuid.uuid4().hex[:8]
        self._queue: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._closed = False

    @property
    def open(self) -> bool:
        return not self._closed

    def send(self, event: WireEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def get_nowait(self) -> WireEvent | None:
        return self._queue.get_nowait()

    def drain(self) -> list[WireEvent]:
        """Pop every queued event without waiting."""
        events: list[WireEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events

    async def events(self) -> AsyncIterator[WireEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def __repr__(self) -> str:
        state = "open" if self.open else "closed"
        return f"<Connection {self.id} {state}>"
