"""Session boundary — event wire and per-client connections."""

from agentdeck.session.connection import Connection
from agentdeck.session.wire import EventType, Wire, WireEvent

__all__ = [
    "Connection",
    "EventType",
    "Wire",
    "WireEvent",
]
