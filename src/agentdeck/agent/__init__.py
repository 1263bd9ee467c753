"""Agent CLI process control — stream protocol, registry, spawners.

The process managers live in ``agentdeck.agent.persistent`` and
``agentdeck.agent.oneshot``; they import the tail layer, so they are not
re-exported here.
"""

from agentdeck.agent.protocol import (
    ImageAttachment,
    PermissionPolicy,
    TurnPayload,
    decode_line,
)
from agentdeck.agent.registry import ProcessRegistry

__all__ = [
    "ImageAttachment",
    "PermissionPolicy",
    "ProcessRegistry",
    "TurnPayload",
    "decode_line",
]
