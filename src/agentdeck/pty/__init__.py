"""Shared pseudo-terminal sessions with bounded scrollback.

Terminals run in their own process group, are multiplexed to any number
of viewers, and replay their scrollback to viewers that attach late.
"""

from agentdeck.pty.buffer import ScrollbackBuffer
from agentdeck.pty.manager import PtySessionRegistry
from agentdeck.pty.session import PtySession, PtyStatus

__all__ = [
    "PtySession",
    "PtySessionRegistry",
    "PtyStatus",
    "ScrollbackBuffer",
]
