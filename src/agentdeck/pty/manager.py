"""PTY session registry — terminal sessions multiplexed over one channel.

Every viewer is a ``Connection`` registered with ``connect()``. Messages
arrive as plain dicts through ``handle_message()``; replies and broadcasts
go out as ``WireEvent``s on the connections.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from agentdeck.config import PtyConfig
from agentdeck.pty.buffer import ScrollbackBuffer
from agentdeck.pty.session import DEFAULT_GRACE_SECONDS, PtySession, default_shell
from agentdeck.session.connection import Connection
from agentdeck.session.wire import (
    WireEvent,
    error_event,
    exit_event,
    output_event,
    sessions_event,
    spawned_event,
)

logger = logging.getLogger(__name__)


def _int_or(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return int(value)


def _str_or(value: Any, default: str) -> str:
    return value if isinstance(value, str) and value else default


class PtySessionRegistry:
    """Owns every PTY session and the set of connected viewers.

    Exited sessions stay listed (with their exit code) until killed, so a
    viewer attaching late still sees how the terminal ended.
    """

    def __init__(
        self, config: PtyConfig | None = None, grace: float = DEFAULT_GRACE_SECONDS
    ) -> None:
        self._config = config or PtyConfig()
        self._grace = grace
        self._sessions: dict[str, PtySession] = {}
        self._connections: set[Connection] = set()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def connect(self, conn: Connection | None = None) -> Connection:
        conn = conn or Connection()
        self._connections.add(conn)
        return conn

    def disconnect(self, conn: Connection) -> None:
        """Drop a viewer from the channel and from every subscriber set."""
        self._connections.discard(conn)
        for session in self._sessions.values():
            session.subscribers.discard(conn)
        conn.close()

    # ------------------------------------------------------------------
    # Message dispatch
    # ------------------------------------------------------------------

    async def handle_message(self, conn: Connection, msg: Any) -> None:
        if not isinstance(msg, dict):
            conn.send(error_event("Invalid message"))
            return

        msg_type = msg.get("type")
        session_id = msg.get("id")
        session_id = session_id if isinstance(session_id, str) else ""

        if msg_type == "spawn":
            await self.spawn(
                conn,
                session_id=session_id or None,
                name=msg.get("name"),
                cwd=msg.get("cwd"),
                cols=msg.get("cols"),
                rows=msg.get("rows"),
                command=msg.get("command"),
                args=msg.get("args"),
            )
        elif msg_type == "input":
            data = msg.get("data")
            if isinstance(data, str):
                self.input(session_id, data)
        elif msg_type == "resize":
            self.resize(session_id, msg.get("cols"), msg.get("rows"))
        elif msg_type == "kill":
            self.kill(session_id)
        elif msg_type == "attach":
            self.attach(conn, session_id)
        elif msg_type == "list":
            conn.send(sessions_event(self.list_sessions()))
        elif msg_type == "rename":
            name = msg.get("name")
            if isinstance(name, str):
                self.rename(session_id, name)
        else:
            conn.send(error_event(f"Unknown message type: {msg_type}", session_id))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def spawn(
        self,
        conn: Connection,
        session_id: str | None = None,
        name: Any = None,
        cwd: Any = None,
        cols: Any = None,
        rows: Any = None,
        command: Any = None,
        args: Any = None,
    ) -> PtySession | None:
        """Start a terminal with ``conn`` as its first subscriber."""
        if session_id and session_id in self._sessions:
            conn.send(error_event("Session already exists", session_id))
            return None

        session = PtySession(
            name=_str_or(name, f"Terminal {len(self._sessions) + 1}"),
            command=_str_or(command, self._config.shell or default_shell()),
            args=[a for a in args if isinstance(a, str)] if isinstance(args, list) else [],
            cwd=_str_or(cwd, str(Path.home())),
            cols=_int_or(cols, self._config.default_cols),
            rows=_int_or(rows, self._config.default_rows),
            scrollback=ScrollbackBuffer(
                self._config.scrollback_max, self._config.scrollback_keep
            ),
            subscribers={conn},
            grace=self._grace,
        )
        if session_id:
            session.id = session_id
        session.set_on_exit(self._on_session_exit)

        try:
            await session.start()
        except OSError as e:
            logger.warning("Failed to spawn PTY %s: %s", session.command, e)
            conn.send(error_event(f"Failed to spawn PTY: {e}", session.id))
            return None

        self._sessions[session.id] = session
        conn.send(spawned_event(session.id, session.name))
        self._broadcast_sessions()
        return session

    def input(self, session_id: str, data: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.write(data)

    def resize(self, session_id: str, cols: Any, rows: Any) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.resize(_int_or(cols, session.cols), _int_or(rows, session.rows))

    def kill(self, session_id: str) -> bool:
        """Terminate and forget a session. False if it was not registered."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.kill()
        self._broadcast_sessions()
        return True

    def attach(self, conn: Connection, session_id: str) -> bool:
        """Subscribe ``conn``, replaying scrollback (and the exit, if any)."""
        session = self._sessions.get(session_id)
        if session is None:
            conn.send(error_event("Session not found", session_id))
            return False
        session.subscribers.add(conn)
        history = session.scrollback.read_all()
        if history:
            conn.send(output_event(session.id, history))
        if not session.alive:
            conn.send(exit_event(session.id, session.exit_code))
        return True

    def rename(self, session_id: str, name: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.name = name
        self._broadcast_sessions()
        return True

    def get(self, session_id: str) -> PtySession | None:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.to_info() for s in self._sessions.values()]

    async def cleanup(self) -> None:
        """Kill every session. Called on shutdown."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.kill()
        for session in sessions:
            try:
                await session.wait_closed(timeout=self._grace + 2.0)
            except TimeoutError:
                logger.warning("PTY session %s did not exit", session.id)
        logger.info("All PTY sessions cleaned up")

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    def _on_session_exit(self, session: PtySession) -> None:
        self._broadcast_sessions()

    def _broadcast(self, event: WireEvent) -> None:
        for conn in list(self._connections):
            conn.send(event)

    def _broadcast_sessions(self) -> None:
        self._broadcast(sessions_event(self.list_sessions()))

    def __len__(self) -> int:
        return len(self._sessions)
