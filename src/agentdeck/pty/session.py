"""PTY session — one interactive terminal shared by many viewers."""

from __future__ import annotations

import asyncio
import codecs
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from agentdeck.pty.buffer import ScrollbackBuffer
from agentdeck.session.connection import Connection
from agentdeck.session.wire import WireEvent, exit_event, output_event

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 3.0
READ_SIZE = 4096
REAP_POLL_SECONDS = 0.05


def set_winsize(fd: int, rows: int, cols: int) -> None:
    rows = max(1, int(rows))
    cols = max(1, int(cols))
    ws = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, ws)


def default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/sh"


class PtyStatus(enum.Enum):
    RUNNING = "running"
    EXITED = "exited"


@dataclass(eq=False)
class PtySession:
    """A pseudo-terminal running ``command`` with a subscriber set.

    Output is decoded incrementally (a UTF-8 sequence split across reads is
    held until complete), appended to scrollback, then broadcast as
    ``output`` events in production order. The process runs in its own
    process group so kill() reaches everything it started.

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when spawned
    from within an asyncio event loop.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    command: str = field(default_factory=default_shell)
    args: list[str] = field(default_factory=list)
    cwd: str = field(default_factory=lambda: str(Path.home()))
    cols: int = 80
    rows: int = 24
    scrollback: ScrollbackBuffer = field(default_factory=ScrollbackBuffer)
    subscribers: set[Connection] = field(default_factory=set)
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    exit_code: int | None = None
    grace: float = DEFAULT_GRACE_SECONDS

    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pgid: int = field(default=0, init=False)
    _reader_task: asyncio.Task | None = field(default=None, init=False)
    _status: PtyStatus = field(default=PtyStatus.RUNNING, init=False)
    _on_exit: Callable[[PtySession], None] | None = field(default=None, init=False)

    def set_on_exit(self, callback: Callable[[PtySession], None]) -> None:
        """Called once, after the exit event went out to subscribers."""
        self._on_exit = callback

    async def start(self) -> None:
        """Spawn the process on a new PTY. Raises OSError on failure."""
        master_fd, slave_fd = pty.openpty()
        try:
            set_winsize(master_fd, self.rows, self.cols)
            env = {**os.environ, "TERM": "xterm-256color"}
            self._proc = subprocess.Popen(
                [self.command, *self.args],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                env=env,
                cwd=self.cwd,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pgid = os.getpgid(self._proc.pid)
        self._status = PtyStatus.RUNNING
        self._reader_task = asyncio.create_task(self._read_loop())

        logger.info(
            "PTY session %s started: pid=%d cmd=%s",
            self.id,
            self._proc.pid,
            " ".join([self.command, *self.args]),
        )

    async def _read_loop(self) -> None:
        """Read the master fd from the event loop until EOF, then reap.

        The fd is non-blocking and driven by ``add_reader``, so an open
        terminal never parks a thread of the default executor.
        """
        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        fd = self._master_fd
        eof = asyncio.Event()

        def _on_readable() -> None:
            try:
                data = os.read(fd, READ_SIZE)
            except BlockingIOError:
                return
            except OSError:
                # EIO once the slave side is closed
                data = b""
            if not data:
                loop.remove_reader(fd)
                eof.set()
                return
            self._emit(decoder.decode(data))

        os.set_blocking(fd, False)
        loop.add_reader(fd, _on_readable)
        try:
            await eof.wait()
        finally:
            loop.remove_reader(fd)
        self._emit(decoder.decode(b"", final=True))

        code = await self._reap()
        try:
            os.close(fd)
        except OSError:
            pass
        self._mark_exited(code)

    async def _reap(self) -> int | None:
        if self._proc is None:
            return None
        # EOF usually means the child is gone; poll() is a WNOHANG waitpid
        while (code := self._proc.poll()) is None:
            await asyncio.sleep(REAP_POLL_SECONDS)
        return code

    def _emit(self, text: str) -> None:
        if not text:
            return
        self.scrollback.append(text)
        self.broadcast(output_event(self.id, text))

    def _mark_exited(self, code: int | None) -> None:
        self._status = PtyStatus.EXITED
        self.exit_code = code
        logger.info("PTY session %s exited (code=%s)", self.id, code)
        self.broadcast(exit_event(self.id, code))
        if self._on_exit is not None:
            try:
                self._on_exit(self)
            except Exception:
                logger.exception("Error in on_exit callback for session %s", self.id)

    def broadcast(self, event: WireEvent) -> None:
        for conn in list(self.subscribers):
            conn.send(event)

    def write(self, data: str) -> None:
        if not self.alive:
            return
        try:
            os.write(self._master_fd, data.encode("utf-8"))
        except OSError as e:
            logger.debug("Write to PTY %s failed: %s", self.id, e)

    def resize(self, cols: int, rows: int) -> None:
        if not self.alive:
            return
        try:
            set_winsize(self._master_fd, rows, cols)
            # No controlling terminal, so the kernel does not raise SIGWINCH for us
            os.killpg(self._pgid, signal.SIGWINCH)
        except (OSError, ProcessLookupError) as e:
            logger.debug("Resize of PTY %s failed: %s", self.id, e)
            return
        self.cols = cols
        self.rows = rows

    def kill(self) -> None:
        """SIGHUP the process group now, SIGKILL it after the grace period."""
        if not self.alive:
            return
        try:
            os.killpg(self._pgid, signal.SIGHUP)
            logger.info("Killed PTY session %s (pgid=%d)", self.id, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
            return
        asyncio.get_running_loop().call_later(self.grace, self._force_kill)

    def _force_kill(self) -> None:
        if self._proc is None or self._proc.poll() is not None:
            return
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Force-killed PTY session %s after grace period", self.id)
        except ProcessLookupError:
            pass

    async def wait_closed(self, timeout: float | None = None) -> None:
        """Wait for the reader to observe the exit."""
        if self._reader_task is not None:
            await asyncio.wait_for(asyncio.shield(self._reader_task), timeout=timeout)

    @property
    def alive(self) -> bool:
        return self._status == PtyStatus.RUNNING and self._proc is not None

    @property
    def status(self) -> PtyStatus:
        return self._status

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def to_info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self._status.value,
            "exitCode": self.exit_code,
            "createdAt": self.created_at,
            "cwd": self.cwd,
        }
