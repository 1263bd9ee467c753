"""Process registry — every spawned agent child, keyed by session id."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 3.0


def terminate(
    proc: asyncio.subprocess.Process, grace: float = DEFAULT_GRACE_SECONDS
) -> None:
    """SIGTERM now, SIGKILL after ``grace`` seconds if still alive."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        logger.debug("Process %d already gone", proc.pid)
        return
    loop = asyncio.get_running_loop()
    loop.call_later(grace, _force_kill, proc)


def _force_kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
        logger.info("Force-killed pid %d after grace period", proc.pid)
    except ProcessLookupError:
        pass


class ProcessRegistry:
    """Tracks one-shot and persistent agent processes by session id.

    Mutated only from the event loop thread, so no locking is needed.
    """

    def __init__(self, grace: float = DEFAULT_GRACE_SECONDS) -> None:
        self._procs: dict[str, asyncio.subprocess.Process] = {}
        self._grace = grace

    def track(self, session_id: str, proc: asyncio.subprocess.Process) -> None:
        existing = self._procs.get(session_id)
        if existing is not None and existing is not proc and existing.returncode is None:
            logger.warning(
                "Session %s already tracks pid %d, replacing with pid %d",
                session_id,
                existing.pid,
                proc.pid,
            )
        self._procs[session_id] = proc

    def untrack(
        self, session_id: str, proc: asyncio.subprocess.Process | None = None
    ) -> None:
        """Forget a session. With ``proc``, only if it is still the tracked one."""
        current = self._procs.get(session_id)
        if current is None:
            return
        if proc is not None and current is not proc:
            return
        del self._procs[session_id]

    def get(self, session_id: str) -> asyncio.subprocess.Process | None:
        return self._procs.get(session_id)

    def kill(self, session_id: str) -> bool:
        """Terminate and forget a session's process. False if none is tracked."""
        proc = self._procs.pop(session_id, None)
        if proc is None:
            return False
        logger.info("Stopping session %s (pid %d)", session_id, proc.pid)
        terminate(proc, self._grace)
        return True

    def kill_pid(self, pid: int) -> bool:
        """Kill a process by pid, but only if we spawned and track it."""
        for session_id, proc in self._procs.items():
            if proc.pid == pid:
                return self.kill(session_id)
        return False

    def kill_all(self) -> int:
        count = 0
        for session_id in list(self._procs):
            if self.kill(session_id):
                count += 1
        return count

    def list_processes(self) -> list[dict[str, Any]]:
        return [
            {
                "session_id": sid,
                "pid": proc.pid,
                "alive": proc.returncode is None,
            }
            for sid, proc in self._procs.items()
        ]

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._procs

    def __len__(self) -> int:
        return len(self._procs)
