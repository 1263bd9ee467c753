"""Live tails of append-only files.

``LogTailStream`` follows a JSONL conversation log and emits batches of
complete lines. ``TaskOutputStream`` follows a background task's plain
text output file. Both combine filesystem notifications (watchfiles) with
an unconditional poll, since notifications get coalesced or dropped on
some platforms, and both emit a heartbeat so idle transports stay open.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiofiles.os
from watchfiles import awatch

from agentdeck.agent.locate import is_within_dir
from agentdeck.errors import AccessDenied
from agentdeck.session.wire import Wire, WireEvent
from agentdeck.tail.reader import LineSplitter, file_size, read_range

logger = logging.getLogger(__name__)

THROTTLE_SECONDS = 0.15
POLL_SECONDS = 0.5
HEARTBEAT_SECONDS = 15.0
RECENTLY_ACTIVE_SECONDS = 30.0

TASK_OUTPUT_DEBOUNCE_SECONDS = 0.1
TASK_OUTPUT_POLL_SECONDS = 2.0


class _FileFollower:
    """Watch + poll + heartbeat machinery shared by the file streams.

    Subclasses implement ``flush()`` and ``on_change()``. Every timer and
    task is owned here and cancelled by ``close()``.
    """

    def __init__(
        self,
        path: str | Path,
        poll_interval: float,
        heartbeat_interval: float,
    ) -> None:
        self.path = os.path.abspath(str(path))
        self._poll_interval = poll_interval
        self._heartbeat_interval = heartbeat_interval
        self._wire = Wire()
        self._queue = self._wire.subscribe()
        self._flush_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[Any]] = []
        self._flush_tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def flush(self) -> Any:
        raise NotImplementedError

    def on_change(self) -> None:
        raise NotImplementedError

    def _start_background(self) -> None:
        self._tasks = [
            asyncio.create_task(self._watch_loop()),
            asyncio.create_task(self._poll_loop()),
            asyncio.create_task(self._heartbeat_loop()),
        ]

    def _schedule_flush(self) -> None:
        if self._closed:
            return
        task = asyncio.create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _watch_loop(self) -> None:
        parent = os.path.dirname(self.path)
        target = self.path

        def _only_target(_change: Any, changed: str) -> bool:
            return os.path.abspath(changed) == target

        try:
            async for _changes in awatch(
                parent,
                watch_filter=_only_target,
                stop_event=self._stop,
                debounce=50,
                recursive=False,
            ):
                self.on_change()
        except (OSError, RuntimeError) as e:
            # Directory missing or watcher backend unavailable; the poll covers it.
            logger.debug("Change notifications unavailable for %s: %s", self.path, e)

    async def _poll_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._poll_interval)
            await self.flush()

    async def _heartbeat_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._heartbeat_interval)
            self._wire.send_heartbeat()

    def _cancel_timers(self) -> None:
        """Hook for subclasses owning TimerHandles."""

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        self._cancel_timers()
        pending = [*self._tasks, *self._flush_tasks]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._flush_tasks.clear()
        self._wire.close()

    async def events(self) -> AsyncIterator[WireEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def pending_events(self) -> list[WireEvent]:
        """Pop every queued event without waiting."""
        events: list[WireEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events


class LogTailStream(_FileFollower):
    """Follows a JSONL log, forwarding newly completed lines.

    Events: ``init`` once (and again with ``reset=True`` after a
    truncation), ``lines`` per flush that completed at least one line,
    ``heartbeat`` periodically, ``error`` if the file is missing at open.
    """

    def __init__(
        self,
        path: str | Path,
        throttle: float = THROTTLE_SECONDS,
        poll_interval: float = POLL_SECONDS,
        heartbeat_interval: float = HEARTBEAT_SECONDS,
    ) -> None:
        super().__init__(path, poll_interval, heartbeat_interval)
        self.offset = 0
        self._throttle = throttle
        self._splitter = LineSplitter()
        self._throttle_handle: asyncio.TimerHandle | None = None
        self._trailing_handle: asyncio.TimerHandle | None = None

    @property
    def remainder(self) -> bytes:
        return self._splitter.remainder

    async def start(self) -> bool:
        """Record the initial offset and begin following. False if missing."""
        try:
            st = await aiofiles.os.stat(self.path)
        except OSError:
            self._wire.send_error("File not found")
            self._closed = True
            self._wire.close()
            return False

        self.offset = st.st_size
        recently_active = time.time() - st.st_mtime < RECENTLY_ACTIVE_SECONDS
        self._wire.send_init(self.offset, recently_active)
        self._start_background()
        logger.debug("Tailing %s from offset %d", self.path, self.offset)
        return True

    def on_change(self) -> None:
        """Throttle: flush now, then at most once per window, plus a trailing flush."""
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        if self._trailing_handle is not None:
            self._trailing_handle.cancel()
        self._trailing_handle = loop.call_later(self._throttle, self._schedule_flush)

        if self._throttle_handle is not None:
            return
        self._schedule_flush()
        self._throttle_handle = loop.call_later(self._throttle, self._end_window)

    def _end_window(self) -> None:
        self._throttle_handle = None

    def _cancel_timers(self) -> None:
        for handle in (self._throttle_handle, self._trailing_handle):
            if handle is not None:
                handle.cancel()
        self._throttle_handle = None
        self._trailing_handle = None

    async def flush(self) -> list[str]:
        """Read new bytes and emit completed lines. Returns what was emitted."""
        async with self._flush_lock:
            if self._closed:
                return []
            try:
                size = await file_size(self.path)
            except OSError:
                # Temporarily unavailable mid-write or replaced.
                return []

            if size < self.offset:
                logger.info(
                    "%s truncated (%d -> %d bytes), resetting", self.path, self.offset, size
                )
                self.offset = size
                self._splitter.reset()
                self._wire.send_init(size, recently_active=True, reset=True)
                return []

            if size == self.offset:
                line = self._splitter.take_if_complete()
                if line is None:
                    return []
                self._wire.send_lines([line])
                return [line]

            try:
                chunk = await read_range(self.path, self.offset, size)
            except OSError:
                return []
            self.offset += len(chunk)
            lines = self._splitter.feed(chunk)
            if lines:
                self._wire.send_lines(lines)
            return lines


class TaskOutputStream(_FileFollower):
    """Follows a background task's output file from the beginning.

    The file may not exist yet when the stream opens; the poll picks it up.
    """

    def __init__(
        self,
        path: str | Path,
        debounce: float = TASK_OUTPUT_DEBOUNCE_SECONDS,
        poll_interval: float = TASK_OUTPUT_POLL_SECONDS,
        heartbeat_interval: float = HEARTBEAT_SECONDS,
    ) -> None:
        super().__init__(path, poll_interval, heartbeat_interval)
        self.offset = 0
        self._debounce = debounce
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._ready = False

    async def start(self) -> None:
        await self.flush()
        self._ready = True
        self._start_background()

    def on_change(self) -> None:
        if self._closed or not self._ready:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self._debounce, self._schedule_flush)

    def _cancel_timers(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    async def flush(self) -> str:
        async with self._flush_lock:
            if self._closed:
                return ""
            try:
                size = await file_size(self.path)
                if size <= self.offset:
                    return ""
                chunk = await read_range(self.path, self.offset, size)
            except OSError:
                return ""
            self.offset += len(chunk)
            text = self._decoder.decode(chunk)
            if text:
                self._wire.send_output_text(text)
            return text


# ---------------------------------------------------------------------------
# Path gates and context managers
# ---------------------------------------------------------------------------


def resolve_log_path(projects_dir: str | Path, dir_name: str, file_name: str) -> Path:
    """Map a (project dir, file) pair to a log path inside ``projects_dir``."""
    if not file_name.endswith(".jsonl"):
        raise AccessDenied("Only .jsonl files can be watched", path=file_name)
    path = Path(projects_dir) / dir_name / file_name
    if not is_within_dir(projects_dir, path):
        raise AccessDenied("Access denied", path=str(path))
    return path


def check_task_output_path(path: str, prefixes: list[str]) -> str:
    resolved = os.path.abspath(path)
    if not any(resolved.startswith(prefix) for prefix in prefixes):
        raise AccessDenied(
            "Access denied - only task output files allowed", path=resolved
        )
    return resolved


@asynccontextmanager
async def open_tail(
    path: str | Path,
    throttle: float = THROTTLE_SECONDS,
    poll_interval: float = POLL_SECONDS,
    heartbeat_interval: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[LogTailStream]:
    """Open a tail for the lifetime of the ``async with`` block."""
    stream = LogTailStream(
        path,
        throttle=throttle,
        poll_interval=poll_interval,
        heartbeat_interval=heartbeat_interval,
    )
    await stream.start()
    try:
        yield stream
    finally:
        await stream.close()


@asynccontextmanager
async def open_task_output(
    path: str | Path,
    prefixes: list[str],
    debounce: float = TASK_OUTPUT_DEBOUNCE_SECONDS,
    poll_interval: float = TASK_OUTPUT_POLL_SECONDS,
    heartbeat_interval: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[TaskOutputStream]:
    resolved = check_task_output_path(str(path), prefixes)
    stream = TaskOutputStream(
        resolved,
        debounce=debounce,
        poll_interval=poll_interval,
        heartbeat_interval=heartbeat_interval,
    )
    await stream.start()
    try:
        yield stream
    finally:
        await stream.close()
