"""Sub-agent log watcher.

The agent CLI writes each delegated sub-agent's transcript to
``<session>/subagents/agent-<id>.jsonl`` instead of the parent log. This
watcher follows those files and appends synthetic ``agent_progress``
records to the parent log, so a single tail on the parent file sees both
top-level and delegated activity.

Correlating a child with the delegate call that spawned it is heuristic:
the child's first message text is compared with the prompts of unclaimed
delegate calls.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiofiles
from watchfiles import awatch

from agentdeck.agent.protocol import message_text
from agentdeck.tail.reader import file_size, read_range

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.5
# Leading characters of a delegate prompt a child's first message must start with
PROMPT_MATCH_CHARS = 100

_AGENT_PREFIX = "agent-"
_AGENT_SUFFIX = ".jsonl"


def agent_id_from_filename(name: str) -> str | None:
    if not (name.startswith(_AGENT_PREFIX) and name.endswith(_AGENT_SUFFIX)):
        return None
    return name[len(_AGENT_PREFIX) : -len(_AGENT_SUFFIX)]


def subagents_dir_for(parent_log_path: str | Path) -> Path:
    parent = str(parent_log_path)
    if parent.endswith(".jsonl"):
        parent = parent[: -len(".jsonl")]
    return Path(parent) / "subagents"


def prompt_matches(child_text: str, call_prompt: str) -> bool:
    """Exact match, or the child text continues the call's leading prompt."""
    if not child_text or not call_prompt:
        return False
    return child_text == call_prompt or child_text.startswith(
        call_prompt[:PROMPT_MATCH_CHARS]
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def build_progress_record(
    record: dict[str, Any], session_id: str, agent_id: str, parent_tool_id: str
) -> dict[str, Any]:
    """Wrap a child record in the CLI's ``agent_progress`` envelope."""
    timestamp = record.get("timestamp") or _now_iso()
    return {
        "type": "progress",
        "parentUuid": "",
        "isSidechain": False,
        "cwd": record.get("cwd") or "",
        "sessionId": session_id,
        "uuid": str(uuid.uuid4()),
        "timestamp": timestamp,
        "parentToolUseID": parent_tool_id,
        "toolUseID": f"agent_msg_synth_{uuid.uuid4().hex[:12]}",
        "data": {
            "type": "agent_progress",
            "agentId": agent_id,
            "prompt": "",
            "normalizedMessages": [],
            "message": {
                "type": record.get("type"),
                "message": record.get("message"),
                "uuid": record.get("uuid") or str(uuid.uuid4()),
                "timestamp": timestamp,
            },
        },
    }


@dataclass
class _ChildFile:
    offset: int = 0
    agent_id: str = ""


@dataclass
class SubagentWatcher:
    """Follows a session's sub-agent directory until ``close()``.

    ``pending_calls`` maps delegate ``tool_use_id`` -> prompt and is
    updated by the process manager as the parent announces delegate calls.
    """

    parent_log_path: Path
    session_id: str
    pending_calls: MutableMapping[str, str]
    poll_interval: float = POLL_SECONDS

    _children: dict[str, _ChildFile] = field(default_factory=dict, init=False)
    _agent_to_call: dict[str, str] = field(default_factory=dict, init=False)
    _scan_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _stop: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _tasks: list[asyncio.Task[Any]] = field(default_factory=list, init=False)
    _closed: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        self.parent_log_path = Path(self.parent_log_path)

    @property
    def directory(self) -> Path:
        return subagents_dir_for(self.parent_log_path)

    @property
    def mappings(self) -> dict[str, str]:
        """Resolved ``agent_id -> tool_use_id`` pairs."""
        return dict(self._agent_to_call)

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self.scan()),
            asyncio.create_task(self._watch_loop()),
            asyncio.create_task(self._poll_loop()),
        ]

    async def scan(self) -> int:
        """Process every child file once. Returns records forwarded."""
        async with self._scan_lock:
            if self._closed:
                return 0
            try:
                names = sorted(os.listdir(self.directory))
            except OSError:
                return 0
            forwarded = 0
            for name in names:
                agent_id = agent_id_from_filename(name)
                if agent_id is None:
                    continue
                forwarded += await self._process_child(self.directory / name, agent_id)
            return forwarded

    async def _process_child(self, path: Path, agent_id: str) -> int:
        state = self._children.setdefault(str(path), _ChildFile(agent_id=agent_id))
        try:
            size = await file_size(str(path))
            if size <= state.offset:
                return 0
            chunk = await read_range(str(path), state.offset, size)
        except OSError:
            return 0

        forwarded = 0
        consumed = 0
        # Only complete lines; a partial tail is re-read next scan.
        for raw in chunk.split(b"\n")[:-1]:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                outcome = await self._forward(line, agent_id)
                if outcome is None:
                    # No matching delegate call yet: retry from here next scan.
                    break
                forwarded += outcome
            consumed += len(raw) + 1
        state.offset += consumed
        return forwarded

    async def _forward(self, line: str, agent_id: str) -> int | None:
        """Forward one child record. None means unresolved, retry later."""
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed sub-agent line from %s", agent_id)
            return 0
        if not isinstance(record, dict) or record.get("type") not in ("user", "assistant"):
            return 0

        parent_tool_id = self._resolve_parent(agent_id, record)
        if parent_tool_id is None:
            return None

        entry = build_progress_record(record, self.session_id, agent_id, parent_tool_id)
        try:
            async with aiofiles.open(self.parent_log_path, "a", encoding="utf-8") as f:
                await f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("Could not append sub-agent progress to %s: %s", self.parent_log_path, e)
        return 1

    def _resolve_parent(self, agent_id: str, record: dict[str, Any]) -> str | None:
        cached = self._agent_to_call.get(agent_id)
        if cached is not None:
            return cached

        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        text = message_text(content)
        if not text:
            return None

        claimed = set(self._agent_to_call.values())
        for tool_id, prompt in list(self.pending_calls.items()):
            if tool_id in claimed:
                continue
            if prompt_matches(text, prompt):
                self._agent_to_call[agent_id] = tool_id
                logger.info("Sub-agent %s belongs to delegate call %s", agent_id, tool_id)
                return tool_id
        return None

    async def _watch_loop(self) -> None:
        # The directory usually appears only once the first delegate call runs.
        while not self._closed:
            if not self.directory.is_dir():
                await asyncio.sleep(self.poll_interval)
                continue
            try:
                async for _changes in awatch(
                    self.directory, stop_event=self._stop, debounce=50
                ):
                    await self.scan()
            except (OSError, RuntimeError) as e:
                logger.debug("Sub-agent notifications unavailable: %s", e)
                await asyncio.sleep(self.poll_interval)

    async def _poll_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.poll_interval)
            await self.scan()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()


def watch_subagents(
    parent_log_path: str | Path,
    session_id: str,
    pending_calls: MutableMapping[str, str],
    poll_interval: float = POLL_SECONDS,
) -> SubagentWatcher:
    """Start following a session's sub-agent logs. Call ``close()`` to stop."""
    watcher = SubagentWatcher(
        parent_log_path=Path(parent_log_path),
        session_id=session_id,
        pending_calls=pending_calls,
        poll_interval=poll_interval,
    )
    watcher.start()
    return watcher
