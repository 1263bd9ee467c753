"""Undo snapshots and conversation-log branching.

Snapshots are opaque blobs owned by the UI; they are stored and returned
byte for byte. The log helpers rewrite a conversation log in place
(truncate for undo, append for redo) or copy it into a new session.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from agentdeck.errors import AccessDenied, AgentError

logger = logging.getLogger(__name__)


class UndoStateStore:
    """Per-session undo snapshots stored as ``<session_id>.json``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, session_id: str) -> Path:
        if (
            not session_id
            or session_id.startswith(".")
            or "/" in session_id
            or "\\" in session_id
            or "\0" in session_id
        ):
            raise AccessDenied(f"Invalid session id: {session_id!r}")
        return self.directory / f"{session_id}.json"

    async def save(self, session_id: str, blob: bytes | str) -> None:
        path = self.path_for(session_id)
        data = blob.encode("utf-8") if isinstance(blob, str) else blob
        await aiofiles.os.makedirs(self.directory, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)

    async def load(self, session_id: str) -> bytes | None:
        """The stored blob, or None if nothing was saved."""
        path = self.path_for(session_id)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            return None


# ---------------------------------------------------------------------------
# Log branching
# ---------------------------------------------------------------------------


async def _read_lines(path: str | Path) -> list[str]:
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()
    return [line for line in content.split("\n") if line]


async def truncate_log(path: str | Path, keep_lines: int) -> list[str]:
    """Keep the first ``keep_lines`` non-empty lines. Returns the removed ones."""
    lines = await _read_lines(path)
    if keep_lines >= len(lines):
        return []
    keep_lines = max(0, keep_lines)
    removed = lines[keep_lines:]
    kept = lines[:keep_lines]
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write("\n".join(kept) + "\n" if kept else "")
    logger.info("Truncated %s to %d line(s), removed %d", path, keep_lines, len(removed))
    return removed


async def append_log(path: str | Path, lines: list[str]) -> int:
    """Append lines (e.g. ones removed by ``truncate_log``). Returns the count."""
    lines = [line for line in lines if line]
    if not lines:
        return 0
    async with aiofiles.open(path, "a", encoding="utf-8") as f:
        await f.write("\n".join(lines) + "\n")
    return len(lines)


def _is_turn_start(record: Any) -> bool:
    """A real user turn: not meta, not just tool results."""
    if not isinstance(record, dict) or record.get("type") != "user" or record.get("isMeta"):
        return False
    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, list) and all(
        isinstance(block, dict) and block.get("type") == "tool_result" for block in content
    ):
        return False
    return True


def find_truncation_line(lines: list[str], turn_index: int) -> int | None:
    """Index of the line where the turn after ``turn_index`` starts.

    None when ``turn_index`` is the last turn or beyond (keep everything).
    """
    turn_count = 0
    for i, line in enumerate(lines):
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not _is_turn_start(record):
            continue
        if turn_count == turn_index + 1:
            return i
        turn_count += 1
    return None


@dataclass
class BranchResult:
    session_id: str
    path: Path
    branched_from: str


async def branch_log(source: str | Path, turn_index: int | None = None) -> BranchResult:
    """Copy a conversation log into a new session, optionally cut after a turn.

    The first record is rewritten with the new session id and a
    ``branchedFrom`` marker pointing back at the source session.
    """
    source = Path(source)
    lines = await _read_lines(source)
    if not lines:
        raise AgentError("Source session is empty")

    if turn_index is not None:
        cut = find_truncation_line(lines, turn_index)
        if cut is not None:
            lines = lines[:cut]

    try:
        first = json.loads(lines[0])
    except json.JSONDecodeError as e:
        raise AgentError(f"Source session has a malformed first record: {e}") from e
    if not isinstance(first, dict):
        raise AgentError("Source session has a malformed first record")

    original_id = str(first.get("sessionId") or "")
    new_id = str(uuid.uuid4())
    first["sessionId"] = new_id
    first["branchedFrom"] = {"sessionId": original_id, "turnIndex": turn_index}
    lines[0] = json.dumps(first, ensure_ascii=False)

    target = source.parent / f"{new_id}.jsonl"
    async with aiofiles.open(target, "w", encoding="utf-8") as f:
        await f.write("\n".join(lines) + "\n")
    logger.info("Branched %s into %s (turn %s)", os.path.basename(source), target.name, turn_index)
    return BranchResult(session_id=new_id, path=target, branched_from=original_id)
