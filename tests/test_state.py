"""Tests for agentdeck.undo.state (snapshot store, log truncation and branching)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from agentdeck.errors import AccessDenied, AgentError
from agentdeck.undo.state import (
    UndoStateStore,
    append_log,
    branch_log,
    find_truncation_line,
    truncate_log,
)


def _user(text: str, **extra: object) -> str:
    return json.dumps({"type": "user", "message": {"role": "user", "content": text}, **extra})


def _assistant(text: str) -> str:
    return json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})


def _tool_result() -> str:
    return json.dumps(
        {"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "t"}]}}
    )


CONVERSATION = [
    _user("first", sessionId="orig", cwd="/w"),
    _assistant("reply 1"),
    _tool_result(),
    _assistant("after tool"),
    _user("second"),
    _assistant("reply 2"),
    _user("meta", isMeta=True),
    _user("third"),
    _assistant("reply 3"),
]


# ---------------------------------------------------------------------------
# UndoStateStore
# ---------------------------------------------------------------------------


class TestUndoStateStore:
    async def test_round_trip_is_byte_exact(self, tmp_path: Path) -> None:
        store = UndoStateStore(tmp_path / "undo")
        blob = b'{"stack": [1, 2]}\xff'
        await store.save("sess-1", blob)
        assert await store.load("sess-1") == blob

    async def test_string_blob(self, tmp_path: Path) -> None:
        store = UndoStateStore(tmp_path)
        await store.save("s", "état")
        assert await store.load("s") == "état".encode()

    async def test_missing(self, tmp_path: Path) -> None:
        store = UndoStateStore(tmp_path)
        assert await store.load("never-saved") is None

    @pytest.mark.parametrize("session_id", ["", "../x", "a/b", ".hidden", "a\\b", "a\0b"])
    def test_rejects_unsafe_ids(self, tmp_path: Path, session_id: str) -> None:
        store = UndoStateStore(tmp_path)
        with pytest.raises(AccessDenied):
            store.path_for(session_id)


# ---------------------------------------------------------------------------
# truncate / append
# ---------------------------------------------------------------------------


class TestTruncateAppend:
    async def test_truncate_then_append_restores(self, tmp_path: Path) -> None:
        log = tmp_path / "s.jsonl"
        original = "\n".join(CONVERSATION) + "\n"
        log.write_text(original)

        removed = await truncate_log(log, 4)
        assert removed == CONVERSATION[4:]
        assert log.read_text().splitlines() == CONVERSATION[:4]

        assert await append_log(log, removed) == len(removed)
        assert log.read_text() == original

    async def test_truncate_beyond_end_is_noop(self, tmp_path: Path) -> None:
        log = tmp_path / "s.jsonl"
        log.write_text("a\nb\n")
        assert await truncate_log(log, 10) == []
        assert log.read_text() == "a\nb\n"

    async def test_truncate_to_zero(self, tmp_path: Path) -> None:
        log = tmp_path / "s.jsonl"
        log.write_text("a\nb\n")
        assert await truncate_log(log, 0) == ["a", "b"]
        assert log.read_text() == ""

    async def test_append_skips_empty(self, tmp_path: Path) -> None:
        log = tmp_path / "s.jsonl"
        log.write_text("")
        assert await append_log(log, ["", ""]) == 0
        assert await append_log(log, ["x", ""]) == 1
        assert log.read_text() == "x\n"


# ---------------------------------------------------------------------------
# Branching
# ---------------------------------------------------------------------------


class TestFindTruncationLine:
    def test_turn_boundaries(self) -> None:
        # Turns start at lines 0, 4 and 7; tool results and meta records are not turns
        assert find_truncation_line(CONVERSATION, 0) == 4
        assert find_truncation_line(CONVERSATION, 1) == 7
        assert find_truncation_line(CONVERSATION, 2) is None
        assert find_truncation_line(CONVERSATION, 10) is None

    def test_malformed_lines_ignored(self) -> None:
        lines = [_user("a"), "garbage", _user("b")]
        assert find_truncation_line(lines, 0) == 2


class TestBranchLog:
    async def test_full_copy(self, tmp_path: Path) -> None:
        source = tmp_path / "orig.jsonl"
        source.write_text("\n".join(CONVERSATION) + "\n")

        result = await branch_log(source)
        assert result.path.parent == tmp_path
        assert result.path.name == f"{result.session_id}.jsonl"
        assert result.branched_from == "orig"

        lines = result.path.read_text().splitlines()
        assert len(lines) == len(CONVERSATION)
        first = json.loads(lines[0])
        assert first["sessionId"] == result.session_id
        assert first["branchedFrom"] == {"sessionId": "orig", "turnIndex": None}
        assert lines[1:] == CONVERSATION[1:]
        # Source untouched
        assert source.read_text().splitlines() == CONVERSATION

    async def test_cut_after_turn(self, tmp_path: Path) -> None:
        source = tmp_path / "orig.jsonl"
        source.write_text("\n".join(CONVERSATION) + "\n")

        result = await branch_log(source, turn_index=0)
        lines = result.path.read_text().splitlines()
        assert len(lines) == 4
        assert json.loads(lines[0])["branchedFrom"]["turnIndex"] == 0

    async def test_empty_source(self, tmp_path: Path) -> None:
        source = tmp_path / "empty.jsonl"
        source.write_text("")
        with pytest.raises(AgentError, match="Source session is empty"):
            await branch_log(source)
