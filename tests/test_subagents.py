"""Tests for agentdeck.tail.subagents (sub-agent log forwarding)."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from agentdeck.tail.subagents import (
    SubagentWatcher,
    agent_id_from_filename,
    build_progress_record,
    prompt_matches,
    subagents_dir_for,
    watch_subagents,
)


def _record(kind: str, text: str, **extra: object) -> str:
    return json.dumps(
        {"type": kind, "message": {"role": kind, "content": [{"type": "text", "text": text}]}, **extra}
    )


def _child(parent: Path, agent_id: str, *lines: str, newline: bool = True) -> Path:
    directory = subagents_dir_for(parent)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"agent-{agent_id}.jsonl"
    with open(path, "a") as f:
        f.write("\n".join(lines) + ("\n" if newline else ""))
    return path


def _progress(parent: Path) -> list[dict]:
    if not parent.exists():
        return []
    records = [json.loads(line) for line in parent.read_text().splitlines() if line]
    return [r for r in records if r.get("type") == "progress"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_agent_id_from_filename(self) -> None:
        assert agent_id_from_filename("agent-a1b2.jsonl") == "a1b2"
        assert agent_id_from_filename("agent-a1b2.json") is None
        assert agent_id_from_filename("notes.jsonl") is None

    def test_subagents_dir(self) -> None:
        assert subagents_dir_for("/x/proj/abc.jsonl") == Path("/x/proj/abc/subagents")

    def test_prompt_matches(self) -> None:
        assert prompt_matches("Fix the bug", "Fix the bug")
        assert prompt_matches("Fix the bug in parser.py please", "Fix the bug")
        assert not prompt_matches("Something else", "Fix the bug")
        assert not prompt_matches("", "Fix the bug")
        assert not prompt_matches("Fix the bug", "")

    def test_prompt_matches_uses_leading_characters(self) -> None:
        prompt = "x" * 100 + " tail the child never repeats"
        assert prompt_matches("x" * 100 + " different ending", prompt)

    def test_build_progress_record(self) -> None:
        record = {
            "type": "assistant",
            "message": {"content": "hi"},
            "uuid": "u-1",
            "timestamp": "2025-01-01T00:00:00Z",
            "cwd": "/w",
        }
        entry = build_progress_record(record, "sess", "abc", "toolu_1")
        assert entry["type"] == "progress"
        assert entry["sessionId"] == "sess"
        assert entry["parentToolUseID"] == "toolu_1"
        assert entry["toolUseID"].startswith("agent_msg_synth_")
        assert len(entry["toolUseID"]) == len("agent_msg_synth_") + 12
        assert entry["cwd"] == "/w"
        data = entry["data"]
        assert data["type"] == "agent_progress"
        assert data["agentId"] == "abc"
        assert data["message"] == {
            "type": "assistant",
            "message": {"content": "hi"},
            "uuid": "u-1",
            "timestamp": "2025-01-01T00:00:00Z",
        }

    def test_build_progress_record_fills_missing(self) -> None:
        entry = build_progress_record({"type": "user"}, "s", "a", "t")
        assert entry["timestamp"]
        assert entry["data"]["message"]["uuid"]


# ---------------------------------------------------------------------------
# SubagentWatcher.scan()
# ---------------------------------------------------------------------------


class TestScan:
    async def test_forwards_matched_child(self, tmp_path: Path) -> None:
        parent = tmp_path / "sess.jsonl"
        parent.write_text("")
        _child(
            parent,
            "abc",
            _record("user", "Look around the repo for bugs"),
            _record("assistant", "Found one"),
        )
        watcher = SubagentWatcher(parent, "sess", {"toolu_1": "Look around the repo"})

        assert await watcher.scan() == 2
        progress = _progress(parent)
        assert [p["parentToolUseID"] for p in progress] == ["toolu_1", "toolu_1"]
        assert [p["data"]["message"]["type"] for p in progress] == ["user", "assistant"]
        assert watcher.mappings == {"abc": "toolu_1"}

        # Nothing new: nothing forwarded twice
        assert await watcher.scan() == 0
        assert len(_progress(parent)) == 2

    async def test_unresolved_child_is_held_back(self, tmp_path: Path) -> None:
        parent = tmp_path / "sess.jsonl"
        parent.write_text("")
        _child(parent, "abc", _record("user", "Summarize the docs"), _record("assistant", "ok"))
        calls: dict[str, str] = {}
        watcher = SubagentWatcher(parent, "sess", calls)

        assert await watcher.scan() == 0
        assert _progress(parent) == []

        calls["toolu_7"] = "Summarize the docs"
        assert await watcher.scan() == 2
        assert {p["parentToolUseID"] for p in _progress(parent)} == {"toolu_7"}

    async def test_partial_line_waits(self, tmp_path: Path) -> None:
        parent = tmp_path / "sess.jsonl"
        parent.write_text("")
        path = _child(parent, "abc", _record("user", "Task A"), newline=False)
        watcher = SubagentWatcher(parent, "sess", {"t": "Task A"})

        assert await watcher.scan() == 0
        with open(path, "a") as f:
            f.write("\n")
        assert await watcher.scan() == 1

    async def test_other_record_types_skipped(self, tmp_path: Path) -> None:
        parent = tmp_path / "sess.jsonl"
        parent.write_text("")
        _child(
            parent,
            "abc",
            json.dumps({"type": "system", "subtype": "init"}),
            "not json",
            _record("user", "Task A"),
        )
        watcher = SubagentWatcher(parent, "sess", {"t": "Task A"})
        assert await watcher.scan() == 1

    async def test_claimed_calls_not_reused(self, tmp_path: Path) -> None:
        parent = tmp_path / "sess.jsonl"
        parent.write_text("")
        _child(parent, "one", _record("user", "Same prompt"))
        _child(parent, "two", _record("user", "Same prompt"))
        watcher = SubagentWatcher(
            parent, "sess", {"toolu_a": "Same prompt", "toolu_b": "Same prompt"}
        )

        assert await watcher.scan() == 2
        assert watcher.mappings == {"one": "toolu_a", "two": "toolu_b"}

    async def test_later_records_use_cached_mapping(self, tmp_path: Path) -> None:
        parent = tmp_path / "sess.jsonl"
        parent.write_text("")
        _child(parent, "abc", _record("user", "Task A"))
        watcher = SubagentWatcher(parent, "sess", {"t": "Task A"})
        await watcher.scan()

        _child(parent, "abc", _record("assistant", "unrelated text"))
        assert await watcher.scan() == 1
        assert _progress(parent)[-1]["parentToolUseID"] == "t"

    async def test_missing_directory(self, tmp_path: Path) -> None:
        watcher = SubagentWatcher(tmp_path / "sess.jsonl", "sess", {})
        assert await watcher.scan() == 0


class TestWatchSubagents:
    async def test_background_forwarding(self, tmp_path: Path) -> None:
        parent = tmp_path / "sess.jsonl"
        parent.write_text("")
        watcher = watch_subagents(parent, "sess", {"t": "Task A"}, poll_interval=0.05)
        try:
            # The directory does not exist when watching starts
            _child(parent, "abc", _record("user", "Task A"))
            for _ in range(100):
                if _progress(parent):
                    break
                await asyncio.sleep(0.05)
            assert len(_progress(parent)) == 1
        finally:
            watcher.close()
            await asyncio.sleep(0)

    async def test_close_stops_scanning(self, tmp_path: Path) -> None:
        parent = tmp_path / "sess.jsonl"
        parent.write_text("")
        watcher = watch_subagents(parent, "sess", {"t": "Task A"}, poll_interval=0.05)
        watcher.close()
        watcher.close()
        _child(parent, "abc", _record("user", "Task A"))
        assert await watcher.scan() == 0
        assert _progress(parent) == []
