"""Tests for agentdeck.cli (undo, branch and validate commands)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from agentdeck import cli
from agentdeck.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    # basicConfig would bind the root logger to one invocation's stderr
    monkeypatch.setattr(cli, "setup_logging", lambda verbose=False: None)


@pytest.fixture
def deck(tmp_path: Path) -> Path:
    """A config file rooting both the data dir and undo batches in ``tmp_path``."""
    claude_dir = tmp_path / "claude"
    (claude_dir / "projects" / "-proj").mkdir(parents=True)
    path = tmp_path / "deck.json"
    path.write_text(
        json.dumps({"claude_dir": str(claude_dir), "undo": {"allowed_roots": [str(tmp_path)]}})
    )
    return path


class TestUndoCommands:
    def test_apply(self, deck: Path, tmp_path: Path) -> None:
        target = tmp_path / "a.txt"
        target.write_text("old")
        ops = [{"type": "replace", "path": str(target), "old_text": "old", "new_text": "new"}]
        result = runner.invoke(app, ["undo", "apply", json.dumps(ops), "--config", str(deck)])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"success": True, "applied": 1}
        assert target.read_text() == "new"

    def test_apply_conflict_exits_nonzero(self, deck: Path, tmp_path: Path) -> None:
        target = tmp_path / "a.txt"
        target.write_text("x x")
        ops = {"operations": [{"type": "replace", "path": str(target), "old_text": "x", "new_text": "y"}]}
        result = runner.invoke(app, ["undo", "apply", json.dumps(ops), "--config", str(deck)])
        assert result.exit_code == 1
        assert target.read_text() == "x x"

    def test_apply_invalid_json(self, deck: Path) -> None:
        result = runner.invoke(app, ["undo", "apply", "{not json", "--config", str(deck)])
        assert result.exit_code == 1

    def test_inverse_from_file(self, deck: Path, tmp_path: Path) -> None:
        target = tmp_path / "a.txt"
        target.write_text("before")
        ops_file = tmp_path / "ops.json"
        ops_file.write_text(json.dumps([{"type": "delete", "path": str(target)}]))
        result = runner.invoke(app, ["undo", "inverse", str(ops_file), "--config", str(deck)])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == [
            {"type": "create", "path": str(target), "content": "before"}
        ]


class TestBranchCommand:
    def test_branch(self, deck: Path, tmp_path: Path) -> None:
        log = tmp_path / "claude" / "projects" / "-proj" / "orig.jsonl"
        log.write_text(json.dumps({"type": "user", "sessionId": "orig"}) + "\n")
        result = runner.invoke(app, ["branch", "-proj", "orig.jsonl", "--config", str(deck)])
        assert result.exit_code == 0, result.output
        out = json.loads(result.stdout)
        assert out["branchedFrom"] == "orig"
        assert (log.parent / out["fileName"]).is_file()

    def test_branch_rejects_non_jsonl(self, deck: Path) -> None:
        result = runner.invoke(app, ["branch", "-proj", "notes.txt", "--config", str(deck)])
        assert result.exit_code == 1


class TestValidateCommand:
    def test_valid(self, deck: Path, tmp_path: Path) -> None:
        result = runner.invoke(app, ["validate", str(tmp_path / "claude"), "--config", str(deck)])
        assert result.exit_code == 0
        assert result.stdout.startswith("OK:")

    def test_invalid(self, deck: Path, tmp_path: Path) -> None:
        result = runner.invoke(app, ["validate", str(tmp_path), "--config", str(deck)])
        assert result.exit_code == 1
