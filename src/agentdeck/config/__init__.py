"""Configuration — Pydantic models for agentdeck settings."""

from __future__ import annotations

import json
import os
import shlex
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class AgentConfig(BaseModel):
    """How the external agent CLI is launched and supervised."""

    command: list[str] = Field(
        default_factory=lambda: ["claude"],
        description="Agent CLI argv prefix. Extra arguments are appended.",
    )
    grace_seconds: float = Field(
        default=3.0, description="Delay between SIGTERM and the forced SIGKILL"
    )
    session_timeout: float = Field(
        default=60.0, description="Bound on one-shot session creation"
    )
    log_wait_timeout: float = Field(
        default=15.0,
        description="How long create-and-send waits for the session log to appear",
    )


class TailConfig(BaseModel):
    throttle_ms: int = Field(default=150)
    poll_ms: int = Field(default=500)
    heartbeat_s: float = Field(default=15.0)
    task_output_prefixes: list[str] = Field(
        default_factory=lambda: ["/private/tmp/claude-", "/tmp/claude-"],
        description="Only task-output files under these prefixes may be streamed",
    )


class PtyConfig(BaseModel):
    scrollback_max: int = Field(default=50_000)
    scrollback_keep: int = Field(default=40_000)
    default_cols: int = Field(default=80)
    default_rows: int = Field(default=24)
    shell: str | None = Field(
        default=None, description="Default terminal command; falls back to $SHELL"
    )


class UndoConfig(BaseModel):
    allowed_roots: list[str] = Field(
        default_factory=lambda: [str(Path.home())],
        description="Undo/redo batches may only touch files under these roots",
    )


class DeckConfig(BaseModel):
    """Top-level agentdeck configuration."""

    claude_dir: str = Field(
        default="~/.claude", description="The agent CLI's data directory"
    )
    undo_dir: str = Field(
        default="~/.agentdeck/undo-history",
        description="Directory for opaque per-session undo snapshots",
    )
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tail: TailConfig = Field(default_factory=TailConfig)
    pty: PtyConfig = Field(default_factory=PtyConfig)
    undo: UndoConfig = Field(default_factory=UndoConfig)

    @property
    def projects_dir(self) -> Path:
        return Path(os.path.expanduser(self.claude_dir)) / "projects"

    @property
    def undo_path(self) -> Path:
        return Path(os.path.expanduser(self.undo_dir))

    @classmethod
    def load(cls, config_path: str | None = None) -> DeckConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            AGENTDECK_CLAUDE_DIR     - Agent CLI data directory (contains projects/)
            AGENTDECK_AGENT_COMMAND  - Agent CLI command line (shell-split)
            AGENTDECK_UNDO_DIR       - Undo snapshot directory
            AGENTDECK_SHELL          - Default terminal command
        """
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        env_claude_dir = os.environ.get("AGENTDECK_CLAUDE_DIR")
        if env_claude_dir:
            config_data["claude_dir"] = env_claude_dir

        env_undo_dir = os.environ.get("AGENTDECK_UNDO_DIR")
        if env_undo_dir:
            config_data["undo_dir"] = env_undo_dir

        agent = config_data.get("agent", {})
        env_command = os.environ.get("AGENTDECK_AGENT_COMMAND")
        if env_command:
            agent["command"] = shlex.split(env_command)
        if agent:
            config_data["agent"] = agent

        pty_cfg = config_data.get("pty", {})
        env_shell = os.environ.get("AGENTDECK_SHELL")
        if env_shell:
            pty_cfg["shell"] = env_shell
        if pty_cfg:
            config_data["pty"] = pty_cfg

        return cls.model_validate(config_data)


class ValidationResult(BaseModel):
    valid: bool
    error: str | None = None
    resolved: str | None = None


def validate_claude_dir(dir_path: str) -> ValidationResult:
    """Check that ``dir_path`` looks like an agent CLI data directory."""
    resolved = Path(os.path.expanduser(dir_path)).resolve()
    if not resolved.exists():
        return ValidationResult(valid=False, error="Path does not exist")
    if not resolved.is_dir():
        return ValidationResult(valid=False, error="Path is not a directory")
    try:
        entries = os.listdir(resolved)
    except OSError:
        return ValidationResult(valid=False, error="Cannot read directory contents")
    if "projects" not in entries:
        return ValidationResult(
            valid=False,
            error=(
                'Directory does not contain a "projects" subdirectory. '
                "This does not appear to be a valid .claude directory."
            ),
        )
    return ValidationResult(valid=True, resolved=str(resolved))
