"""Locate conversation logs and project directories on disk."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import aiofiles

logger = logging.getLogger(__name__)

# Non-project entry the CLI keeps next to project directories
_SKIP_DIRS = frozenset({"memory"})


def is_within_dir(parent: str | Path, child: str | Path) -> bool:
    parent_resolved = os.path.realpath(parent)
    child_resolved = os.path.realpath(child)
    return child_resolved == parent_resolved or child_resolved.startswith(
        parent_resolved + os.sep
    )


def find_log_path(projects_dir: Path, session_id: str) -> Path | None:
    """Find ``<session_id>.jsonl`` in any project directory."""
    target = f"{session_id}.jsonl"
    try:
        entries = sorted(os.scandir(projects_dir), key=lambda e: e.name)
    except OSError:
        return None
    for entry in entries:
        if not entry.is_dir() or entry.name in _SKIP_DIRS:
            continue
        candidate = Path(entry.path) / target
        if candidate.is_file():
            return candidate
    return None


def decode_dir_name(dir_name: str) -> str:
    """``-home-me-code`` -> ``/home/me/code`` (lossy for dashes in names)."""
    return "/" + dir_name.lstrip("-").replace("-", "/")


async def resolve_project_path(project_dir: Path, dir_name: str) -> str:
    """Resolve a project's working directory.

    Uses the ``cwd`` recorded in the first line of an existing log, falling
    back to decoding the directory name.
    """
    try:
        names = sorted(n for n in os.listdir(project_dir) if n.endswith(".jsonl"))
    except OSError:
        names = []
    for name in names:
        try:
            async with aiofiles.open(project_dir / name, "r", encoding="utf-8") as f:
                first_line = await f.readline()
            parsed = json.loads(first_line)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError):
            continue
        if isinstance(parsed, dict) and parsed.get("cwd"):
            return str(parsed["cwd"])
    return decode_dir_name(dir_name)
