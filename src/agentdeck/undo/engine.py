"""All-or-nothing file mutation batches for undo and redo.

A batch is validated as a whole before anything is touched, then applied
in order. Each applied operation snapshots the prior state of its file
(bytes, or absence); if a later operation fails, the snapshots are
restored newest-first and the batch reports how many it reversed.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Literal

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from agentdeck.errors import AccessDenied, AgentError, Conflict

logger = logging.getLogger(__name__)

# Never written to, even if an allowed root contains them
FORBIDDEN_PREFIXES = (
    "/etc/",
    "/usr/",
    "/bin/",
    "/sbin/",
    "/boot/",
    "/proc/",
    "/sys/",
    "/dev/",
    "/var/",
)

# Undecodable bytes survive a str round-trip as lone surrogates
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class ReplaceOp(BaseModel):
    """Replace the single occurrence of ``old_text`` with ``new_text``."""

    model_config = ConfigDict(frozen=True)

    type: Literal["replace"] = "replace"
    path: str
    old_text: str = Field(min_length=1)
    new_text: str


class DeleteOp(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["delete"] = "delete"
    path: str


class CreateOp(BaseModel):
    """Create or overwrite ``path`` with ``content``."""

    model_config = ConfigDict(frozen=True)

    type: Literal["create"] = "create"
    path: str
    content: str


UndoOperation = Annotated[ReplaceOp | DeleteOp | CreateOp, Field(discriminator="type")]

_OPERATIONS = TypeAdapter(list[UndoOperation])


def parse_operations(data: Any) -> list[UndoOperation]:
    """Validate raw JSON-like data into operations (raises pydantic.ValidationError)."""
    return _OPERATIONS.validate_python(data)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class AppliedRecord:
    path: str
    existed: bool
    previous: bytes | None = None


@dataclass
class UndoApplied:
    applied: int


@dataclass
class UndoFailed:
    error: AgentError
    rolled_back: int


UndoResult = UndoApplied | UndoFailed


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


async def _snapshot(path: str) -> AppliedRecord:
    try:
        async with aiofiles.open(path, "rb") as f:
            return AppliedRecord(path=path, existed=True, previous=await f.read())
    except FileNotFoundError:
        return AppliedRecord(path=path, existed=False)


async def _write_bytes(path: str, data: bytes) -> None:
    parent = os.path.dirname(path)
    if parent:
        await aiofiles.os.makedirs(parent, exist_ok=True)
    async with aiofiles.open(path, "wb") as f:
        await f.write(data)


async def _remove(path: str) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass


def _is_under(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


async def _restore(record: AppliedRecord) -> None:
    if record.existed:
        await _write_bytes(record.path, record.previous or b"")
    else:
        await _remove(record.path)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class UndoTransactionEngine:
    """Applies operation batches under a set of allowed root directories."""

    def __init__(self, allowed_roots: Sequence[str | Path] | None = None) -> None:
        roots = allowed_roots if allowed_roots else [Path.home()]
        self.allowed_roots = [os.path.normpath(os.path.expanduser(str(r))) for r in roots]

    def validate_path(self, path: str) -> str:
        """Raise AccessDenied unless ``path`` is safe to mutate."""
        if not os.path.isabs(path) or os.path.normpath(path) != path:
            raise AccessDenied(f"Invalid file path: {path}", path=path)
        if not any(_is_under(path, root) for root in self.allowed_roots):
            raise AccessDenied("File operations restricted to allowed directories", path=path)
        if any(path.startswith(prefix) for prefix in FORBIDDEN_PREFIXES):
            raise AccessDenied("Cannot modify system files", path=path)
        return path

    async def apply(self, operations: Sequence[UndoOperation]) -> UndoResult:
        if not operations:
            return UndoFailed(AgentError("operations array required"), 0)

        try:
            for op in operations:
                self.validate_path(op.path)
        except AccessDenied as e:
            logger.warning("Rejected undo batch: %s (%s)", e.message, e.path)
            return UndoFailed(e, 0)

        applied: list[AppliedRecord] = []
        for op in operations:
            try:
                applied.append(await self._apply_one(op))
            except AgentError as e:
                rolled_back = await self._rollback(applied)
                logger.info(
                    "Undo batch failed at %s, rolled back %d operation(s): %s",
                    op.path,
                    rolled_back,
                    e.message,
                )
                return UndoFailed(e, rolled_back)

        logger.debug("Applied undo batch of %d operation(s)", len(applied))
        return UndoApplied(applied=len(applied))

    async def _apply_one(self, op: UndoOperation) -> AppliedRecord:
        try:
            record = await _snapshot(op.path)
            if isinstance(op, ReplaceOp):
                if not record.existed:
                    raise Conflict(
                        f"Conflict: {op.path} no longer exists. File may have been modified externally.",
                        path=op.path,
                        expected=op.old_text,
                    )
                content = (record.previous or b"").decode(_ENCODING, _ERRORS)
                found = content.count(op.old_text)
                if found == 0:
                    raise Conflict(
                        f"Conflict: expected string not found in {op.path}. "
                        "File may have been modified externally.",
                        path=op.path,
                        expected=op.old_text,
                        found=0,
                    )
                if found > 1:
                    raise Conflict(
                        f"Conflict: expected exactly 1 occurrence in {op.path}, "
                        f"found {found}. Cannot safely apply edit.",
                        path=op.path,
                        expected=op.old_text,
                        found=found,
                    )
                updated = content.replace(op.old_text, op.new_text, 1)
                await _write_bytes(op.path, updated.encode(_ENCODING, _ERRORS))
            elif isinstance(op, DeleteOp):
                if record.existed:
                    await _remove(op.path)
            else:
                await _write_bytes(op.path, op.content.encode(_ENCODING, _ERRORS))
        except OSError as e:
            raise AgentError(f"Failed to {op.type} {op.path}: {e.strerror or e}") from e
        return record

    async def _rollback(self, applied: list[AppliedRecord]) -> int:
        for record in reversed(applied):
            try:
                await _restore(record)
            except OSError as e:
                logger.warning("Rollback of %s failed: %s", record.path, e)
        return len(applied)

    async def plan_inverse(self, operations: Sequence[UndoOperation]) -> list[UndoOperation]:
        """The batch that puts every touched path back to its current state.

        Compute this before ``apply()``; applying the result afterwards
        restores byte-identical contents and existence for each path.
        """
        inverse: list[UndoOperation] = []
        seen: set[str] = set()
        for op in operations:
            if op.path in seen:
                continue
            seen.add(op.path)
            record = await _snapshot(op.path)
            if record.existed:
                content = (record.previous or b"").decode(_ENCODING, _ERRORS)
                inverse.append(CreateOp(path=op.path, content=content))
            else:
                inverse.append(DeleteOp(path=op.path))
        inverse.reverse()
        return inverse
