"""Undo/redo: transactional file batches, snapshots, log branching."""

from agentdeck.undo.engine import (
    CreateOp,
    DeleteOp,
    ReplaceOp,
    UndoApplied,
    UndoFailed,
    UndoOperation,
    UndoTransactionEngine,
    parse_operations,
)
from agentdeck.undo.state import (
    UndoStateStore,
    append_log,
    branch_log,
    find_truncation_line,
    truncate_log,
)

__all__ = [
    "CreateOp",
    "DeleteOp",
    "ReplaceOp",
    "UndoApplied",
    "UndoFailed",
    "UndoOperation",
    "UndoStateStore",
    "UndoTransactionEngine",
    "append_log",
    "branch_log",
    "find_truncation_line",
    "parse_operations",
    "truncate_log",
]
