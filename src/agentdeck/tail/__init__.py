"""Live tails of conversation logs, task output and sub-agent logs."""

from agentdeck.tail.stream import (
    LogTailStream,
    TaskOutputStream,
    open_task_output,
    open_tail,
)
from agentdeck.tail.subagents import SubagentWatcher, watch_subagents

__all__ = [
    "LogTailStream",
    "SubagentWatcher",
    "TaskOutputStream",
    "open_task_output",
    "open_tail",
    "watch_subagents",
]
