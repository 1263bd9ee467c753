"""Orchestrator — the owned state behind every request handler.

One object holds the process registry, the persistent process manager,
the PTY registry and the undo machinery. Handlers receive it explicitly;
nothing here is a module-level global.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from agentdeck.agent.oneshot import create_session
from agentdeck.agent.persistent import NewSessionResult, PersistentProcessManager
from agentdeck.agent.protocol import PermissionPolicy
from agentdeck.agent.registry import ProcessRegistry
from agentdeck.config import DeckConfig
from agentdeck.pty.manager import PtySessionRegistry
from agentdeck.tail.stream import (
    LogTailStream,
    TaskOutputStream,
    open_task_output,
    open_tail,
    resolve_log_path,
)
from agentdeck.undo.engine import UndoTransactionEngine
from agentdeck.undo.state import (
    BranchResult,
    UndoStateStore,
    append_log,
    branch_log,
    truncate_log,
)

logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    """All long-lived components, shared by CLI commands and servers."""

    config: DeckConfig
    processes: ProcessRegistry
    agents: PersistentProcessManager
    terminals: PtySessionRegistry
    undo: UndoTransactionEngine
    undo_state: UndoStateStore

    def log_path(self, dir_name: str, file_name: str) -> Path:
        """A conversation log path, gated to the projects directory."""
        return resolve_log_path(self.config.projects_dir, dir_name, file_name)

    @asynccontextmanager
    async def tail(self, dir_name: str, file_name: str) -> AsyncIterator[LogTailStream]:
        tail_cfg = self.config.tail
        async with open_tail(
            self.log_path(dir_name, file_name),
            throttle=tail_cfg.throttle_ms / 1000,
            poll_interval=tail_cfg.poll_ms / 1000,
            heartbeat_interval=tail_cfg.heartbeat_s,
        ) as stream:
            yield stream

    @asynccontextmanager
    async def task_output(self, path: str) -> AsyncIterator[TaskOutputStream]:
        async with open_task_output(
            path,
            self.config.tail.task_output_prefixes,
            heartbeat_interval=self.config.tail.heartbeat_s,
        ) as stream:
            yield stream

    async def create_session(
        self, dir_name: str, message: str, permissions: PermissionPolicy | None = None
    ) -> NewSessionResult:
        """One-shot creation; see ``agents.start()`` for the persistent variant."""
        return await create_session(
            self.config, self.processes, dir_name, message, permissions
        )

    async def truncate_log(self, dir_name: str, file_name: str, keep_lines: int) -> list[str]:
        return await truncate_log(self.log_path(dir_name, file_name), keep_lines)

    async def append_log(self, dir_name: str, file_name: str, lines: list[str]) -> int:
        return await append_log(self.log_path(dir_name, file_name), lines)

    async def branch(
        self, dir_name: str, file_name: str, turn_index: int | None = None
    ) -> BranchResult:
        return await branch_log(self.log_path(dir_name, file_name), turn_index)

    async def shutdown(self) -> None:
        """Stop every agent process and terminal."""
        await self.agents.shutdown()
        stray = self.processes.kill_all()
        if stray:
            logger.info("Stopped %d one-shot process(es)", stray)
        await self.terminals.cleanup()


def build_orchestrator(config: DeckConfig) -> Orchestrator:
    """Set up all components. Synchronous; nothing is started yet."""
    processes = ProcessRegistry(grace=config.agent.grace_seconds)
    return Orchestrator(
        config=config,
        processes=processes,
        agents=PersistentProcessManager(config, processes),
        terminals=PtySessionRegistry(config.pty, grace=config.agent.grace_seconds),
        undo=UndoTransactionEngine(config.undo.allowed_roots),
        undo_state=UndoStateStore(config.undo_path),
    )
