"""One-shot session creation: ``<cli> -p MESSAGE --session-id ID``.

The child runs a single turn and exits. Creation succeeds only if the
session log exists afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid

from agentdeck.agent.locate import is_within_dir, resolve_project_path
from agentdeck.agent.persistent import NewSessionError, NewSessionOk, NewSessionResult
from agentdeck.agent.protocol import PermissionPolicy, build_permission_args
from agentdeck.agent.registry import ProcessRegistry
from agentdeck.config import DeckConfig
from agentdeck.errors import (
    AccessDenied,
    AgentError,
    AgentTimeout,
    ProcessDeath,
    friendly_spawn_error,
)

logger = logging.getLogger(__name__)


async def create_session(
    config: DeckConfig,
    registry: ProcessRegistry,
    dir_name: str,
    message: str,
    permissions: PermissionPolicy | None = None,
) -> NewSessionResult:
    if not dir_name or not message:
        return NewSessionError(AgentError("dir_name and message are required"))

    projects_dir = config.projects_dir
    project_dir = projects_dir / dir_name
    if not is_within_dir(projects_dir, project_dir):
        return NewSessionError(AccessDenied("Access denied", path=str(project_dir)))

    cwd = await resolve_project_path(project_dir, dir_name)
    session_id = str(uuid.uuid4())
    file_name = f"{session_id}.jsonl"
    binary = os.path.basename(config.agent.command[0])

    argv = [
        *config.agent.command,
        "-p",
        message,
        "--session-id",
        session_id,
        *build_permission_args(permissions),
    ]
    env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd if os.path.isdir(cwd) else None,
            env=env,
        )
    except OSError as e:
        return NewSessionError(friendly_spawn_error(e, binary))

    registry.track(session_id, proc)
    logger.info("Creating session %s in %s (pid %d)", session_id, cwd, proc.pid)

    stderr_chunks: list[bytes] = []

    async def _collect_stderr() -> None:
        assert proc.stderr is not None
        while chunk := await proc.stderr.read(4096):
            stderr_chunks.append(chunk)

    def _stderr_text() -> str:
        return b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()

    collector = asyncio.create_task(_collect_stderr())
    try:
        code = await asyncio.wait_for(proc.wait(), timeout=config.agent.session_timeout)
    except asyncio.TimeoutError:
        registry.kill(session_id)
        collector.cancel()
        logger.warning("Session %s did not start within %.0fs", session_id, config.agent.session_timeout)
        return NewSessionError(
            AgentTimeout(_stderr_text() or "Timed out waiting for session to start")
        )

    await asyncio.wait({collector}, timeout=1.0)
    # A grandchild holding stderr open would otherwise keep the reader alive
    collector.cancel()
    registry.untrack(session_id, proc)

    if (project_dir / file_name).is_file():
        return NewSessionOk(
            session_id=session_id, dir_name=dir_name, file_name=file_name, cwd=cwd
        )
    return NewSessionError(
        ProcessDeath(
            _stderr_text() or f"{binary} exited with code {code} before creating session"
        )
    )
