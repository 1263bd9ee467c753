"""Persistent agent processes — one long-lived CLI child per conversation.

Keeping the child alive across turns preserves the CLI's prompt cache.
Each turn is one stream-json line on stdin; the turn is complete when the
CLI prints a ``result`` record on stdout. A router task per process reads
stdout and dispatches records:

    result    -> resolves the waiting turn
    progress  -> appended verbatim to the conversation log
    assistant -> delegate calls recorded for the sub-agent watcher
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles

from agentdeck.agent.locate import find_log_path, is_within_dir, resolve_project_path
from agentdeck.agent.protocol import (
    AssistantMessage,
    PermissionPolicy,
    ProgressMessage,
    ResultMessage,
    TurnPayload,
    build_model_args,
    build_permission_args,
    build_stream_message,
    decode_line,
)
from agentdeck.agent.registry import ProcessRegistry
from agentdeck.config import DeckConfig
from agentdeck.errors import (
    AccessDenied,
    AgentError,
    ProcessDeath,
    SpawnFailure,
    friendly_spawn_error,
)
from agentdeck.tail.subagents import SubagentWatcher, watch_subagents

logger = logging.getLogger(__name__)

# Single stream-json records (tool results, images) can be very large
STDOUT_LIMIT = 16 * 1024 * 1024

# Exit statuses that mean "terminated by our own stop()": negative signal
# numbers from asyncio, or 128 + signal when a shell wrapper relays them.
KILLED_RETURN_CODES = frozenset(
    {-signal.SIGTERM, -signal.SIGKILL, 128 + signal.SIGTERM, 128 + signal.SIGKILL}
)

LOG_POLL_SECONDS = 0.1


@dataclass
class TurnOk:
    result: str | None = None
    stopped: bool = False  # ended by stop(), not by a result record


@dataclass
class TurnError:
    error: AgentError


TurnResult = TurnOk | TurnError


@dataclass
class NewSessionOk:
    session_id: str
    dir_name: str
    file_name: str
    cwd: str


@dataclass
class NewSessionError:
    error: AgentError


NewSessionResult = NewSessionOk | NewSessionError


@dataclass
class ManagedProcess:
    """A live agent CLI child bound to one conversation."""

    session_id: str
    proc: asyncio.subprocess.Process
    cwd: str
    perm_args: list[str]
    model_args: list[str]
    worktree: str | None = None
    dead: bool = False
    pending: asyncio.Future[TurnResult] | None = None
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    log_path: Path | None = None
    pending_calls: dict[str, str] = field(default_factory=dict)
    watcher: SubagentWatcher | None = None
    stderr: str = ""
    stderr_task: asyncio.Task[None] | None = None
    router_task: asyncio.Task[None] | None = None

    @property
    def busy(self) -> bool:
        return self.pending is not None and not self.pending.done()

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "pid": self.proc.pid,
            "cwd": self.cwd,
            "alive": not self.dead,
            "busy": self.busy,
            "worktree": self.worktree,
            "log_path": str(self.log_path) if self.log_path else None,
        }


class PersistentProcessManager:
    """Owns at most one live agent process per session id."""

    def __init__(
        self, config: DeckConfig, registry: ProcessRegistry | None = None
    ) -> None:
        self._config = config
        self._registry = registry or ProcessRegistry(config.agent.grace_seconds)
        self._procs: dict[str, ManagedProcess] = {}
        self._spawn_locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def _binary(self) -> str:
        return os.path.basename(self._config.agent.command[0])

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def send(
        self,
        session_id: str,
        payload: TurnPayload,
        cwd: str | None = None,
        permissions: PermissionPolicy | None = None,
        model: str | None = None,
    ) -> TurnResult:
        """Run one turn, spawning a ``--resume`` process if none is live."""
        if payload.empty:
            return TurnError(AgentError("Message must include text or images"))

        try:
            mp = await self._ensure_process(session_id, cwd, permissions, model)
        except AgentError as e:
            return TurnError(e)
        # The turn owns the process until its result arrives, even if this
        # caller stops waiting.
        turn = self._spawn_background(self._run_turn(mp, payload))
        return await asyncio.shield(turn)

    async def start(
        self,
        dir_name: str,
        payload: TurnPayload,
        permissions: PermissionPolicy | None = None,
        model: str | None = None,
        worktree: str | None = None,
    ) -> NewSessionResult:
        """Create a session in a project and send its first turn.

        Returns once the session log exists with content or the first turn
        finishes, whichever happens first. The turn keeps running after
        that; later ``send()`` calls queue behind it.
        """
        if payload.empty:
            return NewSessionError(AgentError("Message must include text or images"))

        projects_dir = self._config.projects_dir
        project_dir = projects_dir / dir_name
        if not is_within_dir(projects_dir, project_dir):
            return NewSessionError(AccessDenied("Access denied", path=str(project_dir)))

        cwd = await resolve_project_path(project_dir, dir_name)
        session_id = str(uuid.uuid4())
        file_name = f"{session_id}.jsonl"
        expected = project_dir / file_name

        try:
            mp = await self._spawn(
                session_id,
                cwd,
                build_permission_args(permissions),
                build_model_args(model),
                resume=False,
                worktree=worktree,
            )
        except AgentError as e:
            return NewSessionError(e)

        turn = self._spawn_background(self._run_turn(mp, payload))
        appeared = asyncio.create_task(self._wait_for_log(expected))
        done, _ = await asyncio.wait({turn, appeared}, return_when=asyncio.FIRST_COMPLETED)

        if turn not in done and appeared.result():
            self._attach_log(mp, expected)
        else:
            appeared.cancel()
            result = await turn
            if isinstance(result, TurnError):
                return NewSessionError(result.error)
            self._attach_log(mp, expected if expected.is_file() else None)

        return NewSessionOk(
            session_id=session_id, dir_name=dir_name, file_name=file_name, cwd=cwd
        )

    def stop(self, session_id: str) -> bool:
        """Terminate a session's process. An outstanding turn ends as stopped."""
        mp = self._procs.get(session_id)
        if mp is not None:
            mp.dead = True
        return self._registry.kill(session_id)

    def kill_all(self) -> int:
        for mp in self._procs.values():
            mp.dead = True
        count = self._registry.kill_all()
        if count:
            logger.info("Stopped %d agent process(es)", count)
        return count

    def is_alive(self, session_id: str) -> bool:
        mp = self._procs.get(session_id)
        return mp is not None and not mp.dead

    def get(self, session_id: str) -> ManagedProcess | None:
        return self._procs.get(session_id)

    def sessions(self) -> list[dict[str, Any]]:
        return [mp.to_dict() for mp in self._procs.values()]

    async def shutdown(self) -> None:
        """Stop every process and wait for outstanding turns to resolve."""
        self.kill_all()
        routers = [mp.router_task for mp in self._procs.values() if mp.router_task]
        if routers:
            await asyncio.wait(routers, timeout=self._config.agent.grace_seconds + 2.0)

        # Anything still here ignored SIGKILL or never started routing
        leftovers: list[asyncio.Task[Any]] = [*self._background]
        for mp in list(self._procs.values()):
            if mp.watcher is not None:
                mp.watcher.close()
            leftovers += [t for t in (mp.stderr_task, mp.router_task) if t is not None]
        for task in leftovers:
            task.cancel()
        await asyncio.gather(*leftovers, return_exceptions=True)

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def _ensure_process(
        self,
        session_id: str,
        cwd: str | None,
        permissions: PermissionPolicy | None,
        model: str | None,
    ) -> ManagedProcess:
        lock = self._spawn_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            existing = self._procs.get(session_id)
            if existing is not None and not existing.dead:
                return existing
            return await self._spawn(
                session_id,
                cwd or str(Path.home()),
                build_permission_args(permissions),
                build_model_args(model),
                resume=True,
            )

    def _build_argv(
        self,
        session_id: str,
        perm_args: list[str],
        model_args: list[str],
        resume: bool,
        worktree: str | None,
    ) -> list[str]:
        argv = [
            *self._config.agent.command,
            "-p",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
            "--resume" if resume else "--session-id", session_id,
            *perm_args,
            *model_args,
        ]
        if worktree:
            argv += ["--worktree", worktree]
        return argv

    async def _spawn(
        self,
        session_id: str,
        cwd: str,
        perm_args: list[str],
        model_args: list[str],
        resume: bool,
        worktree: str | None = None,
    ) -> ManagedProcess:
        if not os.path.isdir(cwd):
            raise SpawnFailure(f"Working directory does not exist: {cwd}")

        argv = self._build_argv(session_id, perm_args, model_args, resume, worktree)
        env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                limit=STDOUT_LIMIT,
            )
        except OSError as e:
            raise friendly_spawn_error(e, self._binary) from e

        mp = ManagedProcess(
            session_id=session_id,
            proc=proc,
            cwd=cwd,
            perm_args=perm_args,
            model_args=model_args,
            worktree=worktree,
        )
        self._procs[session_id] = mp
        self._registry.track(session_id, proc)
        mp.stderr_task = asyncio.create_task(self._collect_stderr(mp))
        mp.router_task = asyncio.create_task(self._route_output(mp))
        if resume:
            self._attach_log(mp, find_log_path(self._config.projects_dir, session_id))

        logger.info(
            "Spawned agent for session %s (pid %d, %s)",
            session_id,
            proc.pid,
            "resume" if resume else "new",
        )
        return mp

    def _attach_log(self, mp: ManagedProcess, log_path: Path | None) -> None:
        if log_path is None or mp.dead:
            return
        mp.log_path = log_path
        if mp.watcher is None:
            mp.watcher = watch_subagents(log_path, mp.session_id, mp.pending_calls)

    async def _wait_for_log(self, path: Path) -> bool:
        attempts = max(1, int(self._config.agent.log_wait_timeout / LOG_POLL_SECONDS))
        for _ in range(attempts):
            try:
                if path.stat().st_size > 0:
                    return True
            except OSError:
                pass
            await asyncio.sleep(LOG_POLL_SECONDS)
        return False

    def _spawn_background(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _run_turn(self, mp: ManagedProcess, payload: TurnPayload) -> TurnResult:
        async with mp.turn_lock:
            if mp.dead:
                return TurnError(
                    ProcessDeath(f"{self._binary} process exited before the message was sent")
                )

            future: asyncio.Future[TurnResult] = asyncio.get_running_loop().create_future()
            mp.pending = future
            line = build_stream_message(payload) + "\n"
            try:
                assert mp.proc.stdin is not None
                mp.proc.stdin.write(line.encode("utf-8"))
                await mp.proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                # The exit handler resolves the turn.
                logger.debug("Write to session %s failed: %s", mp.session_id, e)

            try:
                return await future
            finally:
                mp.pending = None

    def _resolve(self, mp: ManagedProcess, result: TurnResult) -> None:
        if mp.pending is not None and not mp.pending.done():
            mp.pending.set_result(result)

    # ------------------------------------------------------------------
    # Output routing
    # ------------------------------------------------------------------

    async def _route_output(self, mp: ManagedProcess) -> None:
        stdout = mp.proc.stdout
        assert stdout is not None
        while True:
            try:
                raw = await stdout.readline()
            except ValueError:
                logger.warning("Dropped oversized output line from session %s", mp.session_id)
                continue
            if not raw:
                break
            try:
                await self._dispatch(mp, raw.decode("utf-8", errors="replace"))
            except Exception:
                logger.exception("Error routing output for session %s", mp.session_id)

        code = await mp.proc.wait()
        # stderr may still hold the crash message
        if mp.stderr_task is not None and not mp.stderr_task.done():
            await asyncio.wait({mp.stderr_task}, timeout=1.0)
        self._handle_exit(mp, code)

    async def _dispatch(self, mp: ManagedProcess, line: str) -> None:
        msg = decode_line(line)
        if msg is None:
            return

        if isinstance(msg, ResultMessage):
            if msg.is_error:
                self._resolve(
                    mp, TurnError(AgentError(msg.result or f"{self._binary} returned an error"))
                )
            else:
                self._resolve(mp, TurnOk(result=msg.result))
        elif isinstance(msg, ProgressMessage):
            await self._append_progress(mp, msg.raw)
        elif isinstance(msg, AssistantMessage) and msg.delegate_calls:
            for call in msg.delegate_calls:
                mp.pending_calls[call.tool_use_id] = call.prompt
            if mp.watcher is None:
                self._attach_log(mp, find_log_path(self._config.projects_dir, mp.session_id))

    async def _append_progress(self, mp: ManagedProcess, raw: str) -> None:
        if mp.log_path is None:
            self._attach_log(mp, find_log_path(self._config.projects_dir, mp.session_id))
        if mp.log_path is None:
            return
        try:
            async with aiofiles.open(mp.log_path, "a", encoding="utf-8") as f:
                await f.write(raw + "\n")
        except OSError as e:
            logger.warning("Could not forward progress to %s: %s", mp.log_path, e)

    async def _collect_stderr(self, mp: ManagedProcess) -> None:
        stderr = mp.proc.stderr
        assert stderr is not None
        while True:
            chunk = await stderr.read(4096)
            if not chunk:
                return
            mp.stderr += chunk.decode("utf-8", errors="replace")

    def _handle_exit(self, mp: ManagedProcess, code: int) -> None:
        mp.dead = True
        self._registry.untrack(mp.session_id, mp.proc)
        if self._procs.get(mp.session_id) is mp:
            del self._procs[mp.session_id]
        if mp.watcher is not None:
            mp.watcher.close()
        lock = self._spawn_locks.get(mp.session_id)
        if lock is not None and not lock.locked():
            del self._spawn_locks[mp.session_id]

        if code in KILLED_RETURN_CODES:
            logger.info("Agent for session %s stopped (code=%s)", mp.session_id, code)
            self._resolve(mp, TurnOk(stopped=True))
        else:
            logger.info("Agent for session %s exited (code=%s)", mp.session_id, code)
            message = mp.stderr.strip() or f"{self._binary} exited with code {code}"
            self._resolve(mp, TurnError(ProcessDeath(message)))


def describe_result(result: TurnResult | NewSessionResult) -> dict[str, Any]:
    """JSON-friendly summary of a turn or new-session result."""
    if isinstance(result, (TurnError, NewSessionError)):
        return {"success": False, "error": result.error.to_dict()}
    if isinstance(result, NewSessionOk):
        return {
            "success": True,
            "sessionId": result.session_id,
            "dirName": result.dir_name,
            "fileName": result.file_name,
        }
    return {"success": True, "stopped": result.stopped}

