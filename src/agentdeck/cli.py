"""CLI entry point for agentdeck."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

import typer
from pydantic import ValidationError

from agentdeck.config import DeckConfig, validate_claude_dir
from agentdeck.errors import AgentError
from agentdeck.session.wire import EventType
from agentdeck.undo.engine import UndoOperation

app = typer.Typer(
    name="agentdeck",
    help="Drive agent CLI sessions, terminals and conversation logs.",
    no_args_is_help=True,
)
undo_app = typer.Typer(help="Apply and plan undo/redo batches.", no_args_is_help=True)
app.add_typer(undo_app, name="undo")


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _fail(message: str) -> NoReturn:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Tails
# ---------------------------------------------------------------------------


@app.command()
def tail(
    dir_name: str = typer.Argument(help="Project directory name under projects/."),
    file_name: str = typer.Argument(help="Conversation log file (<session>.jsonl)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Follow a conversation log, printing each new line."""
    setup_logging(verbose)
    config = DeckConfig.load(config_file)
    try:
        asyncio.run(_run_tail(config, dir_name, file_name))
    except KeyboardInterrupt:
        pass
    except AgentError as e:
        _fail(e.message)


async def _run_tail(config: DeckConfig, dir_name: str, file_name: str) -> None:
    from agentdeck.orchestrator import build_orchestrator

    orch = build_orchestrator(config)
    async with orch.tail(dir_name, file_name) as stream:
        async for event in stream.events():
            if event.type == EventType.LINES:
                for line in event.data["lines"]:
                    typer.echo(line)
            elif event.type == EventType.INIT and event.data.get("reset"):
                typer.echo("--- log truncated ---", err=True)
            elif event.type == EventType.ERROR:
                _fail(event.data.get("message", "tail failed"))


@app.command("task-output")
def task_output(
    path: str = typer.Argument(help="Background task output file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Stream a background task's output file from the beginning."""
    setup_logging(verbose)
    config = DeckConfig.load(config_file)
    try:
        asyncio.run(_run_task_output(config, path))
    except KeyboardInterrupt:
        pass
    except AgentError as e:
        _fail(e.message)


async def _run_task_output(config: DeckConfig, path: str) -> None:
    from agentdeck.orchestrator import build_orchestrator

    orch = build_orchestrator(config)
    async with orch.task_output(path) as stream:
        async for event in stream.events():
            if event.type == EventType.OUTPUT:
                typer.echo(event.data["text"], nl=False)


# ---------------------------------------------------------------------------
# Agent turns
# ---------------------------------------------------------------------------


@app.command()
def send(
    session_id: str = typer.Argument(help="Conversation session id to resume."),
    message: str = typer.Argument(help="Message text."),
    cwd: str | None = typer.Option(None, "--cwd", help="Working directory for a new process."),
    model: str | None = typer.Option(None, "--model", "-m", help="Model override."),
    permission_mode: str | None = typer.Option(
        None, "--permission-mode", "-p", help="Permission mode (default: bypass)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Send one turn to a session and wait for it to finish."""
    setup_logging(verbose)
    config = DeckConfig.load(config_file)
    asyncio.run(_run_send(config, session_id, message, cwd, model, permission_mode))


async def _run_send(
    config: DeckConfig,
    session_id: str,
    message: str,
    cwd: str | None,
    model: str | None,
    permission_mode: str | None,
) -> None:
    from agentdeck.agent.persistent import TurnError
    from agentdeck.agent.protocol import PermissionPolicy, TurnPayload
    from agentdeck.orchestrator import build_orchestrator

    orch = build_orchestrator(config)
    try:
        result = await orch.agents.send(
            session_id,
            TurnPayload(text=message),
            cwd=cwd,
            permissions=PermissionPolicy(mode=permission_mode),
            model=model,
        )
    finally:
        await orch.shutdown()

    if isinstance(result, TurnError):
        _fail(result.error.message)
    if result.result:
        typer.echo(result.result)


@app.command()
def new(
    dir_name: str = typer.Argument(help="Project directory name under projects/."),
    message: str = typer.Argument(help="First message."),
    model: str | None = typer.Option(None, "--model", "-m", help="Model override."),
    worktree: str | None = typer.Option(None, "--worktree", "-w", help="Run in a named worktree."),
    oneshot: bool = typer.Option(
        False, "--oneshot", help="Run a single turn and exit instead of keeping the process."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Create a new session in a project and send its first message."""
    setup_logging(verbose)
    config = DeckConfig.load(config_file)
    asyncio.run(_run_new(config, dir_name, message, model, worktree, oneshot))


async def _run_new(
    config: DeckConfig,
    dir_name: str,
    message: str,
    model: str | None,
    worktree: str | None,
    oneshot: bool,
) -> None:
    from agentdeck.agent.persistent import NewSessionError, describe_result
    from agentdeck.agent.protocol import TurnPayload
    from agentdeck.orchestrator import build_orchestrator

    orch = build_orchestrator(config)
    try:
        if oneshot:
            result = await orch.create_session(dir_name, message)
        else:
            result = await orch.agents.start(
                dir_name, TurnPayload(text=message), model=model, worktree=worktree
            )
            if not isinstance(result, NewSessionError):
                # Let the first turn finish before tearing the process down.
                mp = orch.agents.get(result.session_id)
                if mp is not None:
                    async with mp.turn_lock:
                        pass
    finally:
        await orch.shutdown()

    if isinstance(result, NewSessionError):
        _fail(result.error.message)
    typer.echo(json.dumps(describe_result(result)))


# ---------------------------------------------------------------------------
# Undo
# ---------------------------------------------------------------------------


def _load_operations(ops_json: str) -> list[UndoOperation]:
    from agentdeck.undo.engine import parse_operations

    path = Path(ops_json)
    raw = path.read_text() if path.is_file() else ops_json
    try:
        data = json.loads(raw)
        if isinstance(data, dict):
            data = data.get("operations", [])
        return parse_operations(data)
    except (json.JSONDecodeError, ValidationError) as e:
        _fail(f"Invalid operations: {e}")


@undo_app.command("apply")
def undo_apply(
    ops_json: str = typer.Argument(help="Operations as JSON, or a path to a JSON file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Apply a batch of file operations; all or nothing."""
    from agentdeck.undo.engine import UndoFailed, UndoTransactionEngine

    setup_logging(verbose)
    config = DeckConfig.load(config_file)
    operations = _load_operations(ops_json)
    engine = UndoTransactionEngine(config.undo.allowed_roots)
    result = asyncio.run(engine.apply(operations))
    if isinstance(result, UndoFailed):
        typer.echo(
            json.dumps({**result.error.to_dict(), "rolledBack": result.rolled_back}),
            err=True,
        )
        raise typer.Exit(1)
    typer.echo(json.dumps({"success": True, "applied": result.applied}))


@undo_app.command("inverse")
def undo_inverse(
    ops_json: str = typer.Argument(help="Operations as JSON, or a path to a JSON file."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Print the batch that would restore the files a batch touches."""
    from agentdeck.undo.engine import UndoTransactionEngine

    config = DeckConfig.load(config_file)
    operations = _load_operations(ops_json)
    engine = UndoTransactionEngine(config.undo.allowed_roots)
    inverse = asyncio.run(engine.plan_inverse(operations))
    typer.echo(json.dumps([op.model_dump() for op in inverse], indent=2))


@app.command()
def branch(
    dir_name: str = typer.Argument(help="Project directory name under projects/."),
    file_name: str = typer.Argument(help="Conversation log file to branch from."),
    turn: int | None = typer.Option(None, "--turn", "-t", help="Keep turns up to this index."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Copy a conversation into a new session, optionally cut after a turn."""
    from agentdeck.orchestrator import build_orchestrator

    config = DeckConfig.load(config_file)
    orch = build_orchestrator(config)
    try:
        result = asyncio.run(orch.branch(dir_name, file_name, turn))
    except AgentError as e:
        _fail(e.message)
    except OSError as e:
        _fail(str(e))
    typer.echo(
        json.dumps(
            {
                "dirName": dir_name,
                "fileName": result.path.name,
                "sessionId": result.session_id,
                "branchedFrom": result.branched_from,
            }
        )
    )


@app.command()
def validate(
    path: str | None = typer.Argument(None, help="Directory to check (default: configured)."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Check that a directory looks like the agent CLI's data directory."""
    config = DeckConfig.load(config_file)
    result = validate_claude_dir(path or config.claude_dir)
    if not result.valid:
        _fail(result.error or "invalid directory")
    typer.echo(f"OK: {result.resolved}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
