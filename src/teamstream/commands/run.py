"""teamstream run — send one instruction to a session and stream the events."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
import uuid
from pathlib import Path

import click

from teamstream.config.models import TeamstreamConfig
from teamstream.config.parser import ConfigError, load_config
from teamstream.errors import TeamstreamError
from teamstream.orchestrator.service import Orchestrator
from teamstream.orchestrator.stream import SessionStream
from teamstream.session.models import (
    AllowDecision,
    ClientEvent,
    CompactingPayload,
    DenyDecision,
    ErrorEvent,
    NotificationPayload,
    PermissionRequestEvent,
    PermissionResponse,
    ResultEvent,
    StatusEvent,
    TaskNotificationEvent,
    TextEvent,
    ThinkingEvent,
    ToolOutputEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from teamstream.session.store import FileSessionStore

logger = logging.getLogger(__name__)

#: Characters of tool input / output shown in human-readable mode.
_PREVIEW_CHARS = 200


@click.command()
@click.argument("message")
@click.option(
    "--session-id",
    default=None,
    help="Session to continue (a new one is created when omitted or unknown).",
)
@click.option(
    "--cwd",
    "working_directory",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Working directory for the agent.",
)
@click.option("--model", default=None, help="Model passed to the agent CLI.")
@click.option(
    "--team/--no-team",
    "team_mode",
    default=None,
    help="Enable team mode (resume while teammates have work).",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to teamstream.yaml (default: ./teamstream.yaml if present).",
)
@click.option("-v", "--verbose", is_flag=True, help="Log orchestration details to stderr.")
@click.option("--json", "as_json", is_flag=True, help="Print one JSON event per line.")
def run(
    message: str,
    session_id: str | None,
    working_directory: Path | None,
    model: str | None,
    team_mode: bool | None,
    config_path: Path | None,
    verbose: bool,
    as_json: bool,
) -> None:
    """Send MESSAGE to the agent and stream its events."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    try:
        config = load_config(config_path, required=config_path is not None)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    store = FileSessionStore(config.store.path)
    session_id = session_id or uuid.uuid4().hex[:12]
    if store.get_session(session_id) is None:
        try:
            store.create_session(
                session_id,
                working_directory=str((working_directory or Path.cwd()).resolve()),
                model=model or config.model,
            )
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
        if not as_json:
            click.echo(click.style(f"Session {session_id}", dim=True), err=True)

    try:
        ok = asyncio.run(
            _stream_session(
                store,
                config,
                session_id,
                message,
                working_directory=working_directory,
                model=model,
                team_mode=team_mode,
                as_json=as_json,
            )
        )
    except TeamstreamError as exc:
        raise click.ClickException(str(exc)) from exc

    if not ok:
        sys.exit(1)


async def _stream_session(
    store: FileSessionStore,
    config: TeamstreamConfig,
    session_id: str,
    message: str,
    *,
    working_directory: Path | None,
    model: str | None,
    team_mode: bool | None,
    as_json: bool,
) -> bool:
    """Stream one session to stdout.  Returns ``False`` if an error event was seen."""
    orchestrator = Orchestrator(store, config)
    stream = await orchestrator.start(
        session_id,
        message,
        working_directory=working_directory,
        model=model,
        team_mode=team_mode,
    )

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, stream.cancel)

    ok = True
    cancelled = False
    try:
        async for event in stream:
            if isinstance(event, ErrorEvent):
                ok = False
            if as_json:
                click.echo(json.dumps(event.to_wire(), ensure_ascii=False))
            else:
                _render(event)
            if isinstance(event, PermissionRequestEvent):
                await _ask_permission(orchestrator, stream, event, as_json=as_json)
        cancelled = stream.cancelled
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await orchestrator.shutdown()

    if cancelled and not as_json:
        click.echo(click.style("\nCancelled.", fg="yellow"), err=True)
    return ok


async def _ask_permission(
    orchestrator: Orchestrator,
    stream: SessionStream,
    event: PermissionRequestEvent,
    *,
    as_json: bool,
) -> None:
    payload = event.data
    prompt = f"Allow {payload.tool_name}?"
    if payload.blocked_path:
        prompt = f"Allow {payload.tool_name} on {payload.blocked_path}?"

    # click.confirm blocks; keep the event loop (and the agent) serviced.
    allowed = await asyncio.to_thread(click.confirm, prompt, default=False, err=as_json)
    if stream.cancelled:
        return
    decision = AllowDecision() if allowed else DenyDecision(message="Denied from the command line")
    orchestrator.respond_permission(
        PermissionResponse(
            permission_request_id=payload.permission_request_id,
            decision=decision,
        )
    )


# ------------------------------------------------------------------ #
# Human-readable rendering
# ------------------------------------------------------------------ #


def _preview(value: object) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    text = text.replace("\n", " ")
    if len(text) > _PREVIEW_CHARS:
        return text[:_PREVIEW_CHARS] + "…"
    return text


def _render(event: ClientEvent) -> None:
    if isinstance(event, TextEvent):
        click.echo(event.data, nl=False)
    elif isinstance(event, ThinkingEvent):
        click.echo(click.style(event.data, dim=True, italic=True))
    elif isinstance(event, StatusEvent):
        data = event.data
        if isinstance(data, NotificationPayload):
            click.echo(click.style(f"[{data.title}] {data.message}", fg="cyan"), err=True)
        elif isinstance(data, CompactingPayload):
            click.echo(click.style("[compacting context]", dim=True), err=True)
        else:
            click.echo(
                click.style(f"[agent ready: {data.model or 'default model'}]", dim=True),
                err=True,
            )
    elif isinstance(event, ToolUseEvent):
        click.echo(
            click.style(f"\n→ {event.data.name} ", fg="cyan")
            + _preview(event.data.input)
        )
    elif isinstance(event, ToolResultEvent):
        colour = "red" if event.data.is_error else "green"
        click.echo(click.style("  ← ", fg=colour) + _preview(event.data.content))
    elif isinstance(event, ToolOutputEvent):
        if isinstance(event.data, str):
            click.echo(click.style(event.data, dim=True), err=True)
    elif isinstance(event, PermissionRequestEvent):
        click.echo(
            click.style(f"\n? {event.data.tool_name} ", fg="yellow")
            + _preview(event.data.tool_input)
        )
    elif isinstance(event, TaskNotificationEvent):
        data = event.data
        click.echo(click.style(f"[task {data.task_id}] {data.status}: {data.summary}", fg="magenta"))
    elif isinstance(event, ResultEvent):
        data = event.data
        parts = [data.subtype]
        if data.num_turns is not None:
            parts.append(f"{data.num_turns} turns")
        if data.duration_ms is not None:
            parts.append(f"{data.duration_ms / 1000:.1f}s")
        if data.usage is not None and data.usage.cost_usd is not None:
            parts.append(f"${data.usage.cost_usd:.4f}")
        colour = "red" if data.is_error else "green"
        click.echo(click.style(f"\n[{', '.join(parts)}]", fg=colour), err=True)
    elif isinstance(event, ErrorEvent):
        click.echo(click.style(f"Error: {event.data}", fg="red"), err=True)
