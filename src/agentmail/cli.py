"""Command-line interface for agents running in tmux windows."""

from __future__ import annotations

import asyncio
import sys
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from .cleanup import CleanupOptions
from .config import get_settings
from .daemon import (
    LeaseFile,
    LeaseState,
    Mailman,
    is_daemon_child,
    spawn_background,
    stop_daemon,
)
from .errors import (
    AgentMailError,
    InvalidStatusError,
    RecipientNotFoundError,
    SessionUnavailableError,
    SingletonConflictError,
)
from .layout import StateLayout, resolve_root
from .logging_setup import configure_logging
from .service import AgentMail
from .windows import TmuxWindows, WindowCollaborator

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(help="File-backed mail between agents sharing a tmux session.", no_args_is_help=True)
mailman_app = typer.Typer(help="Run and control the notification daemon")
app.add_typer(mailman_app, name="mailman")

NOT_IN_SESSION = "error: agentmail must run inside a tmux session"


def build_windows() -> WindowCollaborator:
    return TmuxWindows()


def build_service() -> AgentMail:
    return AgentMail.from_settings(get_settings(), windows=build_windows())


def _fail(message: str, code: int = 1) -> typer.Exit:
    err_console.print(message, markup=False, highlight=False, soft_wrap=True)
    return typer.Exit(code=code)


@app.callback()
def main() -> None:
    configure_logging(get_settings())


def _read_stdin_message() -> Optional[str]:
    if sys.stdin is None or sys.stdin.isatty():
        return None
    return sys.stdin.read()


@app.command("send")
def send(
    recipient: Annotated[str, typer.Argument(help="Window name of the recipient.")],
    message: Annotated[Optional[str], typer.Argument(help="Message text; read from stdin when omitted.")] = None,
) -> None:
    """Send a message to another agent."""
    if message is None:
        message = _read_stdin_message()
    if not message:
        raise _fail("error: missing required argument: message")
    service = build_service()
    try:
        message_id = service.send(recipient, message)
    except SessionUnavailableError:
        raise _fail(NOT_IN_SESSION, code=2) from None
    except RecipientNotFoundError:
        raise _fail("error: recipient not found") from None
    except AgentMailError as exc:
        raise _fail(f"error: {exc}") from None
    typer.echo(f"Message #{message_id} sent")


@app.command("receive")
def receive(
    hook: Annotated[
        bool,
        typer.Option("--hook", help="Hook mode: print to stderr and exit 2 when a message is available."),
    ] = False,
) -> None:
    """Read the oldest unread message and mark it read."""
    service = build_service()
    try:
        message = service.receive()
    except SessionUnavailableError:
        if hook:
            raise typer.Exit(code=0) from None
        raise _fail(NOT_IN_SESSION, code=2) from None
    except AgentMailError as exc:
        if hook:
            raise typer.Exit(code=0) from None
        raise _fail(f"error: {exc}") from None
    if message is None:
        if not hook:
            typer.echo("No unread messages")
        return
    text = f"From: {message.sender}\nID: {message.id}\n\n{message.body}"
    if hook:
        typer.echo(text, err=True)
        raise typer.Exit(code=2)
    typer.echo(text)


@app.command("status")
def status(
    value: Annotated[str, typer.Argument(metavar="STATUS", help="ready, work or offline")],
) -> None:
    """Set this agent's availability. Outside tmux this does nothing."""
    try:
        build_service().set_status(value)
    except InvalidStatusError as exc:
        raise _fail(str(exc)) from None
    except AgentMailError as exc:
        raise _fail(f"error: failed to update status: {exc}") from None


@app.command("recipients")
def recipients() -> None:
    """List agents that can be messaged."""
    try:
        listings = build_service().list_recipients()
    except SessionUnavailableError:
        raise _fail("error: not running inside a tmux session", code=2) from None
    except AgentMailError as exc:
        raise _fail(f"error: {exc}") from None
    for listing in listings:
        typer.echo(f"{listing.name} [you]" if listing.is_self else listing.name)


@app.command("onboard")
def onboard() -> None:
    """Print a short AgentMail primer for the current agent."""
    service = build_service()
    try:
        listings = service.list_recipients()
    except AgentMailError:
        # Silent for session-start hooks
        return
    me = next((listing.name for listing in listings if listing.is_self), "")
    others = [listing.name for listing in listings if not listing.is_self]
    example = others[0] if others else "agent2"
    lines = [
        "## AgentMail",
        "",
        f"You are **{me}**. AgentMail enables inter-agent communication within this tmux session.",
        "",
        f"Other agents: {', '.join(others)}" if others else "No other agents currently available.",
        "",
        "### Commands",
        "",
        "**send** - Send a message to another agent",
        "```",
        'agentmail send <recipient> "<message>"',
        "```",
        "Example:",
        "```",
        f'agentmail send {example} "Hello, are you available?"',
        "```",
        "",
        "**receive** - Read the oldest unread message from your mailbox",
        "```",
        "agentmail receive",
        "```",
        'Returns "No unread messages" if mailbox is empty.',
        "",
        "**recipients** - List all agents you can message",
        "```",
        "agentmail recipients",
        "```",
        "Shows all tmux windows. Your window is marked with [you].",
    ]
    typer.echo("\n".join(lines))


@app.command("cleanup")
def cleanup(
    stale_hours: Annotated[
        Optional[float], typer.Option("--stale-hours", help="Remove recipients not updated for this long.")
    ] = None,
    delivered_hours: Annotated[
        Optional[float], typer.Option("--delivered-hours", help="Remove read messages older than this.")
    ] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Report what would be removed.")] = False,
) -> None:
    """Remove offline and stale recipients, old read messages and empty mailboxes."""
    settings = get_settings()
    defaults = CleanupOptions.from_settings(settings.cleanup, dry_run=dry_run)
    options = CleanupOptions(
        stale_hours=defaults.stale_hours if stale_hours is None else stale_hours,
        delivered_hours=defaults.delivered_hours if delivered_hours is None else delivered_hours,
        dry_run=dry_run,
        lock_timeout_seconds=defaults.lock_timeout_seconds,
    )
    if options.stale_hours < 0 or options.delivered_hours < 0:
        raise _fail("error: thresholds must not be negative")
    try:
        result = build_service().cleanup(options)
    except AgentMailError as exc:
        raise _fail(f"error: {exc}") from None
    for warning in result.warnings:
        err_console.print(warning, markup=False, highlight=False, soft_wrap=True)

    table = Table(title="Cleanup (dry run)" if dry_run else "Cleanup")
    table.add_column("Item")
    table.add_column("Count", justify="right")
    table.add_row("Recipients removed", str(result.recipients_removed))
    table.add_row("  offline", str(result.offline_removed))
    table.add_row("  stale", str(result.stale_removed))
    table.add_row("Messages removed", str(result.messages_removed))
    table.add_row("Mailboxes removed", str(result.mailboxes_removed))
    table.add_row("Files skipped", str(result.files_skipped))
    console.print(table)


def _layout() -> StateLayout:
    return StateLayout(resolve_root(get_settings()))


def run_mailman(layout: StateLayout) -> None:
    service = AgentMail(layout, build_windows(), settings=get_settings())
    mailman = Mailman(layout, service.registry, service.mailbox, service.windows, service.settings.mailman)
    asyncio.run(mailman.run())


@mailman_app.command("start")
def mailman_start(
    daemon: Annotated[bool, typer.Option("--daemon", "-d", help="Run detached in the background.")] = False,
) -> None:
    """Start the notification daemon."""
    layout = _layout()
    lease = LeaseFile(layout)
    state, current = lease.state()
    if state is LeaseState.RUNNING and current is not None:
        raise _fail(f"error: mailman daemon already running (PID: {current.pid})", code=2)
    if state is LeaseState.STALE:
        err_console.print("Warning: Stale PID file found, cleaning up", markup=False, soft_wrap=True)
        lease.discard_stale()
    if daemon and not is_daemon_child():
        pid = spawn_background(layout.root)
        typer.echo(f"Mailman daemon started in background (PID: {pid})")
        return
    typer.echo(f"Mailman daemon started (PID: {lease.pid})")
    try:
        run_mailman(layout)
    except SingletonConflictError as exc:
        raise _fail(f"error: {exc}", code=2) from None


@mailman_app.command("stop")
def mailman_stop() -> None:
    """Stop the daemon that holds the lease."""
    pid = stop_daemon(LeaseFile(_layout()))
    if pid is None:
        raise _fail("error: mailman daemon is not running")
    typer.echo(f"Mailman daemon stopped (PID: {pid})")


@mailman_app.command("status")
def mailman_status() -> None:
    """Report whether the daemon is running."""
    lease = LeaseFile(_layout())
    state, current = lease.state()
    if state is LeaseState.RUNNING and current is not None:
        since = f" since {current.acquired_at.isoformat()}" if current.acquired_at else ""
        console.print(f"[green]running[/] (PID: {current.pid}){since}")
    elif state is LeaseState.STALE and current is not None:
        console.print(f"[yellow]stale[/] lease (PID: {current.pid} is not alive)")
    else:
        console.print("[dim]not running[/]")
