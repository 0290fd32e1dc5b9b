"""CLI commands for feedback-bridge."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from feedback_bridge import __brand__, __logo__, __version__
from feedback_bridge.errors import FeedbackBridgeError

app = typer.Typer(
    name="feedback-bridge",
    help=f"{__logo__} {__brand__} - Slack feedback loop for autonomous agents",
    no_args_is_help=True,
)

console = Console()


def _cli_fail(cause: str, fix: str | None = None, *, exit_code: int = 1) -> None:
    """Print a consistent CLI error block and exit."""
    console.print(f"[red]{cause}[/red]")
    if fix:
        console.print(f"[dim]Fix: {fix}[/dim]")
    raise typer.Exit(exit_code)


def _load_config():
    from feedback_bridge.config.loader import load_config
    from feedback_bridge.utils.logs import configure_logging

    config = load_config()
    configure_logging(config.logging.level, config.logging.file or None)
    return config


def _sessions_path() -> Path:
    from feedback_bridge.config.loader import get_data_dir

    return get_data_dir() / "sessions.json"


def _session_manager(config: Any):
    from feedback_bridge.session.manager import SessionManager
    from feedback_bridge.session.store import SessionStore

    manager = SessionManager(
        SessionStore(_sessions_path()),
        port_range=(config.webhook.port_min, config.webhook.port_max),
        health_initial_delay=config.cadence.health_initial_delay,
    )
    manager.init()
    return manager


def _run_bridge(config: Any, operation, *, authenticate: bool = True):
    """Build a bridge, run ``operation(bridge)`` on a fresh loop and clean up."""
    from feedback_bridge.bridge import FeedbackBridge
    from feedback_bridge.config.loader import get_config_path

    async def run():
        bridge = FeedbackBridge.from_config(config, sessions_path=_sessions_path())
        try:
            if authenticate:
                await bridge.start()
            return await operation(bridge)
        finally:
            await bridge.close()

    try:
        return asyncio.run(run())
    except FeedbackBridgeError as e:
        fix = None
        if not config.slack.bot_token:
            fix = f"Set slack.bot_token in {get_config_path()} or FEEDBACK_BRIDGE_SLACK__BOT_TOKEN"
        _cli_fail(str(e), fix)


def _format_age(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    seconds = int((datetime.now(timezone.utc) - value).total_seconds())
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    return f"{seconds // 3600}h ago"


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} {__brand__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
):
    """feedback-bridge - Slack feedback loop for autonomous agents."""
    pass


@app.command()
def version():
    """Show version."""
    console.print(f"{__logo__} {__brand__} v{__version__}")


# ============================================================================
# Sessions
# ============================================================================


@app.command()
def new(
    user: str = typer.Option(..., "--user", "-u", help="Slack user id of the human"),
    channel: str = typer.Option("", "--channel", "-c", help="Slack channel id for this session"),
    label: str = typer.Option("", "--label", "-l", help="Free-form session label"),
):
    """Create a session and make it current."""
    config = _load_config()
    manager = _session_manager(config)
    session = manager.create_session(user, channel)
    changes: dict[str, Any] = {"channel_name": manager.channel_name(user, session.session_id)}
    if label:
        changes["label"] = label
    session = manager.update_session(session.session_id, **changes)
    console.print(f"[green]✓[/green] Session {session.session_id} created")
    console.print(f"  Channel name: {session.channel_name}")
    console.print(f"  Webhook port: {session.port}")
    console.print(f"  Mode: {session.mode.value}")


@app.command()
def sessions(
    user: str = typer.Option("", "--user", "-u", help="Only sessions of this user"),
):
    """List active sessions."""
    config = _load_config()
    manager = _session_manager(config)
    items = manager.get_user_sessions(user) if user else manager.get_active_sessions()
    if not items:
        console.print("No active sessions.")
        return

    table = Table(title="Active Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("User")
    table.add_column("Channel")
    table.add_column("Mode", style="green")
    table.add_column("Port")
    table.add_column("Last Activity")
    for session in sorted(items, key=lambda s: s.last_activity, reverse=True):
        table.add_row(
            session.session_id,
            session.user_id,
            session.channel_name or session.channel_id or "-",
            session.mode.value,
            str(session.port),
            _format_age(session.last_activity),
        )
    console.print(table)


@app.command()
def status(
    session_id: str = typer.Option("", "--session", "-s", help="Session id (default: most recent)"),
):
    """Show delivery status of a session."""
    config = _load_config()
    manager = _session_manager(config)
    try:
        session = manager.resolve_session(session_id or None)
    except FeedbackBridgeError as e:
        _cli_fail(str(e))

    table = Table(title=f"Session {session.session_id}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Mode", session.mode.value)
    table.add_row("Label", session.label or "-")
    table.add_row("Contact", session.contact or "[dim]not set[/dim]")
    table.add_row("Channel", session.channel_name or session.channel_id or "-")
    table.add_row("Webhook port", str(session.port))
    table.add_row("Tunnel", session.tunnel_url or "[dim]not configured[/dim]")
    table.add_row("Last thread", session.last_thread_ts or "-")
    table.add_row("Reply source", "relay" if config.relay.enabled and config.relay.url else "slack")
    table.add_row("Health check interval", f"{session.hybrid_config.health_check_interval:.0f}s")
    table.add_row("Fallback after", f"{session.hybrid_config.fallback_after_failures} failures")
    table.add_row("Last activity", _format_age(session.last_activity))
    console.print(table)


@app.command()
def end(
    session_id: str = typer.Argument(..., help="Session id to end"),
):
    """End a session and clear its pending replies (relay included)."""
    config = _load_config()

    async def operation(bridge):
        return await bridge.end_session(session_id)

    session = _run_bridge(config, operation, authenticate=False)
    console.print(f"[green]✓[/green] Session {session.session_id} ended")


@app.command()
def contact(
    who: str = typer.Argument(..., help="Slack user id, username, or 'here' for @here"),
    session_id: str = typer.Option("", "--session", "-s", help="Session id (default: most recent)"),
):
    """Set who is mentioned in questions and status posts."""
    config = _load_config()
    manager = _session_manager(config)
    try:
        session = manager.resolve_session(session_id or None)
        session = manager.set_contact(session.session_id, who)
    except FeedbackBridgeError as e:
        _cli_fail(str(e))
    console.print(f"[green]✓[/green] Session {session.session_id} will mention {session.contact}")


@app.command()
def tunnel(
    url: str = typer.Argument(..., help="Public base URL that forwards to the webhook port"),
    session_id: str = typer.Option("", "--session", "-s", help="Session id (default: most recent)"),
):
    """Attach a public tunnel URL so webhook and hybrid modes become available."""
    config = _load_config()
    manager = _session_manager(config)
    try:
        session = manager.resolve_session(session_id or None)
        base = url.rstrip("/")
        manager.attach_webhook(session.session_id, f"{base}/slack/events", base)
    except FeedbackBridgeError as e:
        _cli_fail(str(e))
    console.print(f"[green]✓[/green] Events URL: {base}/slack/events")
    console.print(f"[green]✓[/green] Interactivity URL: {base}/slack/interactive")


@app.command()
def mode(
    target: str = typer.Argument(..., help="webhook | polling | hybrid"),
    session_id: str = typer.Option("", "--session", "-s", help="Session id (default: most recent)"),
):
    """Change a session's delivery mode."""
    from feedback_bridge.session.models import DeliveryMode

    try:
        requested = DeliveryMode(target.strip().lower())
    except ValueError:
        _cli_fail(f"Unknown mode '{target}'.", "Use one of: webhook, polling, hybrid")

    config = _load_config()
    manager = _session_manager(config)

    async def run():
        # Monitors need a running loop even though this process exits right away.
        try:
            session = manager.resolve_session(session_id or None)
            return manager.set_mode(session.session_id, requested, reason="cli")
        finally:
            manager.shutdown()

    try:
        change = asyncio.run(run())
    except FeedbackBridgeError as e:
        fix = "Run `feedback-bridge tunnel <url>` first." if requested.needs_tunnel else None
        _cli_fail(str(e), fix)

    if change.changed:
        console.print(
            f"[green]✓[/green] Session {change.session_id}: {change.previous.value} -> {change.current.value}"
        )
    else:
        console.print(f"Session {change.session_id} already in {change.current.value} mode")


@app.command("configure")
def configure_session(
    session_id: str = typer.Option("", "--session", "-s", help="Session id (default: most recent)"),
    webhook_timeout: float = typer.Option(None, "--webhook-timeout", help="Webhook head start (seconds)"),
    fallback_after: int = typer.Option(None, "--fallback-after", help="Failures before falling back"),
    health_interval: float = typer.Option(None, "--health-interval", help="Health check interval (>=30s)"),
    normal_interval: float = typer.Option(None, "--normal-interval", help="Idle-ping interval when active"),
    max_interval: float = typer.Option(None, "--max-interval", help="Idle-ping interval cap"),
):
    """Tune polling and hybrid settings of a session."""
    config = _load_config()
    manager = _session_manager(config)
    hybrid = {
        key: value
        for key, value in {
            "webhook_timeout": webhook_timeout,
            "fallback_after_failures": fallback_after,
            "health_check_interval": health_interval,
        }.items()
        if value is not None
    }
    polling = {
        key: value
        for key, value in {"normal_interval": normal_interval, "max_interval": max_interval}.items()
        if value is not None
    }
    if not hybrid and not polling:
        _cli_fail("Nothing to change.", "Pass at least one option, see --help")

    async def run():
        try:
            session = manager.resolve_session(session_id or None)
            if hybrid:
                manager.configure_hybrid(session.session_id, **hybrid)
            if polling:
                manager.configure_polling(session.session_id, **polling)
            return manager.get_session(session.session_id)
        finally:
            manager.shutdown()

    try:
        session = asyncio.run(run())
    except FeedbackBridgeError as e:
        _cli_fail(str(e))
    console.print(f"[green]✓[/green] Session {session.session_id} updated")


# ============================================================================
# Agent operations
# ============================================================================


async def _with_listener(bridge: Any, session_id: str | None) -> None:
    session = bridge.sessions.resolve_session(session_id)
    if session.mode.uses_webhook:
        await bridge.start_listener(session.session_id)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to post"),
    timeout: float = typer.Option(0, "--timeout", "-t", help="Seconds to wait (0 = until answered)"),
    session_id: str = typer.Option("", "--session", "-s", help="Session id (default: most recent)"),
):
    """Post a question and wait for the human's reply."""
    config = _load_config()

    async def operation(bridge):
        await _with_listener(bridge, session_id or None)
        result = await bridge.ask_feedback(
            question, session_id=session_id or None, timeout_seconds=timeout
        )
        return bridge.format_responses(result, timeout)

    text = _run_bridge(config, operation)
    console.print(text)


@app.command()
def inform(
    message: str = typer.Argument(..., help="Status message to post"),
    session_id: str = typer.Option("", "--session", "-s", help="Session id (default: most recent)"),
):
    """Post a status update and watch briefly for objections."""
    config = _load_config()

    async def operation(bridge):
        await _with_listener(bridge, session_id or None)
        result = await bridge.inform(message, session_id=session_id or None)
        return bridge.format_responses(result)

    text = _run_bridge(config, operation)
    console.print(text)


@app.command()
def progress(
    message: str = typer.Argument(..., help="Progress note for the current thread"),
    session_id: str = typer.Option("", "--session", "-s", help="Session id (default: most recent)"),
    thread: str = typer.Option("", "--thread", help="Thread ts (default: last thread)"),
):
    """Post a progress note without waiting."""
    config = _load_config()

    async def operation(bridge):
        return await bridge.update_progress(
            message, session_id=session_id or None, thread_ts=thread or None
        )

    ts = _run_bridge(config, operation)
    console.print(f"[green]✓[/green] Posted ({ts})")


@app.command()
def responses(
    session_id: str = typer.Option("", "--session", "-s", help="Session id (default: most recent)"),
    thread: str = typer.Option("", "--thread", help="Thread ts (default: last thread)"),
):
    """Fetch replies that have not been consumed yet."""
    config = _load_config()

    async def operation(bridge):
        return await bridge.get_responses(session_id=session_id or None, thread_ts=thread or None)

    found = _run_bridge(config, operation)
    if not found:
        console.print("No new responses.")
        return
    for item in found:
        console.print(f"<@{item.user_id}>: {item.response}")


if __name__ == "__main__":
    app()
