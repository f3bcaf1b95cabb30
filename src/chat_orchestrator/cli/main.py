"""
CLI interface for Chat Orchestrator.

This module provides a developer console over the ConversationManager using
Typer, with support for:
- Single exchanges and an interactive REPL in a chosen scope
- Provider listing with availability
- Session administration (list, new, switch, rename, delete)
- Rich output formatting
"""

import asyncio
import functools
import logging
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chat_orchestrator.config.settings import config_manager, get_settings
from chat_orchestrator.core.errors import SessionError
from chat_orchestrator.core.models import Scope
from chat_orchestrator.orchestration import ConversationManager, HandleResult, ProviderRegistry

# Initialize CLI components
app = typer.Typer(
    name="chat-orchestrator",
    help="Scoped LLM conversations with provider fallback and history optimization",
    no_args_is_help=True,
)
sessions_app = typer.Typer(help="Manage the sessions of a scope", no_args_is_help=True)
app.add_typer(sessions_app, name="sessions")
console = Console()

EXIT_COMMANDS = {"exit", "quit", ":q"}


class CLIError(Exception):
    """User-friendly CLI error."""

    def __init__(self, message: str, exit_code: int = 1):
        self.message = message
        self.exit_code = exit_code
        super().__init__(message)


def setup_logging(level: str) -> None:
    """Log to stderr so replies on stdout stay clean."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def run_async(coro):
    """Run async coroutine in sync context."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    # Already inside a loop (e.g. under a test runner): use a worker thread
    import concurrent.futures

    with concurrent.futures.ThreadPoolExecutor() as executor:
        return executor.submit(asyncio.run, coro).result()


def handle_cli_error(func):
    """Decorator to handle CLI errors gracefully."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CLIError as e:
            console.print(f"[red]Error:[/red] {e.message}")
            raise typer.Exit(e.exit_code) from None
        except SessionError as e:
            console.print(f"[red]Error:[/red] {e.message}")
            raise typer.Exit(1) from None
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            raise typer.Exit(130) from None
        except typer.Exit:
            raise
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {str(e)}")
            console.print("[dim]Use --help for usage information[/dim]")
            raise typer.Exit(1) from e

    return wrapper


def build_scope(server: str | None, channel: str | None, user: str | None) -> Scope:
    try:
        return Scope(server_id=server, channel_id=channel, user_id=user)
    except ValueError as e:
        raise CLIError("A scope needs at least one of --server, --channel or --user") from e


@app.callback()
def main(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="YAML configuration file", exists=True, dir_okay=False
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override the log level"),
):
    """Chat Orchestrator developer console."""
    settings = config_manager.load_configuration(config_path=config)
    setup_logging(log_level or settings.log_level)


def display_reply(result: HandleResult) -> None:
    """Display the outcome of one message."""
    if result.skipped:
        console.print("[yellow]Skipped:[/yellow] a message for this scope is still in flight")
        return
    if result.error is not None:
        console.print(
            Panel(result.reply or "", title="Error", border_style="red", title_align="left")
        )
        console.print(f"[dim]{type(result.error).__name__}: {result.error}[/dim]")
        return

    footer = f"via {result.provider}"
    if result.optimization_enqueued:
        footer += " | history optimization scheduled"
    console.print(
        Panel(
            result.reply or "",
            title="Assistant",
            subtitle=footer,
            border_style="blue",
            title_align="left",
        )
    )


async def execute_chat(scope: Scope, text: str, provider: str | None) -> HandleResult:
    async with ConversationManager() as manager:
        result = await manager.handle_message(scope, scope.user_id, text, provider=provider)
        # Let a scheduled pass finish before the process exits
        await manager.queue.join()
        return result


@app.command("chat")
@handle_cli_error
def chat_command(
    text: str = typer.Argument(..., help="Message to send"),
    server: str | None = typer.Option(None, "--server", "-s", help="Server identifier"),
    channel: str | None = typer.Option(None, "--channel", help="Channel identifier"),
    user: str | None = typer.Option("local", "--user", "-u", help="User identifier"),
    provider: str | None = typer.Option(
        None, "--provider", "-p", help="Provider to try first"
    ),
):
    """Send one message in a scope and print the reply."""
    scope = build_scope(server, channel, user)
    with console.status("[bold blue]Waiting for reply..."):
        result = run_async(execute_chat(scope, text, provider))
    display_reply(result)
    if result.error is not None:
        raise typer.Exit(1)


async def execute_repl(scope: Scope, provider: str | None) -> None:
    async with ConversationManager() as manager:
        session = await manager.sessions.get_or_create_active(scope)
        console.print(
            Panel.fit(
                f"[bold]Scope:[/bold] {scope}\n"
                f"[bold]Session:[/bold] {session.name} ({session.id[:8]})\n"
                f"[dim]Type 'exit' to quit[/dim]",
                border_style="blue",
            )
        )
        while True:
            text = await asyncio.to_thread(console.input, "[bold green]you>[/bold green] ")
            text = text.strip()
            if not text:
                continue
            if text.lower() in EXIT_COMMANDS:
                break
            with console.status("[bold blue]Waiting for reply..."):
                result = await manager.handle_message(scope, scope.user_id, text, provider)
            display_reply(result)
        await manager.queue.join()


@app.command("repl")
@handle_cli_error
def repl_command(
    server: str | None = typer.Option(None, "--server", "-s", help="Server identifier"),
    channel: str | None = typer.Option(None, "--channel", help="Channel identifier"),
    user: str | None = typer.Option("local", "--user", "-u", help="User identifier"),
    provider: str | None = typer.Option(
        None, "--provider", "-p", help="Provider to try first"
    ),
):
    """Start an interactive conversation in a scope."""
    scope = build_scope(server, channel, user)
    try:
        run_async(execute_repl(scope, provider))
    except EOFError:
        console.print()


@app.command("providers")
@handle_cli_error
def providers_command():
    """List configured providers and whether they can be used."""
    settings = get_settings()
    registry = ProviderRegistry.from_settings(settings)

    table = Table(title="Providers", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Default Model", style="white")
    table.add_column("Context", style="green", justify="right")
    table.add_column("Available", justify="center")
    table.add_column("Role", style="yellow")

    for name in registry.names:
        provider = registry.resolve(name)
        roles = []
        if name == registry.default_provider:
            roles.append("default")
        if name in registry.fallback_order:
            roles.append(f"fallback #{registry.fallback_order.index(name) + 1}")
        table.add_row(
            name,
            provider.default_model or "-",
            f"{provider.max_context_tokens:,}",
            "[green]yes[/green]" if provider.is_available() else "[red]no[/red]",
            ", ".join(roles),
        )

    console.print(table)
    if not registry.fallback_enabled:
        console.print("[dim]Fallback is disabled[/dim]")


async def _list_sessions(scope: Scope):
    async with ConversationManager() as manager:
        return await manager.sessions.list_sessions(scope)


@sessions_app.command("list")
@handle_cli_error
def sessions_list_command(
    server: str | None = typer.Option(None, "--server", "-s", help="Server identifier"),
    channel: str | None = typer.Option(None, "--channel", help="Channel identifier"),
    user: str | None = typer.Option("local", "--user", "-u", help="User identifier"),
):
    """List the sessions of a scope."""
    scope = build_scope(server, channel, user)
    sessions = run_async(_list_sessions(scope))
    if not sessions:
        console.print(f"[dim]No sessions for scope {scope}[/dim]")
        return

    table = Table(title=f"Sessions of {scope}", show_header=True, header_style="bold magenta")
    table.add_column("", justify="center")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Messages", justify="right")
    table.add_column("Tokens", style="green", justify="right")
    table.add_column("Last Activity", style="dim")

    for session in sessions:
        table.add_row(
            "*" if session.is_active else "",
            session.id,
            session.name,
            str(session.message_count),
            f"{session.context_tokens + session.estimated_tokens:,}",
            session.last_activity_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


async def _new_session(scope: Scope, name: str):
    async with ConversationManager() as manager:
        return await manager.sessions.create_session(scope, name)


@sessions_app.command("new")
@handle_cli_error
def sessions_new_command(
    name: str = typer.Argument(..., help="Session name"),
    server: str | None = typer.Option(None, "--server", "-s", help="Server identifier"),
    channel: str | None = typer.Option(None, "--channel", help="Channel identifier"),
    user: str | None = typer.Option("local", "--user", "-u", help="User identifier"),
):
    """Create a session and make it active."""
    scope = build_scope(server, channel, user)
    session = run_async(_new_session(scope, name))
    console.print(f"[green]Created session[/green] {session.name} ({session.id})")


async def _switch_session(scope: Scope, session_id: str):
    async with ConversationManager() as manager:
        return await manager.sessions.switch_session(scope, session_id)


@sessions_app.command("switch")
@handle_cli_error
def sessions_switch_command(
    session_id: str = typer.Argument(..., help="Session to activate"),
    server: str | None = typer.Option(None, "--server", "-s", help="Server identifier"),
    channel: str | None = typer.Option(None, "--channel", help="Channel identifier"),
    user: str | None = typer.Option("local", "--user", "-u", help="User identifier"),
):
    """Make another session of the scope active."""
    scope = build_scope(server, channel, user)
    session = run_async(_switch_session(scope, session_id))
    console.print(f"[green]Active session:[/green] {session.name} ({session.id})")


async def _rename_session(session_id: str, name: str):
    async with ConversationManager() as manager:
        return await manager.sessions.rename_session(session_id, name)


@sessions_app.command("rename")
@handle_cli_error
def sessions_rename_command(
    session_id: str = typer.Argument(..., help="Session to rename"),
    name: str = typer.Argument(..., help="New name"),
):
    """Rename a session."""
    session = run_async(_rename_session(session_id, name))
    console.print(f"[green]Renamed session[/green] {session.id} to {session.name}")


async def _delete_session(scope: Scope, session_id: str):
    async with ConversationManager() as manager:
        return await manager.sessions.delete_session(scope, session_id)


@sessions_app.command("delete")
@handle_cli_error
def sessions_delete_command(
    session_id: str = typer.Argument(..., help="Session to delete"),
    server: str | None = typer.Option(None, "--server", "-s", help="Server identifier"),
    channel: str | None = typer.Option(None, "--channel", help="Channel identifier"),
    user: str | None = typer.Option("local", "--user", "-u", help="User identifier"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a session and its messages."""
    scope = build_scope(server, channel, user)
    if not yes:
        if not typer.confirm(f"Delete session {session_id}?"):
            raise typer.Exit(0)
    active = run_async(_delete_session(scope, session_id))
    console.print(f"[green]Deleted.[/green] Active session: {active.name} ({active.id})")


if __name__ == "__main__":
    app()
