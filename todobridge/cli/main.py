"""Command-line interface for TodoBridge."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Annotated, Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from todobridge import __version__
from todobridge.core.config import AppConfig, load_config
from todobridge.core.engine import DisabledSyncEngine, TodoSyncEngine, create_engine
from todobridge.core.exceptions import TodoBridgeError
from todobridge.core.models import SyncAction
from todobridge.utils.logging import setup_logging
from todobridge.utils.settings_db import get_config_path, set_config_path

T = TypeVar("T")

# Create Typer app
app = typer.Typer(
    name="todobridge",
    help="Synchronize dashboard tasks with Microsoft To Do",
    add_completion=False,
)

# Create console for rich output
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
        exists=True,
        dir_okay=False,
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
) -> None:
    """TodoBridge - Sync dashboard tasks with Microsoft To Do."""
    ctx.ensure_object(dict)
    effective_config_path = config_file or get_config_path()

    cfg = load_config(effective_config_path)
    ctx.obj["config"] = cfg

    if config_file:
        set_config_path(config_file)

    setup_logging(cfg, level_name=log_level)


def _run_with_engine(
    cfg: AppConfig,
    action: Callable[[TodoSyncEngine], Awaitable[T]],
) -> T:
    """Build the engine, run one async action against it and close it."""
    engine = create_engine(cfg)
    if isinstance(engine, DisabledSyncEngine):
        console.print(f"[red]✗ Microsoft To Do sync is disabled: {engine.reason}[/red]")
        console.print("[dim]Set microsoft.client_id and run `todobridge todo set-client-secret`[/dim]")
        raise typer.Exit(1)

    async def runner() -> T:
        await engine.initialize()
        try:
            return await action(engine)
        finally:
            await engine.aclose()

    try:
        return asyncio.run(runner())
    except TodoBridgeError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    import platform

    table = Table(title="TodoBridge Version Information")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", platform.python_version())
    table.add_row("Platform", platform.platform())

    console.print(table)


@app.command()
def config(
    ctx: typer.Context,
    show: bool = typer.Option(False, "--show", "-s", help="Show current configuration"),
    init: bool = typer.Option(False, "--init", "-i", help="Create a default configuration file"),
) -> None:
    """Manage configuration."""
    cfg: AppConfig = ctx.obj["config"]

    if init:
        config_path = cfg.default_config_path

        if config_path.exists():
            console.print(f"[yellow]Config file already exists:[/yellow] {config_path}")
            if not typer.confirm("Overwrite existing config?"):
                console.print("[dim]Config creation cancelled[/dim]")
                raise typer.Exit(0)

        cfg.save_to_file(config_path)
        set_config_path(config_path)
        console.print(f"[green]✓ Config file created:[/green] {config_path}")
        console.print("[yellow]Edit this file to configure the Microsoft app registration.[/yellow]")
        return

    if show:
        ms = cfg.microsoft
        table = Table(title="TodoBridge Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        table.add_row("Data Directory", str(cfg.general.data_dir))
        table.add_row("Config File", str(cfg.general.config_file or "Not set"))
        table.add_row("Log Level", cfg.general.log_level)

        table.add_row("", "")
        table.add_row("[bold]Microsoft[/bold]", "")
        table.add_row("Client ID", ms.client_id or "Not set")
        table.add_row("Client Secret", "✓ configured" if ms.get_client_secret() else "✗ missing")
        table.add_row("Tenant", ms.tenant)
        table.add_row("Redirect URI", ms.effective_redirect_uri)
        table.add_row("Webhook URL", ms.webhook_url or "Not set (polling only)")
        table.add_row("List Name", ms.list_name)
        table.add_row("Time Zone", ms.time_zone)

        table.add_row("", "")
        table.add_row("[bold]Sync[/bold]", "")
        table.add_row("Enabled", "✓" if cfg.sync.enabled else "✗")
        table.add_row("Poll Interval", f"{cfg.sync.poll_interval_minutes} min")
        table.add_row("Lease Renewal", f"every {cfg.sync.lease_renewal_interval_minutes} min")

        console.print(table)
    else:
        console.print(f"[yellow]Configuration file:[/yellow] {cfg.general.config_file or 'Not set'}")
        console.print(f"[yellow]Data directory:[/yellow] {cfg.general.data_dir}")
        console.print("\n[dim]Use --show to display full configuration[/dim]")
        console.print("[dim]Use --init to create a default config file[/dim]")


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", "-h", help="Host to bind to")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to bind to")] = 8000,
    reload: Annotated[bool, typer.Option("--reload", help="Enable auto-reload (development)")] = False,
) -> None:
    """Start the TodoBridge API server (webhook, OAuth callback and task events)."""
    import uvicorn

    console.print(Panel.fit(
        f"[bold cyan]TodoBridge API Server[/bold cyan]\n\n"
        f"[white]Starting server on {host}:{port}[/white]",
        border_style="cyan",
    ))

    try:
        console.print(f"[dim]API docs: http://{host}:{port}/api/docs[/dim]")
        console.print("[dim]Press Ctrl+C to stop[/dim]\n")
        uvicorn.run(
            "todobridge.api.app:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info",
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


# ============================================================================
# MICROSOFT TO DO COMMANDS
# ============================================================================

todo_app = typer.Typer(help="Manage Microsoft To Do synchronization")
app.add_typer(todo_app, name="todo")


def _print_stats(title: str, stats: dict) -> None:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green", justify="right")
    for key, value in stats.items():
        table.add_row(key.replace("_", " ").title(), str(value))
    console.print(table)


@todo_app.command("status")
def todo_status(
    ctx: typer.Context,
    user_id: Optional[str] = typer.Argument(None, help="Show a single user"),
) -> None:
    """Show linked Microsoft accounts."""
    cfg: AppConfig = ctx.obj["config"]

    async def collect(engine: TodoSyncEngine) -> list:
        if user_id:
            credential = await engine.credentials_db.get(user_id)
            return [credential] if credential else []
        return await engine.credentials_db.get_all()

    credentials = _run_with_engine(cfg, collect)
    if not credentials:
        console.print("[yellow]No linked Microsoft accounts[/yellow]")
        return

    table = Table(title="Microsoft To Do Accounts")
    table.add_column("User", style="cyan", no_wrap=True)
    table.add_column("Email")
    table.add_column("State")
    table.add_column("List")
    table.add_column("Webhook Expires")

    for credential in credentials:
        state = "[red]needs re-auth[/red]" if credential.is_invalid else "[green]connected[/green]"
        expires = credential.webhook_expires_at.strftime("%Y-%m-%d %H:%M") if credential.webhook_expires_at else "-"
        table.add_row(
            credential.user_id,
            credential.email or "-",
            state,
            "✓" if credential.remote_list_id else "-",
            expires,
        )

    console.print(table)


@todo_app.command("pull")
def todo_pull(ctx: typer.Context, user_id: str = typer.Argument(..., help="Local user id")) -> None:
    """Pull remote changes for one user."""
    stats = _run_with_engine(ctx.obj["config"], lambda engine: engine.pull_user(user_id))
    _print_stats(f"Pull for {user_id}", stats)


@todo_app.command("sync-all")
def todo_sync_all(ctx: typer.Context) -> None:
    """Run the polling pass over every linked account."""
    summary = _run_with_engine(ctx.obj["config"], lambda engine: engine.sync_all_users())

    table = Table(title="Poll Results")
    table.add_column("User", style="cyan")
    table.add_column("Updated", justify="right")
    table.add_column("Errors", justify="right")
    for user, result in summary.items():
        if isinstance(result, str):
            table.add_row(user, "-", f"[red]{result}[/red]")
        else:
            table.add_row(user, str(result.get("updated", 0)), str(result.get("errors", 0)))
    console.print(table)


@todo_app.command("renew-leases")
def todo_renew_leases(ctx: typer.Context) -> None:
    """Renew every webhook subscription."""
    stats = _run_with_engine(ctx.obj["config"], lambda engine: engine.renew_leases())
    _print_stats("Lease Renewal", stats)


@todo_app.command("push")
def todo_push(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Local task id"),
    action: SyncAction = typer.Option(SyncAction.UPDATE, "--action", "-a", help="create, update or delete"),
) -> None:
    """Push one task now and wait for the result."""
    result = _run_with_engine(ctx.obj["config"], lambda engine: engine.push_task(task_id, action))
    style = "red" if result.value == "failed" else "green"
    console.print(f"[{style}]Task {task_id}: {result.value}[/{style}]")


@todo_app.command("initial-sync")
def todo_initial_sync(ctx: typer.Context, user_id: str = typer.Argument(..., help="Local user id")) -> None:
    """Push a user's existing tasks to their To Do list."""
    stats = _run_with_engine(ctx.obj["config"], lambda engine: engine.initial_sync(user_id))
    _print_stats(f"Initial sync for {user_id}", stats)


@todo_app.command("disconnect")
def todo_disconnect(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Local user id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Unlink a user's Microsoft account."""
    if not yes and not typer.confirm(f"Disconnect Microsoft account of {user_id}?"):
        console.print("[dim]Cancelled[/dim]")
        raise typer.Exit(0)

    if _run_with_engine(ctx.obj["config"], lambda engine: engine.disconnect(user_id)):
        console.print(f"[green]✓ Disconnected {user_id}[/green]")
    else:
        console.print(f"[yellow]No Microsoft account linked for {user_id}[/yellow]")


@todo_app.command("set-client-secret")
def todo_set_client_secret(ctx: typer.Context) -> None:
    """Store the Microsoft app client secret securely in system keyring."""
    from todobridge.utils.credentials import CredentialStore

    client_id = ctx.obj["config"].microsoft.client_id
    if not client_id:
        console.print("[red]microsoft.client_id is not configured[/red]")
        console.print("[dim]Set TODOBRIDGE_MICROSOFT__CLIENT_ID or edit the config file[/dim]")
        raise typer.Exit(1)

    secret = typer.prompt(f"Enter client secret for app {client_id}", hide_input=True)
    secret_confirm = typer.prompt("Confirm client secret", hide_input=True)
    if secret != secret_confirm:
        console.print("[red]Secrets do not match[/red]")
        raise typer.Exit(1)

    try:
        CredentialStore().set_client_secret(client_id, secret)
        console.print(f"[green]✓ Client secret stored securely for app: {client_id}[/green]")
    except Exception as e:
        console.print(f"[red]Failed to store client secret: {e}[/red]")
        raise typer.Exit(1)


@todo_app.command("delete-client-secret")
def todo_delete_client_secret(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Delete the Microsoft app client secret from system keyring."""
    from todobridge.utils.credentials import CredentialStore

    client_id = ctx.obj["config"].microsoft.client_id
    if not client_id:
        console.print("[red]microsoft.client_id is not configured[/red]")
        raise typer.Exit(1)

    if not yes and not typer.confirm(f"Delete stored client secret for app {client_id}?"):
        console.print("[dim]Cancelled[/dim]")
        raise typer.Exit(0)

    if CredentialStore().delete_client_secret(client_id):
        console.print(f"[green]✓ Client secret deleted for app: {client_id}[/green]")
    else:
        console.print(f"[yellow]No client secret found for app: {client_id}[/yellow]")


def main_entry() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        logging.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main_entry()
