"""Keygate operator CLI -- Typer-based admin interface.

Provides commands for serving the API, preparing the database, issuing
applications and license keys, and sweeping expired sessions.  Human
readable output goes to *stderr* via Rich; the values an operator needs
to copy (API keys, license keys, counts) are also printed on *stdout*
so that scripts can capture them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import typer
from keygate_core.admin.service import TenantAdminService
from keygate_core.audit.dispatcher import NotificationBatch, NotificationDispatcher
from keygate_core.config import load_settings
from keygate_core.errors import KeygateError
from keygate_core.security.passwords import BcryptVerifier
from keygate_core.sessions.tracker import SessionTracker
from keygate_core.state import SqlRepository, create_tables, get_engine, get_session
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from keygate_api.config import load_api_settings

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="keygate",
    help="Keygate - license keys and end-user authentication for distributed software",
    no_args_is_help=True,
)
console = Console(stderr=True)

_DATABASE_URL_HELP = "Database URL (defaults to API_DATABASE_URL)."


def _database_url(override: str | None) -> str:
    return override or load_api_settings().database_url


def _run(
    database_url: str,
    action: Callable[[SqlRepository], Awaitable[Any]],
    notifications: NotificationBatch | None = None,
) -> Any:
    """Run *action* in one committed transaction against *database_url*.

    Notifications collected by *action* are sent once the transaction has
    committed; the dispatcher is drained and closed before returning.
    """

    async def _main() -> Any:
        engine = get_engine(database_url)
        try:
            await create_tables(engine)
            async with get_session(engine) as session:
                result = await action(SqlRepository(session))
            if notifications is not None:
                notifications.flush()
            return result
        finally:
            if notifications is not None:
                await notifications.dispatcher.close()
            await engine.dispose()

    try:
        return asyncio.run(_main())
    except KeygateError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


def _admin(repository: SqlRepository, owner: str) -> TenantAdminService:
    settings = load_settings()
    return TenantAdminService(repository, BcryptVerifier(rounds=settings.bcrypt_rounds), settings, owner_id=owner)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address (defaults to API_HOST)."),
    port: int | None = typer.Option(None, "--port", "-p", help="Port (defaults to API_PORT)."),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload on code changes."),
) -> None:
    """Serve the client API with uvicorn."""
    import uvicorn

    settings = load_api_settings()
    bind_host = host or settings.host
    bind_port = port or settings.port
    console.print(f"[green]✓[/green] API server starting on http://{bind_host}:{bind_port}")
    console.print(f"[green]✓[/green] OpenAPI docs at http://{bind_host}:{bind_port}/docs")
    uvicorn.run("keygate_api.main:app", host=bind_host, port=bind_port, reload=reload, access_log=False)


@app.command("init-db")
def init_db(
    database_url: str | None = typer.Option(None, "--database-url", help=_DATABASE_URL_HELP),
) -> None:
    """Create any missing tables (production deployments run Alembic instead)."""

    async def _noop(repository: SqlRepository) -> None:
        return None

    _run(_database_url(database_url), _noop)
    console.print("[green]Database tables ensured.[/green]")


@app.command("create-app")
def create_app_command(
    name: str = typer.Argument(..., help="Application name."),
    owner: str = typer.Option(..., "--owner", help="Owning tenant id."),
    require_license: bool = typer.Option(True, "--require-license/--no-require-license"),
    require_hwid: bool = typer.Option(False, "--require-hwid/--no-require-hwid"),
    database_url: str | None = typer.Option(None, "--database-url", help=_DATABASE_URL_HELP),
) -> None:
    """Create an application and print its API key."""
    from keygate_core.models.entities import ApplicationSettings

    async def _create(repository: SqlRepository) -> Any:
        return await _admin(repository, owner).create_application(
            name,
            settings=ApplicationSettings(require_license=require_license, require_hwid=require_hwid),
        )

    application = _run(_database_url(database_url), _create)
    table = Table(show_header=False, box=None)
    table.add_row("Application", f"[bold]{application.name}[/bold]")
    table.add_row("ID", application.id)
    table.add_row("API key", f"[cyan]{application.api_key}[/cyan]")
    console.print(Panel(table, title="Application created", border_style="green"))
    typer.echo(application.api_key)


@app.command("issue-license")
def issue_license(
    application_id: str = typer.Argument(..., help="Application id."),
    owner: str = typer.Option(..., "--owner", help="Owning tenant id."),
    max_users: int = typer.Option(1, "--max-users", min=1, help="Seats on the key."),
    days: int | None = typer.Option(None, "--days", min=1, help="Validity in days (no expiry when omitted)."),
    count: int = typer.Option(1, "--count", "-n", min=1, max=1000, help="Number of keys to issue."),
    database_url: str | None = typer.Option(None, "--database-url", help=_DATABASE_URL_HELP),
) -> None:
    """Issue one or more license keys for an application."""

    async def _issue(repository: SqlRepository) -> list[Any]:
        admin = _admin(repository, owner)
        return [
            await admin.create_license_key(application_id, max_users=max_users, validity_days=days)
            for _ in range(count)
        ]

    keys = _run(_database_url(database_url), _issue)
    table = Table(title=f"Issued {len(keys)} license key(s)")
    table.add_column("Key", style="cyan")
    table.add_column("Seats", justify="right")
    table.add_column("Expires")
    for key in keys:
        table.add_row(key.key, str(key.max_users), key.expires_at.isoformat() if key.expires_at else "never")
    console.print(table)
    for key in keys:
        typer.echo(key.key)


@app.command("sweep-sessions")
def sweep_sessions(
    database_url: str | None = typer.Option(None, "--database-url", help=_DATABASE_URL_HELP),
) -> None:
    """Close every session past its expiry, record and notify ``session_expired``."""
    settings = load_settings()
    notifications = NotificationBatch(NotificationDispatcher(settings=settings))

    async def _sweep(repository: SqlRepository) -> int:
        return await SessionTracker(repository, settings, notifications).sweep_expired()

    closed = _run(_database_url(database_url), _sweep, notifications)
    console.print(f"[green]Closed {closed} expired session(s).[/green]")
    typer.echo(closed)
