import asyncio
import logging
import secrets
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from persona_veil.config import Settings
from persona_veil.errors import ConfigError

load_dotenv()
app = typer.Typer(help="Anonymous persona service.")
console = Console()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/] {exc}")
        console.print("[dim]Run `persona-veil gen-secrets` and add the values to your .env file.[/]")
        raise typer.Exit(1)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes (development only)"),
):
    """Run the API server with uvicorn."""
    settings = _load_settings()
    _setup_logging(settings.log_level)

    import uvicorn

    console.print(f"[bold green]✓[/] Serving on [cyan]http://{host}:{port}[/]  db=[cyan]{settings.db_path}[/]")
    uvicorn.run(
        "persona_veil.api.server:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_config=None,
    )


@app.command("init-db")
def init_db_command(
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite path (defaults to PERSONA_VEIL_DB_PATH)"),
):
    """Create the database schema. Safe to run repeatedly."""
    from persona_veil.store.db import init_db

    if db_path is None:
        db_path = _load_settings().db_path
    asyncio.run(init_db(db_path))
    console.print(f"[bold green]✓[/] Schema ready in [cyan]{db_path}[/]")


@app.command("gen-secrets")
def gen_secrets(
    nbytes: int = typer.Option(48, "--bytes", "-b", min=24, help="Random bytes per secret"),
):
    """Print three fresh, distinct secrets in .env format."""
    for name in ("ANONYMOUS_JWT_SECRET", "ANONYMOUS_SESSION_SECRET", "PROFESSIONAL_JWT_SECRET"):
        typer.echo(f"{name}={secrets.token_urlsafe(nbytes)}")


@app.command("set-verification")
def set_verification(
    user_id: str = typer.Argument(help="Professional user id"),
    status: str = typer.Argument(help="unverified | pending | verified | expired | rejected"),
):
    """Mirror a user's verification status into the local directory."""
    from persona_veil.auth.professional import SQLiteUserDirectory
    from persona_veil.models import VerificationStatus
    from persona_veil.store.db import Database, init_db

    try:
        value = VerificationStatus(status)
    except ValueError:
        console.print(f"[bold red]Error:[/] unknown status '{status}'")
        raise typer.Exit(1)

    settings = _load_settings()

    async def _run() -> None:
        await init_db(settings.db_path)
        await SQLiteUserDirectory(Database(settings.db_path)).upsert(user_id, value)

    asyncio.run(_run())
    console.print(f"[bold green]✓[/] {user_id} is now [cyan]{value.value}[/]")


@app.command("dev-token")
def dev_token(
    user_id: str = typer.Argument(help="Professional user id"),
    role: str = typer.Option("member", "--role", "-r", help="member or moderator"),
    ttl: int = typer.Option(3600, "--ttl", help="Lifetime in seconds"),
):
    """Mint a professional-domain token for local testing."""
    from persona_veil.auth.professional import issue_professional_token

    settings = _load_settings()
    token = issue_professional_token(user_id, settings.professional_jwt_secret, role=role, ttl_seconds=ttl)
    table = Table(show_header=False)
    table.add_row("user", user_id)
    table.add_row("role", role)
    table.add_row("expires in", f"{ttl}s")
    console.print(table)
    typer.echo(token)
