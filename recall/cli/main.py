"""Recall CLI — main entry point using Typer."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from recall.cli.context_cmd import app as context_app

app = typer.Typer(
    name="recall",
    help="Conversation capture and context memory for terminal AI sessions.",
    no_args_is_help=True,
)
console = Console()

app.add_typer(context_app, name="context", help="Resume, finalize and inspect project memory")


def _setup_logging(verbose: bool = False):
    from recall.config import get_settings

    level = logging.DEBUG if verbose else get_settings().general.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_time=False)],
    )


DEFAULT_CONFIG = """[general]
# db_url = "postgresql+asyncpg://localhost/recall"
log_level = "INFO"

[capture]
flush_interval = 2.0
max_batch_size = 100
endpoint_url = "http://127.0.0.1:8765/api/context/capture"

[extraction]
turn_timeout_seconds = 30.0

[sessions]
idle_timeout_minutes = 30

[server]
host = "127.0.0.1"
port = 8765
"""


@app.command()
def init(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project path (default: cwd)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Initialize Recall — config file, database, and a context folder for the project."""
    _setup_logging(verbose)

    async def _init():
        from recall.config import get_settings
        from recall.storage.db import close_db, get_session, init_db
        from recall.storage.store import ensure_folder, ensure_open_session

        settings = get_settings()
        project_path = project or settings.general.default_project_path

        config_dir = Path.home() / ".config/recall"
        config_dir.mkdir(parents=True, exist_ok=True)
        config_path = config_dir / "config.toml"
        if not config_path.exists():
            config_path.write_text(DEFAULT_CONFIG)
            console.print(f"  Config written: {config_path}")

        console.print("  Initializing database...")
        await init_db()

        async with get_session() as session:
            folder = await ensure_folder(session, project_path)
            ctx = await ensure_open_session(session, folder.id)
            console.print(f"  Context folder: [cyan]{folder.name}[/cyan] ({folder.id})")
            console.print(f"  Session: {ctx.id}")
        await close_db()
        console.print("[bold green]Recall ready.[/bold green]")

    asyncio.run(_init())


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Port"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the capture API (with the idle sweeper) under uvicorn."""
    _setup_logging(verbose)
    import uvicorn

    from recall.config import get_settings

    settings = get_settings().server
    uvicorn.run(
        "recall.api.routes:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level="debug" if verbose else "info",
    )


@app.command()
def pipe(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project path (default: cwd)"),
    url: Optional[str] = typer.Option(None, "--url", help="Capture endpoint URL"),
    local: bool = typer.Option(False, "--local", help="Process in-process instead of over HTTP"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Capture terminal chunks (JSON lines on stdin) and deliver them in batches."""
    _setup_logging(verbose)

    async def _pipe():
        from recall.config import get_settings
        from recall.daemon import run_pipe
        from recall.ingestion.dispatch import CaptureClient, LocalDispatcher
        from recall.storage.db import close_db, init_db

        project_path = project or get_settings().general.default_project_path
        if local:
            await init_db()
            dispatcher = LocalDispatcher()
        else:
            dispatcher = CaptureClient(url=url, project_path=project_path)
        try:
            summary = await run_pipe(project_path, dispatcher=dispatcher)
        finally:
            if local:
                await close_db()
        if summary["lastResult"]:
            console.print(
                f"  Session {summary['lastResult']['currentSession']}: "
                f"{summary['lastResult']['totalConversations']} conversations"
            )
        if summary["rejected"]:
            console.print(f"[red]{summary['rejected']} chunks were refused by the capture endpoint.[/red]")
        if summary["undelivered"]:
            console.print(f"[yellow]{summary['undelivered']} chunks could not be delivered.[/yellow]")
            raise typer.Exit(1)

    asyncio.run(_pipe())


@app.command()
def stats(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Limit to one project path"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Show memory statistics."""
    _setup_logging(verbose)

    async def _stats():
        from rich.table import Table

        from recall.context.stats import get_stats
        from recall.storage.db import close_db, get_session
        from recall.storage.store import get_folder_by_path

        async with get_session() as session:
            folder_id = None
            if project:
                folder = await get_folder_by_path(session, project)
                if not folder:
                    console.print(f"[red]No context folder for {project}[/red]")
                    raise typer.Exit(1)
                folder_id = folder.id
            data = await get_stats(session, folder_id)
        await close_db()

        table = Table(title="Recall Memory")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green", justify="right")
        for key in ("totalFolders", "totalSessions", "totalConversations", "totalPatterns", "totalInsights"):
            value = data[key]
            table.add_row(key, "[yellow]unavailable[/yellow]" if value is None else str(value))
        table.add_row("successRate", f"{data['successRate']:.0%}")
        table.add_row("currentSession", data["currentSession"] or "-")
        console.print(table)
        if data["degraded"]:
            console.print(f"[yellow]Degraded: {', '.join(data['degraded'])}[/yellow]")

    asyncio.run(_stats())


def main():
    """Entry point for the recall CLI."""
    app()


if __name__ == "__main__":
    main()
