"""Project memory commands."""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(no_args_is_help=True)
console = Console()


async def _folder_id(session, project: Optional[str]) -> str:
    from recall.config import get_settings
    from recall.storage.store import get_folder_by_path

    path = project or get_settings().general.default_project_path
    folder = await get_folder_by_path(session, path)
    if not folder:
        console.print(f"[red]No context folder for {path}[/red]")
        raise typer.Exit(1)
    return folder.id


@app.command()
def resume(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project path (default: cwd)"),
    scope: Optional[str] = typer.Option(None, "--scope", "-s", help="Terminal or agent session id"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Previous sessions to include"),
):
    """Print the resumption context for a project."""

    async def _resume():
        from recall.config import get_settings
        from recall.context.resumption import get_resumption_context
        from recall.storage.db import close_db, get_session

        async with get_session() as session:
            folder_id = await _folder_id(session, project)
            ctx = await get_resumption_context(
                session, folder_id, scope=scope, limit=limit or get_settings().sessions.resumption_limit
            )
        await close_db()

        console.print(f"\n[bold]Continuity score:[/bold] {ctx['continuityScore']:.2f}\n")
        console.print(ctx["resumptionPrompt"])

    asyncio.run(_resume())


@app.command()
def finalize(
    session_id: str = typer.Argument(..., help="Context session id"),
    summary: Optional[str] = typer.Option(None, "--summary", help="Session summary (auto-generated if omitted)"),
    next_step: Optional[list[str]] = typer.Option(None, "--next", help="A next step; repeat for several"),
):
    """Close a context session."""

    async def _finalize():
        from recall.storage.db import close_db, get_session
        from recall.storage.store import finalize_session

        async with get_session() as session:
            ctx = await finalize_session(session, session_id, summary=summary, next_steps=next_step or None)
        await close_db()

        if not ctx:
            console.print(f"[red]Session not found: {session_id}[/red]")
            raise typer.Exit(1)
        console.print(f"[green]Finalized[/green] {ctx.id}: {ctx.total_conversations} conversations")
        if ctx.summary:
            console.print(f"  {ctx.summary}")
        for step in ctx.next_steps or []:
            console.print(f"  - {step}")

    asyncio.run(_finalize())


@app.command()
def conversations(
    project: Optional[str] = typer.Option(None, "--project", "-p"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """List recent conversations."""

    async def _list():
        from recall.storage.db import close_db, get_session
        from recall.storage.store import list_recent_conversations

        async with get_session() as session:
            folder_id = await _folder_id(session, project)
            rows = await list_recent_conversations(session, folder_id, limit=limit)
        await close_db()

        if not rows:
            console.print("[yellow]No conversations recorded.[/yellow]")
            return

        table = Table(title="Conversations")
        table.add_column("When", style="dim")
        table.add_column("Input", style="cyan")
        table.add_column("Reply")
        table.add_column("Outcome", justify="center")
        for c in rows:
            outcome = {1: "[green]ok[/green]", 0: f"[red]{c.error_type or 'fail'}[/red]"}.get(c.success, "")
            reply = c.claude_reply[:60] + ("..." if len(c.claude_reply) > 60 else "")
            table.add_row(c.timestamp.strftime("%Y-%m-%d %H:%M"), c.user_input[:50], reply, outcome)
        console.print(table)

    asyncio.run(_list())


@app.command()
def patterns(
    project: Optional[str] = typer.Option(None, "--project", "-p"),
    pattern_type: Optional[str] = typer.Option(None, "--type", "-t", help="Filter by pattern type"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """List detected patterns."""

    async def _list():
        from recall.storage.db import close_db, get_session
        from recall.storage.memory import list_patterns

        async with get_session() as session:
            folder_id = await _folder_id(session, project)
            rows = await list_patterns(session, folder_id, pattern_type=pattern_type, limit=limit)
        await close_db()

        if not rows:
            console.print("[yellow]No patterns detected yet.[/yellow]")
            return

        table = Table(title="Patterns")
        table.add_column("Type", style="cyan")
        table.add_column("Description")
        table.add_column("Seen", justify="right")
        table.add_column("Confidence", justify="right")
        for p in rows:
            table.add_row(p.pattern_type, p.description, str(p.frequency), f"{p.confidence:.2f}")
        console.print(table)

    asyncio.run(_list())


@app.command()
def relevant(
    query: str = typer.Argument(..., help="What you are working on"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
    file: Optional[list[str]] = typer.Option(None, "--file", "-f", help="A file in play; repeat for several"),
    error: Optional[str] = typer.Option(None, "--error", "-e", help="Error output you are looking at"),
):
    """Find past successful conversations relevant to a task."""

    async def _find():
        from recall.context.retrieval import find_relevant_conversations
        from recall.storage.db import close_db, get_session

        async with get_session() as session:
            folder_id = await _folder_id(session, project)
            found = await find_relevant_conversations(
                session, query, folder_id=folder_id, current_files=file or [], error_context=error
            )
        await close_db()

        if not found:
            console.print("[yellow]No relevant conversations found.[/yellow]")
            return

        for memory in found:
            console.print(
                f"[cyan]{memory['userInput']}[/cyan] [dim]({memory['timeAgo']}, "
                f"score {memory['relevanceScore']:.2f})[/dim]"
            )
            console.print(f"  {memory['matchReason']}")
            if memory["preview"]:
                console.print(f"  [dim]{memory['preview']}[/dim]")

    asyncio.run(_find())
