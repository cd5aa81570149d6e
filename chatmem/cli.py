from __future__ import annotations

import typer
from rich import print

from . import __version__
from .commands.archive_cmds import archive_cmd, archives_cmd, chunk_cmd
from .commands.maintenance_cmds import (
    backfill_vectors_cmd,
    init_db_cmd,
    mcp_cmd,
    rebuild_cmd,
    serve_cmd,
    stats_cmd,
)
from .commands.memory_cmds import (
    forget_cmd,
    memories_cmd,
    remember_cmd,
    search_cmd,
    show_cmd,
    update_cmd,
)
from .config import load_config
from .system import MemorySystem

app = typer.Typer(help="chatmem: archive long conversations and recall them later")


def _system(db_path: str | None) -> MemorySystem:
    config = load_config()
    if db_path:
        config.db_path = db_path
    return MemorySystem(config).open()


@app.command()
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the SQLite database (no-op if it already exists)."""
    init_db_cmd(system_from_path=_system, db_path=db_path)


@app.command()
def search(
    query: str,
    limit: int = typer.Option(5, help="Max results"),
    thread_id: str = typer.Option(None, help="Only search archives of this thread"),
    min_score: float = typer.Option(0.0, help="Drop results below this relevance"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Search archived summaries and memories by keyword or semantic recall."""
    search_cmd(
        system_from_path=_system,
        db_path=db_path,
        query=query,
        limit=limit,
        thread_id=thread_id,
        min_score=min_score,
    )


@app.command()
def remember(
    memory_type: str = typer.Argument(..., metavar="TYPE", help="fact, preference or learning"),
    content: str = typer.Argument(...),
    tags: list[str] = typer.Option(None, "--tag", help="Repeat for multiple tags"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Save a persistent memory."""
    remember_cmd(
        system_from_path=_system,
        db_path=db_path,
        memory_type=memory_type,
        content=content,
        tags=tags,
    )


@app.command()
def update(
    memory_id: str,
    content: str = typer.Option(None, help="New content"),
    tags: list[str] = typer.Option(None, "--tag", help="Replace tags; repeat for multiple"),
    clear_tags: bool = typer.Option(False, "--clear-tags", help="Remove all tags"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Update a memory's content and/or tags."""
    update_cmd(
        system_from_path=_system,
        db_path=db_path,
        memory_id=memory_id,
        content=content,
        tags=[] if clear_tags else (tags or None),
    )


@app.command()
def forget(
    memory_id: str, db_path: str = typer.Option(None, help="Path to SQLite database")
) -> None:
    """Delete a memory by id."""
    forget_cmd(system_from_path=_system, db_path=db_path, memory_id=memory_id)


@app.command()
def memories(
    memory_type: str = typer.Option(None, "--type", help="Filter by memory type"),
    limit: int = typer.Option(20, help="Max results"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List memories, newest first."""
    memories_cmd(
        system_from_path=_system, db_path=db_path, memory_type=memory_type, limit=limit
    )


@app.command()
def show(memory_id: str, db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Print a memory as JSON."""
    show_cmd(system_from_path=_system, db_path=db_path, memory_id=memory_id)


@app.command()
def chunk(
    thread_id: str,
    chunk_id: str,
    summary_only: bool = typer.Option(False, "--summary", help="Print only the summary"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Print an archived chunk's full transcript."""
    chunk_cmd(
        system_from_path=_system,
        db_path=db_path,
        thread_id=thread_id,
        chunk_id=chunk_id,
        summary_only=summary_only,
    )


@app.command()
def archives(
    thread_id: str = typer.Option(None, help="List chunks of this thread"),
    limit: int = typer.Option(50, help="Max chunks"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List archived threads, or the chunks of one thread."""
    archives_cmd(system_from_path=_system, db_path=db_path, thread_id=thread_id, limit=limit)


@app.command()
def archive(
    thread_id: str,
    session_id: str = typer.Option(None, help="Session id (defaults to the last one seen)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Archive a thread's backlog now."""
    archive_cmd(
        system_from_path=_system, db_path=db_path, thread_id=thread_id, session_id=session_id
    )


@app.command()
def rebuild(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Rebuild the summary index from chunk files."""
    rebuild_cmd(system_from_path=_system, db_path=db_path)


@app.command("backfill-vectors")
def backfill_vectors(
    limit: int | None = typer.Option(None, help="Max rows per table to embed"),
    dry_run: bool = typer.Option(False, help="Report without writing"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Embed summaries and memories that have no vector yet."""
    backfill_vectors_cmd(system_from_path=_system, db_path=db_path, limit=limit, dry_run=dry_run)


@app.command()
def stats(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show database statistics."""
    stats_cmd(system_from_path=_system, db_path=db_path)


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind (defaults to config api_host)"),
    port: int = typer.Option(None, help="Port to bind (defaults to config api_port)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Run the HTTP memory API."""
    serve_cmd(system_from_path=_system, db_path=db_path, host=host, port=port)


@app.command()
def mcp() -> None:
    """Run the MCP server."""
    mcp_cmd()


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)


def main() -> None:
    app()
