from __future__ import annotations

import logging
import os

import typer
from rich import print

from ..semantic import EmbeddingError


def configure_logging() -> None:
    level = os.environ.get("CHATMEM_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def init_db_cmd(*, system_from_path, db_path: str | None) -> None:
    """Create the SQLite database (no-op if it already exists)."""

    system = system_from_path(db_path)
    try:
        print(f"Initialized database at {system.index_store.db_path}")
        if not system.index_store.vector_ready:
            print("[yellow]Vector search unavailable; using full-text search only[/yellow]")
    finally:
        system.close()


def _format_tokens(count: int) -> str:
    return f"{count:,}"


def stats_cmd(*, system_from_path, db_path: str | None) -> None:
    system = system_from_path(db_path)
    try:
        stats_data = system.stats()
    finally:
        system.close()

    print("[bold]Database[/bold]")
    print(f"- Path: {stats_data['db_path']}")
    print(f"- Schema version: {stats_data['schema_version']}")
    if stats_data["vector_ready"]:
        vectors = stats_data["vectors"] or {}
        print(
            f"- Vectors: {stats_data['dimensions']} dims "
            f"({vectors.get('summaries', 0)} summaries, {vectors.get('memories', 0)} memories)"
        )
    else:
        print("- Vectors: disabled")

    print("\n[bold]Archives[/bold]")
    print(f"- Storage: {stats_data['storage_path']}")
    print(f"- Threads: {stats_data['archived_threads']}")
    print(f"- Chunks: {stats_data['summaries']}")
    print(f"- Archived tokens: ~{_format_tokens(stats_data['archived_tokens'])}")

    print("\n[bold]Memories[/bold]")
    print(f"- Total: {stats_data['memories']}")
    for memory_type, count in stats_data["memories_by_type"].items():
        print(f"- {memory_type}: {count}")


def rebuild_cmd(*, system_from_path, db_path: str | None) -> None:
    """Re-index archived chunks from disk."""

    system = system_from_path(db_path)
    try:
        try:
            result = system.rebuild_index()
        except EmbeddingError as exc:
            print(f"[red]Embedding failed: {exc}[/red]")
            raise typer.Exit(code=1) from exc
    finally:
        system.close()
    print(
        f"Checked {result['checked']} chunks: {result['inserted']} indexed, "
        f"{result['skipped']} skipped, {result['pruned']} pruned"
    )


def backfill_vectors_cmd(
    *, system_from_path, db_path: str | None, limit: int | None, dry_run: bool
) -> None:
    system = system_from_path(db_path)
    try:
        if system.embedder is None or not system.index_store.vector_ready:
            print("[yellow]Vector search unavailable; nothing to backfill[/yellow]")
            return
        try:
            result = system.backfill_vectors(limit, dry_run=dry_run)
        except EmbeddingError as exc:
            print(f"[red]Embedding failed: {exc}[/red]")
            raise typer.Exit(code=1) from exc
    finally:
        system.close()

    action = "Would embed" if dry_run else "Embedded"
    print(
        f"{action} {result['embedded']} vectors "
        f"({result['inserted']} inserted, {result['skipped']} skipped)"
    )
    print(f"Checked {result['checked']} rows")


def serve_cmd(*, system_from_path, db_path: str | None, host: str | None, port: int | None) -> None:
    """Run the HTTP memory API in the foreground."""

    from ..viewer import start_api

    configure_logging()
    system = system_from_path(db_path)
    bind_host = host or system.config.api_host
    bind_port = port or system.config.api_port
    try:
        print(f"Memory API listening on http://{bind_host}:{bind_port}")
        server = start_api(system, bind_host, bind_port)
        if server is None:
            print(f"[red]Port {bind_port} is already in use[/red]")
            raise typer.Exit(code=1)
    except KeyboardInterrupt:
        print("Stopping memory API")
    finally:
        system.close()


def mcp_cmd() -> None:
    """Run the MCP server."""

    from ..mcp_server import run as mcp_run

    configure_logging()
    mcp_run()
