from __future__ import annotations

import json

import httpx
import typer
from rich import print
from rich.markup import escape

from ..observer import ArchivalCancelled
from ..semantic import EmbeddingError
from ..summarizer import SummarizationError
from ..utils import scrub_surrogates


def chunk_cmd(
    *, system_from_path, db_path: str | None, thread_id: str, chunk_id: str, summary_only: bool
) -> None:
    """Print an archived chunk as JSON."""

    system = system_from_path(db_path)
    try:
        try:
            chunk = system.read_chunk(thread_id, chunk_id)
        except ValueError as exc:
            print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=1) from exc
        if chunk is None:
            print(f"[red]{escape(f'Chunk {chunk_id} not found in thread {thread_id}')}[/red]")
            raise typer.Exit(code=1)
        if summary_only:
            print(escape(chunk.summary))
            return
        text = json.dumps(chunk.to_dict(), indent=2, ensure_ascii=False)
        print(escape(scrub_surrogates(text)))
    finally:
        system.close()


def archives_cmd(
    *, system_from_path, db_path: str | None, thread_id: str | None, limit: int
) -> None:
    """List archived chunks for a thread, or the archived threads."""

    system = system_from_path(db_path)
    try:
        if thread_id is None:
            threads = system.list_archive_threads()
            if not threads:
                print("No archives")
                return
            print("[bold]Archived threads[/bold]")
            for item in threads:
                print(
                    f"- {escape(item['thread_id'])}: {item['chunks']} chunks, "
                    f"{item['tokens']:,} tokens (last {item['last_archived_at']})"
                )
            return
        entries = system.list_archives(thread_id, limit)
        if not entries:
            print(f"No archives for thread {thread_id}")
            return
        for entry in entries:
            print(
                escape(
                    f"[{entry.chunk_id}] {entry.created_at} ({entry.token_count:,} tokens)\n"
                    f"{entry.summary}\n"
                )
            )
    finally:
        system.close()


def archive_cmd(
    *, system_from_path, db_path: str | None, thread_id: str, session_id: str | None
) -> None:
    """Archive a thread's backlog now instead of waiting for the next turn."""

    system = system_from_path(db_path)
    try:
        try:
            chunks = system.archive_now(thread_id, session_id)
        except ValueError as exc:
            print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=1) from exc
        except (ArchivalCancelled, EmbeddingError, SummarizationError, httpx.HTTPError) as exc:
            print(f"[red]Archival failed: {escape(str(exc))}[/red]")
            raise typer.Exit(code=1) from exc
        if not chunks:
            print("Nothing to archive (tail below threshold)")
            return
        for chunk in chunks:
            print(
                f"Archived {chunk.id} "
                f"({chunk.message_count} messages, {chunk.token_count:,} tokens)"
            )
    finally:
        system.close()
