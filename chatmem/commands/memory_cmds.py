from __future__ import annotations

import json
from typing import NoReturn

import typer
from rich import print
from rich.markup import escape

from ..semantic import EmbeddingError


def _fail(message: str) -> NoReturn:
    print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(code=1)


def search_cmd(
    *,
    system_from_path,
    db_path: str | None,
    query: str,
    limit: int,
    thread_id: str | None,
    min_score: float,
) -> None:
    """Search archived summaries and saved memories."""

    system = system_from_path(db_path)
    try:
        try:
            results = system.search(query, limit, thread_id, min_score=min_score)
        except ValueError as exc:
            _fail(str(exc))
        if not results:
            print("No results")
            return
        for item in results:
            if item.source == "archive":
                header = f"[{item.id}] (archive {item.thread_id}, {item.token_count} tokens)"
            else:
                tags = f" tags={','.join(item.tags)}" if item.tags else ""
                header = f"[{item.id}] ({item.memory_type}){tags}"
            print(escape(f"{header}\n{item.text}\nscore={item.relevance_score:.2f}\n"))
    finally:
        system.close()


def remember_cmd(
    *,
    system_from_path,
    db_path: str | None,
    memory_type: str,
    content: str,
    tags: list[str] | None,
) -> None:
    """Save a persistent memory."""

    system = system_from_path(db_path)
    try:
        try:
            memory = system.write_memory(memory_type, content, tags or [])
        except ValueError as exc:
            _fail(str(exc))
        except EmbeddingError as exc:
            _fail(f"Embedding failed: {exc}")
        print(f"Stored memory {memory.id}")
    finally:
        system.close()


def update_cmd(
    *,
    system_from_path,
    db_path: str | None,
    memory_id: str,
    content: str | None,
    tags: list[str] | None,
) -> None:
    """Replace the content and/or tags of a memory."""

    if content is None and tags is None:
        _fail("Nothing to update: pass --content, --tag or --clear-tags")
    system = system_from_path(db_path)
    try:
        try:
            memory = system.update_memory(memory_id, content, tags)
        except ValueError as exc:
            _fail(str(exc))
        except EmbeddingError as exc:
            _fail(f"Embedding failed: {exc}")
        if memory is None:
            _fail(f"Memory {memory_id} not found")
        print(f"Updated memory {memory.id}")
    finally:
        system.close()


def forget_cmd(*, system_from_path, db_path: str | None, memory_id: str) -> None:
    """Delete a memory by id."""

    system = system_from_path(db_path)
    try:
        if not system.delete_memory(memory_id):
            _fail(f"Memory {memory_id} not found")
        print(f"Deleted memory {memory_id}")
    finally:
        system.close()


def memories_cmd(
    *, system_from_path, db_path: str | None, memory_type: str | None, limit: int
) -> None:
    """List memories, newest first."""

    system = system_from_path(db_path)
    try:
        try:
            items = system.list_memories(memory_type, limit)
        except ValueError as exc:
            _fail(str(exc))
        if not items:
            print("No memories")
            return
        for item in items:
            tags = f" tags={','.join(item.tags)}" if item.tags else ""
            print(escape(f"[{item.id}] ({item.type}){tags} {item.created_at}\n{item.content}\n"))
    finally:
        system.close()


def show_cmd(*, system_from_path, db_path: str | None, memory_id: str) -> None:
    """Print a memory as JSON."""

    system = system_from_path(db_path)
    try:
        memory = system.get_memory(memory_id)
        if memory is None:
            _fail(f"Memory {memory_id} not found")
        print(escape(json.dumps(memory.to_dict(), indent=2)))
    finally:
        system.close()
