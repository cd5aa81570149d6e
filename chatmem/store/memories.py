from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, cast

from .. import db
from ..types import MemoryType, PersistentMemory
from . import vectors as store_vectors

if TYPE_CHECKING:
    from ._store import IndexStore


def row_to_memory(row: sqlite3.Row) -> PersistentMemory:
    return PersistentMemory(
        id=row["id"],
        type=cast(MemoryType, row["type"]),
        content=row["content"],
        tags=db.from_json_list(row["tags"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def insert_memory(
    store: IndexStore,
    memory: PersistentMemory,
    embedding: Sequence[float] | None = None,
) -> None:
    with store.transaction() as conn:
        conn.execute(
            """
            INSERT INTO memories(id, type, content, tags, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                memory.id,
                memory.type,
                memory.content,
                db.to_json(memory.tags),
                memory.created_at,
                memory.updated_at,
            ),
        )
        if embedding is not None and store.vector_ready:
            store_vectors.upsert_vector(store, conn, "memories_vec", memory.id, embedding)


def update_memory(
    store: IndexStore,
    memory: PersistentMemory,
    embedding: Sequence[float] | None = None,
) -> bool:
    with store.transaction() as conn:
        cur = conn.execute(
            """
            UPDATE memories
            SET type = ?, content = ?, tags = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                memory.type,
                memory.content,
                db.to_json(memory.tags),
                memory.updated_at,
                memory.id,
            ),
        )
        if cur.rowcount == 0:
            return False
        if store.vector_ready:
            if embedding is not None:
                store_vectors.upsert_vector(store, conn, "memories_vec", memory.id, embedding)
            else:
                # The old vector describes content that no longer exists.
                store_vectors.delete_vector(conn, "memories_vec", memory.id)
    return True


def get_memory(store: IndexStore, memory_id: str) -> PersistentMemory | None:
    with store.reading() as conn:
        row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
    return row_to_memory(row) if row else None


def list_memories(
    store: IndexStore, memory_type: MemoryType | None = None, limit: int = 100
) -> list[PersistentMemory]:
    if limit <= 0:
        raise ValueError("limit must be positive")
    params: list[Any] = []
    where = ""
    if memory_type:
        where = "WHERE type = ?"
        params.append(memory_type)
    params.append(limit)
    with store.reading() as conn:
        rows = conn.execute(
            f"""
            SELECT * FROM memories
            {where}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
    return [row_to_memory(row) for row in rows]


def delete_memory(store: IndexStore, memory_id: str) -> bool:
    with store.transaction() as conn:
        cur = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        if store.vector_ready:
            store_vectors.delete_vector(conn, "memories_vec", memory_id)
    return cur.rowcount > 0
