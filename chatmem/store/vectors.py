from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from typing import TYPE_CHECKING

from .. import db

if TYPE_CHECKING:
    from ._store import IndexStore

VECTOR_TABLES = ("summaries_vec", "memories_vec")


def _check_table(table: str) -> str:
    if table not in VECTOR_TABLES:
        raise ValueError(f"unknown vector table: {table}")
    return table


def upsert_vector(
    store: IndexStore,
    conn: sqlite3.Connection,
    table: str,
    item_id: str,
    embedding: Sequence[float],
) -> None:
    """Replace the vector for ``item_id``. Caller owns the transaction."""
    table = _check_table(table)
    if len(embedding) != store.dimensions:
        raise ValueError(
            f"embedding has {len(embedding)} dimensions, index expects {store.dimensions}"
        )
    blob = db.serialize_vector(list(embedding))
    # vec0 has no upsert; delete then insert.
    conn.execute(f"DELETE FROM {table} WHERE id = ?", (item_id,))
    conn.execute(f"INSERT INTO {table}(id, embedding) VALUES (?, ?)", (item_id, blob))


def delete_vector(conn: sqlite3.Connection, table: str, item_id: str) -> None:
    table = _check_table(table)
    conn.execute(f"DELETE FROM {table} WHERE id = ?", (item_id,))


def cosine_score(distance: float | None) -> float:
    if distance is None:
        return 0.0
    return min(1.0, max(0.0, 1.0 - float(distance)))
