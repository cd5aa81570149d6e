from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from ..types import SummaryIndexEntry, TimeRange
from . import vectors as store_vectors

if TYPE_CHECKING:
    from ._store import IndexStore


def row_to_entry(row: sqlite3.Row) -> SummaryIndexEntry:
    return SummaryIndexEntry(
        chunk_id=row["id"],
        thread_id=row["thread_id"],
        summary=row["summary"],
        token_count=int(row["token_count"] or 0),
        created_at=row["created_at"],
        time_range=TimeRange(start=int(row["time_start"] or 0), end=int(row["time_end"] or 0)),
        session_id=row["session_id"],
        first_message_id=row["first_message_id"],
        last_message_id=row["last_message_id"],
    )


def insert_summary(
    store: IndexStore,
    entry: SummaryIndexEntry,
    embedding: Sequence[float] | None = None,
) -> None:
    """Write the summary row (the FTS row follows by trigger), then its vector."""
    if not entry.summary.strip():
        raise ValueError("summary must not be empty")
    with store.transaction() as conn:
        conn.execute(
            """
            INSERT INTO summaries(
                id, thread_id, session_id, summary, token_count, created_at,
                time_start, time_end, first_message_id, last_message_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                thread_id = excluded.thread_id,
                session_id = excluded.session_id,
                summary = excluded.summary,
                token_count = excluded.token_count,
                created_at = excluded.created_at,
                time_start = excluded.time_start,
                time_end = excluded.time_end,
                first_message_id = excluded.first_message_id,
                last_message_id = excluded.last_message_id
            """,
            (
                entry.chunk_id,
                entry.thread_id,
                entry.session_id,
                entry.summary,
                entry.token_count,
                entry.created_at,
                entry.time_range.start,
                entry.time_range.end,
                entry.first_message_id,
                entry.last_message_id,
            ),
        )
        if embedding is not None and store.vector_ready:
            store_vectors.upsert_vector(store, conn, "summaries_vec", entry.chunk_id, embedding)


def get_summary(store: IndexStore, chunk_id: str) -> SummaryIndexEntry | None:
    with store.reading() as conn:
        row = conn.execute("SELECT * FROM summaries WHERE id = ?", (chunk_id,)).fetchone()
    return row_to_entry(row) if row else None


def find_summary_for_range(
    store: IndexStore,
    thread_id: str,
    session_id: str,
    first_message_id: str,
    last_message_id: str,
) -> SummaryIndexEntry | None:
    with store.reading() as conn:
        row = conn.execute(
            """
            SELECT * FROM summaries
            WHERE thread_id = ? AND session_id = ?
              AND first_message_id = ? AND last_message_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (thread_id, session_id, first_message_id, last_message_id),
        ).fetchone()
    return row_to_entry(row) if row else None


def list_summaries(
    store: IndexStore, thread_id: str | None = None, limit: int | None = 50
) -> list[SummaryIndexEntry]:
    params: list[Any] = []
    where = ""
    if thread_id is not None:
        where = "WHERE thread_id = ?"
        params.append(thread_id)
    limit_clause = ""
    if limit is not None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        limit_clause = "LIMIT ?"
        params.append(limit)
    with store.reading() as conn:
        rows = conn.execute(
            f"""
            SELECT * FROM summaries
            {where}
            ORDER BY created_at DESC, id DESC
            {limit_clause}
            """,
            params,
        ).fetchall()
    return [row_to_entry(row) for row in rows]


def delete_summary(store: IndexStore, chunk_id: str) -> bool:
    with store.transaction() as conn:
        cur = conn.execute("DELETE FROM summaries WHERE id = ?", (chunk_id,))
        if store.vector_ready:
            store_vectors.delete_vector(conn, "summaries_vec", chunk_id)
    return cur.rowcount > 0


def list_archive_threads(store: IndexStore) -> list[dict[str, Any]]:
    with store.reading() as conn:
        rows = conn.execute(
            """
            SELECT thread_id,
                   COUNT(*) AS chunks,
                   COALESCE(SUM(token_count), 0) AS tokens,
                   MIN(time_start) AS first_timestamp,
                   MAX(time_end) AS last_timestamp,
                   MAX(created_at) AS last_archived_at
            FROM summaries
            GROUP BY thread_id
            ORDER BY last_archived_at DESC, thread_id ASC
            """
        ).fetchall()
    return [
        {
            "thread_id": row["thread_id"],
            "chunks": int(row["chunks"]),
            "tokens": int(row["tokens"]),
            "first_timestamp": int(row["first_timestamp"] or 0),
            "last_timestamp": int(row["last_timestamp"] or 0),
            "last_archived_at": row["last_archived_at"],
        }
        for row in rows
    ]
