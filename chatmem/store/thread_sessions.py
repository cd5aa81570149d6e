from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from ..types import ThreadSession
from ..utils import now_ms

if TYPE_CHECKING:
    from ._store import IndexStore

THREAD_SESSION_TTL_MS = 60 * 60 * 1000


def _row_to_thread_session(row: sqlite3.Row) -> ThreadSession:
    return ThreadSession(
        thread_id=row["thread_id"],
        session_id=row["session_id"],
        share_url=row["share_url"],
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


def upsert_thread_session(
    store: IndexStore, thread_id: str, session_id: str, share_url: str | None = None
) -> ThreadSession:
    if not thread_id.strip() or not session_id.strip():
        raise ValueError("thread_id and session_id are required")
    now = now_ms()
    with store.transaction() as conn:
        conn.execute(
            """
            INSERT INTO thread_sessions(thread_id, session_id, share_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(thread_id) DO UPDATE SET
                session_id = excluded.session_id,
                share_url = COALESCE(excluded.share_url, thread_sessions.share_url),
                created_at = CASE
                    WHEN thread_sessions.session_id = excluded.session_id
                    THEN thread_sessions.created_at
                    ELSE excluded.created_at
                END,
                updated_at = excluded.updated_at
            """,
            (thread_id, session_id, share_url, now, now),
        )
        row = conn.execute(
            "SELECT * FROM thread_sessions WHERE thread_id = ?", (thread_id,)
        ).fetchone()
    return _row_to_thread_session(row)


def get_thread_session(store: IndexStore, thread_id: str) -> ThreadSession | None:
    with store.reading() as conn:
        row = conn.execute(
            "SELECT * FROM thread_sessions WHERE thread_id = ?", (thread_id,)
        ).fetchone()
    return _row_to_thread_session(row) if row else None


def delete_stale_thread_sessions(store: IndexStore, ttl_ms: int = THREAD_SESSION_TTL_MS) -> int:
    cutoff = now_ms() - ttl_ms
    with store.transaction() as conn:
        cur = conn.execute("DELETE FROM thread_sessions WHERE updated_at < ?", (cutoff,))
    return cur.rowcount
