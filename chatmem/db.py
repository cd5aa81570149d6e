from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

import sqlite_vec

SCHEMA_VERSION = 1
META_EMBEDDING_DIMENSIONS = "embedding_dimensions"


def sqlite_vec_version(conn: sqlite3.Connection) -> str | None:
    try:
        row = conn.execute("select vec_version()").fetchone()
    except sqlite3.Error:
        return None
    if not row or row[0] is None:
        return None
    return str(row[0])


def load_sqlite_vec(conn: sqlite3.Connection) -> None:
    try:
        conn.enable_load_extension(True)
    except AttributeError as exc:
        raise RuntimeError(
            "sqlite-vec requires a Python SQLite build that supports extension loading"
        ) from exc
    try:
        sqlite_vec.load(conn)
        if sqlite_vec_version(conn) is None:
            raise RuntimeError("sqlite-vec loaded but version check failed")
    except RuntimeError:
        raise
    except Exception as exc:
        message = (
            "Failed to load sqlite-vec extension. "
            "Set CHATMEM_VECTOR_DISABLED=1 to run with full-text search only."
        )
        if "ELFCLASS32" in str(exc):
            message = (
                "Failed to load sqlite-vec extension (ELFCLASS32). "
                "The installed vec0 loadable does not match this platform."
            )
        raise RuntimeError(message) from exc
    finally:
        try:
            conn.enable_load_extension(False)
        except AttributeError:
            pass


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    """Create the relational and full-text schema. Safe to run on every open."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS summaries (
            id TEXT PRIMARY KEY,
            thread_id TEXT NOT NULL,
            session_id TEXT,
            summary TEXT NOT NULL,
            token_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            time_start INTEGER NOT NULL DEFAULT 0,
            time_end INTEGER NOT NULL DEFAULT 0,
            first_message_id TEXT,
            last_message_id TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_summaries_thread_created
            ON summaries(thread_id, created_at DESC);

        CREATE VIRTUAL TABLE IF NOT EXISTS summaries_fts USING fts5(
            summary,
            content='summaries',
            content_rowid='rowid'
        );

        CREATE TRIGGER IF NOT EXISTS summaries_ai AFTER INSERT ON summaries BEGIN
            INSERT INTO summaries_fts(rowid, summary) VALUES (new.rowid, new.summary);
        END;

        CREATE TRIGGER IF NOT EXISTS summaries_au AFTER UPDATE ON summaries BEGIN
            INSERT INTO summaries_fts(summaries_fts, rowid, summary)
            VALUES('delete', old.rowid, old.summary);
            INSERT INTO summaries_fts(rowid, summary) VALUES (new.rowid, new.summary);
        END;

        CREATE TRIGGER IF NOT EXISTS summaries_ad AFTER DELETE ON summaries BEGIN
            INSERT INTO summaries_fts(summaries_fts, rowid, summary)
            VALUES('delete', old.rowid, old.summary);
        END;

        CREATE TABLE IF NOT EXISTS memories (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            content TEXT NOT NULL,
            tags TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_memories_type_created ON memories(type, created_at DESC);
        CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at DESC);

        CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
            content, tags,
            content='memories',
            content_rowid='rowid'
        );

        CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
            INSERT INTO memories_fts(rowid, content, tags)
            VALUES (new.rowid, new.content, new.tags);
        END;

        CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE ON memories BEGIN
            INSERT INTO memories_fts(memories_fts, rowid, content, tags)
            VALUES('delete', old.rowid, old.content, old.tags);
            INSERT INTO memories_fts(rowid, content, tags)
            VALUES (new.rowid, new.content, new.tags);
        END;

        CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
            INSERT INTO memories_fts(memories_fts, rowid, content, tags)
            VALUES('delete', old.rowid, old.content, old.tags);
        END;

        CREATE TABLE IF NOT EXISTS thread_sessions (
            thread_id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            share_url TEXT,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_thread_sessions_updated ON thread_sessions(updated_at);

        CREATE TABLE IF NOT EXISTS chatmem_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
        """
    )
    _ensure_column(conn, "summaries", "session_id", "TEXT")
    _ensure_column(conn, "summaries", "first_message_id", "TEXT")
    _ensure_column(conn, "summaries", "last_message_id", "TEXT")
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_summaries_range
            ON summaries(thread_id, session_id, first_message_id, last_message_id)
        """
    )
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    conn.commit()


def schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0]) if row else 0


def get_meta(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM chatmem_meta WHERE key = ?", (key,)).fetchone()
    return str(row["value"]) if row else None


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO chatmem_meta(key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )


def initialize_vector_schema(conn: sqlite3.Connection, dimensions: int) -> None:
    """Create the vec0 tables. Requires sqlite-vec to be loaded on ``conn``.

    Raises ValueError when the tables already exist with another dimensionality.
    """
    if dimensions <= 0:
        raise ValueError(f"invalid embedding dimensions: {dimensions}")
    recorded = get_meta(conn, META_EMBEDDING_DIMENSIONS)
    if recorded is not None and int(recorded) != dimensions:
        raise ValueError(
            f"vector tables were created with {recorded} dimensions, configured {dimensions}"
        )
    conn.execute(
        f"""
        CREATE VIRTUAL TABLE IF NOT EXISTS summaries_vec USING vec0(
            id TEXT PRIMARY KEY,
            embedding float[{dimensions}]
        )
        """
    )
    conn.execute(
        f"""
        CREATE VIRTUAL TABLE IF NOT EXISTS memories_vec USING vec0(
            id TEXT PRIMARY KEY,
            embedding float[{dimensions}]
        )
        """
    )
    set_meta(conn, META_EMBEDDING_DIMENSIONS, str(dimensions))
    conn.commit()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


def serialize_vector(vector: list[float]) -> bytes:
    return sqlite_vec.serialize_float32([float(value) for value in vector])


def to_json(data: Any) -> str:
    if data is None:
        payload: Any = []
    else:
        payload = data
    return json.dumps(payload, ensure_ascii=False)


def from_json_list(text: str | None) -> list[str]:
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return []
    if not isinstance(data, list):
        return []
    return [str(item) for item in data]
