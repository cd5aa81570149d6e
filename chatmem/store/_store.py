from __future__ import annotations

import logging
import os
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .. import db
from ..semantic import EmbeddingClient
from ..storage import ChunkStore
from ..types import (
    MemoryType,
    PersistentMemory,
    SummaryIndexEntry,
    ThreadSession,
    UnifiedSearchResult,
)
from . import maintenance as store_maintenance
from . import memories as store_memories
from . import search as store_search
from . import summaries as store_summaries
from . import thread_sessions as store_thread_sessions

logger = logging.getLogger(__name__)

STATE_NEW = "new"
STATE_READY = "ready"
STATE_CLOSED = "closed"


def _vector_disabled_by_env() -> bool:
    return os.getenv("CHATMEM_VECTOR_DISABLED", "").lower() in {"1", "true", "yes"}


class IndexStore:
    """Summaries, persistent memories and their FTS5 / sqlite-vec indexes.

    Lifecycle is new -> ready -> closed. One connection is shared across
    threads and serialized by a re-entrant lock.
    """

    SEARCH_CANDIDATE_LIMIT = 50
    STOPWORDS = {
        "a",
        "an",
        "and",
        "are",
        "as",
        "at",
        "be",
        "but",
        "by",
        "did",
        "do",
        "for",
        "from",
        "has",
        "have",
        "how",
        "i",
        "in",
        "is",
        "it",
        "me",
        "my",
        "of",
        "on",
        "or",
        "our",
        "so",
        "that",
        "the",
        "their",
        "them",
        "then",
        "there",
        "this",
        "to",
        "was",
        "we",
        "were",
        "what",
        "when",
        "where",
        "which",
        "who",
        "with",
        "you",
        "your",
    }

    def __init__(
        self,
        db_path: Path | str,
        dimensions: int = 384,
        *,
        vector_enabled: bool = True,
    ) -> None:
        self.db_path = Path(db_path).expanduser()
        self.dimensions = int(dimensions)
        self.vector_enabled = vector_enabled
        self.vector_ready = False
        self.vector_error: str | None = None
        self.state = STATE_NEW
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def open(self) -> IndexStore:
        with self._lock:
            if self.state == STATE_READY:
                return self
            if self.state == STATE_CLOSED:
                raise RuntimeError("index store is closed")
            conn = db.connect(self.db_path, check_same_thread=False)
            try:
                db.initialize_schema(conn)
            except Exception:
                conn.close()
                raise
            self._conn = conn
            self.vector_ready = self._init_vectors(conn)
            self.state = STATE_READY
        logger.debug(
            "index store ready",
            extra={"db_path": str(self.db_path), "vector_ready": self.vector_ready},
        )
        return self

    def _init_vectors(self, conn: sqlite3.Connection) -> bool:
        if not self.vector_enabled or _vector_disabled_by_env():
            self.vector_error = "disabled"
            logger.info("vector search disabled; using full-text search only")
            return False
        try:
            db.load_sqlite_vec(conn)
            db.initialize_vector_schema(conn, self.dimensions)
        except (RuntimeError, ValueError, sqlite3.Error) as exc:
            self.vector_error = str(exc)
            logger.warning(
                "vector backend unavailable; using full-text search only",
                extra={"db_path": str(self.db_path), "error": str(exc)},
            )
            return False
        return True

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self.state = STATE_CLOSED
            self.vector_ready = False

    def __enter__(self) -> IndexStore:
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self.state != STATE_READY or self._conn is None:
            raise RuntimeError(f"index store is {self.state}; call open() first")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            yield self.conn

    # summaries
    def insert_summary(
        self, entry: SummaryIndexEntry, embedding: Sequence[float] | None = None
    ) -> None:
        store_summaries.insert_summary(self, entry, embedding)

    def get_summary(self, chunk_id: str) -> SummaryIndexEntry | None:
        return store_summaries.get_summary(self, chunk_id)

    def find_summary_for_range(
        self,
        thread_id: str,
        session_id: str,
        first_message_id: str,
        last_message_id: str,
    ) -> SummaryIndexEntry | None:
        return store_summaries.find_summary_for_range(
            self, thread_id, session_id, first_message_id, last_message_id
        )

    def list_summaries(
        self, thread_id: str | None = None, limit: int | None = 50
    ) -> list[SummaryIndexEntry]:
        return store_summaries.list_summaries(self, thread_id, limit)

    def delete_summary(self, chunk_id: str) -> bool:
        return store_summaries.delete_summary(self, chunk_id)

    def list_archive_threads(self) -> list[dict[str, Any]]:
        return store_summaries.list_archive_threads(self)

    # persistent memories
    def insert_memory(
        self, memory: PersistentMemory, embedding: Sequence[float] | None = None
    ) -> None:
        store_memories.insert_memory(self, memory, embedding)

    def update_memory(
        self, memory: PersistentMemory, embedding: Sequence[float] | None = None
    ) -> bool:
        return store_memories.update_memory(self, memory, embedding)

    def get_memory(self, memory_id: str) -> PersistentMemory | None:
        return store_memories.get_memory(self, memory_id)

    def list_memories(
        self, memory_type: MemoryType | None = None, limit: int = 100
    ) -> list[PersistentMemory]:
        return store_memories.list_memories(self, memory_type, limit)

    def delete_memory(self, memory_id: str) -> bool:
        return store_memories.delete_memory(self, memory_id)

    # search
    def search(
        self,
        query: str,
        limit: int = 5,
        thread_id: str | None = None,
        *,
        embedder: EmbeddingClient | None = None,
        min_score: float = 0.0,
    ) -> list[UnifiedSearchResult]:
        return store_search.search(
            self, query, limit, thread_id, embedder=embedder, min_score=min_score
        )

    # thread sessions
    def upsert_thread_session(
        self, thread_id: str, session_id: str, share_url: str | None = None
    ) -> ThreadSession:
        return store_thread_sessions.upsert_thread_session(self, thread_id, session_id, share_url)

    def get_thread_session(self, thread_id: str) -> ThreadSession | None:
        return store_thread_sessions.get_thread_session(self, thread_id)

    def delete_stale_thread_sessions(self, ttl_ms: int) -> int:
        return store_thread_sessions.delete_stale_thread_sessions(self, ttl_ms)

    # maintenance
    def rebuild_summaries(
        self,
        chunk_store: ChunkStore,
        embedder: EmbeddingClient | None = None,
        *,
        prune: bool = True,
    ) -> dict[str, int]:
        return store_maintenance.rebuild_summaries(self, chunk_store, embedder, prune=prune)

    def backfill_vectors(
        self,
        embedder: EmbeddingClient | None,
        limit: int | None = None,
        *,
        dry_run: bool = False,
    ) -> dict[str, int]:
        return store_maintenance.backfill_vectors(self, embedder, limit, dry_run=dry_run)

    def stats(self) -> dict[str, Any]:
        with self.reading() as conn:
            summaries = conn.execute("SELECT COUNT(*) FROM summaries").fetchone()[0]
            threads = conn.execute("SELECT COUNT(DISTINCT thread_id) FROM summaries").fetchone()[0]
            tokens = conn.execute(
                "SELECT COALESCE(SUM(token_count), 0) FROM summaries"
            ).fetchone()[0]
            memories = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            by_type = {
                row["type"]: int(row["n"])
                for row in conn.execute(
                    "SELECT type, COUNT(*) AS n FROM memories GROUP BY type ORDER BY type"
                ).fetchall()
            }
            vectors: dict[str, int] | None = None
            if self.vector_ready:
                vectors = {
                    "summaries": conn.execute("SELECT COUNT(*) FROM summaries_vec").fetchone()[0],
                    "memories": conn.execute("SELECT COUNT(*) FROM memories_vec").fetchone()[0],
                }
            return {
                "db_path": str(self.db_path),
                "schema_version": db.schema_version(conn),
                "vector_ready": self.vector_ready,
                "dimensions": self.dimensions,
                "summaries": int(summaries),
                "archived_threads": int(threads),
                "archived_tokens": int(tokens),
                "memories": int(memories),
                "memories_by_type": by_type,
                "vectors": vectors,
            }
