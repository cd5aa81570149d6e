from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from .config import ChatmemConfig, load_config
from .observer import ArchivalObserver
from .persistent import PersistentMemoryManager
from .retrieval import format_memories_for_context, retrieve_relevant_memories
from .runtime import OpencodeSessionSource, SessionSource
from .semantic import EmbeddingClient, get_embedding_client
from .storage import ChunkStore
from .store import THREAD_SESSION_TTL_MS, IndexStore
from .summarizer import Summarizer, SummaryClient
from .types import (
    ArchiveChunk,
    PersistentMemory,
    SummaryIndexEntry,
    ThreadSession,
    UnifiedSearchResult,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class MemorySystem:
    """Wires the chunk store, index store, observer and memory manager together."""

    def __init__(
        self,
        config: ChatmemConfig | None = None,
        *,
        index_store: IndexStore | None = None,
        chunk_store: ChunkStore | None = None,
        session_source: SessionSource | None = None,
        summarizer: SummaryClient | None = None,
        embedder: EmbeddingClient | None = _UNSET,
    ) -> None:
        self.config = config or load_config()
        cfg = self.config
        self.chunk_store = chunk_store or ChunkStore(cfg.resolved_storage_path)
        self.index_store = index_store or IndexStore(
            cfg.resolved_db_path, cfg.resolved_embedding_dimensions
        )
        self.embedder = get_embedding_client(cfg) if embedder is _UNSET else embedder
        self.session_source = session_source or OpencodeSessionSource(
            cfg.runtime_base_url, timeout_s=cfg.collaborator_timeout_s
        )
        self.summarizer = summarizer or Summarizer(cfg)
        self.observer = ArchivalObserver(
            cfg,
            self.chunk_store,
            self.index_store,
            self.session_source,
            self.summarizer,
            self.embedder,
        )
        self.memories = PersistentMemoryManager(self.index_store, self.embedder)

    def open(self) -> MemorySystem:
        self.index_store.open()
        return self

    def close(self, timeout: float | None = 5.0) -> None:
        self.observer.close(timeout)
        self.index_store.close()

    def __enter__(self) -> MemorySystem:
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()

    # archival
    def on_turn_complete(self, thread_id: str, session_id: str) -> None:
        if not self.config.enabled:
            return
        try:
            self.index_store.upsert_thread_session(thread_id, session_id)
            self.index_store.delete_stale_thread_sessions(THREAD_SESSION_TTL_MS)
        except Exception as exc:
            logger.warning(
                "thread session bookkeeping failed",
                extra={"thread_id": thread_id, "error": str(exc)},
            )
        self.observer.on_turn_complete(thread_id, session_id)

    def resolve_session(self, thread_id: str) -> ThreadSession | None:
        return self.index_store.get_thread_session(thread_id)

    def archive_now(self, thread_id: str, session_id: str | None = None) -> list[ArchiveChunk]:
        """Synchronously drain the thread's archivable backlog."""
        if not session_id:
            mapping = self.resolve_session(thread_id)
            if mapping is None:
                raise ValueError(f"no known session for thread {thread_id!r}")
            session_id = mapping.session_id
        return self.observer.archive_pending(thread_id, session_id)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.observer.wait_idle(timeout)

    # retrieval
    def search(
        self,
        query: str,
        limit: int = 5,
        thread_id: str | None = None,
        *,
        min_score: float = 0.0,
    ) -> list[UnifiedSearchResult]:
        return self.index_store.search(
            query, limit, thread_id, embedder=self.embedder, min_score=min_score
        )

    def read_chunk(self, thread_id: str, chunk_id: str) -> ArchiveChunk | None:
        return self.chunk_store.read_chunk(thread_id, chunk_id)

    def list_archives(
        self, thread_id: str | None = None, limit: int = 50
    ) -> list[SummaryIndexEntry]:
        return self.index_store.list_summaries(thread_id, limit)

    def list_archive_threads(self) -> list[dict[str, Any]]:
        return self.index_store.list_archive_threads()

    def retrieve_context(self, message: str, thread_id: str | None = None) -> str:
        results = retrieve_relevant_memories(self.search, message, thread_id, config=self.config)
        return format_memories_for_context(results, self.config.auto_memory_max_chars)

    # persistent memories
    def write_memory(
        self, memory_type: str, content: str, tags: Iterable[str] | None = None
    ) -> PersistentMemory:
        return self.memories.write(memory_type, content, tags)

    def update_memory(
        self,
        memory_id: str,
        content: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> PersistentMemory | None:
        return self.memories.update(memory_id, content, tags)

    def delete_memory(self, memory_id: str) -> bool:
        return self.memories.delete(memory_id)

    def get_memory(self, memory_id: str) -> PersistentMemory | None:
        return self.memories.get(memory_id)

    def list_memories(
        self, memory_type: str | None = None, limit: int = 100
    ) -> list[PersistentMemory]:
        return self.memories.list(memory_type, limit)

    # maintenance
    def rebuild_index(self) -> dict[str, int]:
        return self.index_store.rebuild_summaries(self.chunk_store, self.embedder)

    def backfill_vectors(
        self, limit: int | None = None, *, dry_run: bool = False
    ) -> dict[str, int]:
        return self.index_store.backfill_vectors(self.embedder, limit, dry_run=dry_run)

    def stats(self) -> dict[str, Any]:
        stats = self.index_store.stats()
        stats["storage_path"] = str(self.chunk_store.root)
        stats["chunk_threads"] = len(self.chunk_store.list_threads())
        stats["embedder"] = getattr(self.embedder, "model", None)
        stats["enabled"] = self.config.enabled
        return stats
