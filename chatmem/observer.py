from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Any

from .config import ChatmemConfig
from .runtime import SessionSource
from .semantic import EmbeddingClient, embed_text
from .storage import ChunkStore, thread_dirname
from .store import IndexStore
from .summarizer import SummaryClient
from .tokenizer import estimate_message_tokens, estimate_messages_tokens
from .types import (
    ArchiveChunk,
    ArchiveWatermark,
    Message,
    MessageRange,
    SummaryIndexEntry,
)
from .utils import new_id, now_iso, now_ms, scrub_surrogates

logger = logging.getLogger(__name__)


class ArchivalCancelled(Exception):
    """An archival attempt was cancelled before it committed."""


def build_chunk_messages(
    messages: Sequence[Message], chunk_token_min: int, chunk_token_max: int
) -> list[Message]:
    """Take the oldest messages that fit under ``chunk_token_max``.

    A lone message larger than the max still forms a chunk. A chunk under
    ``chunk_token_min`` is only returned when it covers every message.
    """
    chunk: list[Message] = []
    tokens = 0
    for message in messages:
        message_tokens = estimate_message_tokens(message)
        if chunk and tokens + message_tokens > chunk_token_max:
            break
        chunk.append(message)
        tokens += message_tokens
    if tokens < chunk_token_min and len(chunk) < len(messages):
        return []
    return chunk


def _message_timestamp(message: Message, default: int) -> int:
    created = (message.get("time") or {}).get("created")
    if isinstance(created, (int, float)) and not isinstance(created, bool):
        return int(created)
    return default


class ArchivalObserver:
    def __init__(
        self,
        config: ChatmemConfig,
        chunk_store: ChunkStore,
        index_store: IndexStore,
        session_source: SessionSource,
        summarizer: SummaryClient,
        embedder: EmbeddingClient | None = None,
    ) -> None:
        self.config = config
        self.chunk_store = chunk_store
        self.index_store = index_store
        self.session_source = session_source
        self.summarizer = summarizer
        self.embedder = embedder
        self._guard = threading.Lock()
        self._idle = threading.Condition(self._guard)
        self._thread_locks: dict[str, threading.Lock] = {}
        self._active: set[str] = set()
        # thread id -> latest session id seen while that thread was busy
        self._pending: dict[str, str] = {}
        self._cancel = threading.Event()

    def _thread_lock(self, thread_id: str) -> threading.Lock:
        with self._guard:
            lock = self._thread_locks.get(thread_id)
            if lock is None:
                lock = threading.Lock()
                self._thread_locks[thread_id] = lock
            return lock

    def _state(self, thread_id: str, state: str, **extra: Any) -> None:
        logger.debug(f"archival {state}", extra={"thread_id": thread_id, "state": state, **extra})

    @staticmethod
    def _check_cancel(cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise ArchivalCancelled("archival cancelled")

    def check_and_archive(
        self,
        thread_id: str,
        session_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> ArchiveChunk | None:
        """Archive at most one chunk from the thread's unarchived tail."""
        thread_dirname(thread_id)
        if not session_id or not session_id.strip():
            raise ValueError("session_id is required")
        with self._thread_lock(thread_id):
            return self._archive_once(thread_id, session_id, cancel)

    def archive_pending(
        self,
        thread_id: str,
        session_id: str,
        *,
        cancel: threading.Event | None = None,
    ) -> list[ArchiveChunk]:
        """Archive chunks until the tail is below the threshold."""
        chunks: list[ArchiveChunk] = []
        while True:
            chunk = self.check_and_archive(thread_id, session_id, cancel=cancel)
            if chunk is None:
                return chunks
            chunks.append(chunk)

    def _archive_once(
        self, thread_id: str, session_id: str, cancel: threading.Event | None
    ) -> ArchiveChunk | None:
        cfg = self.config
        self._check_cancel(cancel)
        self._state(thread_id, "observing", session_id=session_id)
        messages = self.session_source.get_session_messages(session_id)
        if not messages:
            self._state(thread_id, "idle", reason="no_messages")
            return None

        watermark = self.chunk_store.read_watermark(thread_id)
        if watermark is not None and watermark.session_id != session_id:
            logger.info(
                "session changed; restarting archival for thread",
                extra={
                    "thread_id": thread_id,
                    "previous_session_id": watermark.session_id,
                    "session_id": session_id,
                },
            )
            watermark = None
        start = watermark.last_archived_message_index + 1 if watermark else 0
        tail = list(messages[start:])
        if not tail:
            self._state(thread_id, "idle", reason="nothing_new")
            return None

        tail_tokens = estimate_messages_tokens(tail)
        if tail_tokens < cfg.chunk_token_min or tail_tokens < cfg.chunk_token_threshold:
            self._state(thread_id, "idle", reason="below_threshold", tail_tokens=tail_tokens)
            return None

        chunk_messages = build_chunk_messages(tail, cfg.chunk_token_min, cfg.chunk_token_max)
        if not chunk_messages:
            self._state(thread_id, "idle", reason="chunk_too_small", tail_tokens=tail_tokens)
            return None
        chunk_tokens = estimate_messages_tokens(chunk_messages)
        first = chunk_messages[0]
        last = chunk_messages[-1]
        first_id = str(first.get("id") or "")
        last_id = str(last.get("id") or "")
        new_index = start + len(chunk_messages) - 1
        self._state(
            thread_id,
            "chunk-ready",
            messages=len(chunk_messages),
            tokens=chunk_tokens,
        )

        recovered = self._recover_committed(thread_id, session_id, first_id, last_id)
        if recovered is not None:
            self._advance_watermark(
                thread_id, session_id, watermark, new_index, last_id, recovered.token_count
            )
            logger.info(
                "watermark recovered for already committed chunk",
                extra={"thread_id": thread_id, "chunk_id": recovered.id},
            )
            return recovered

        self._check_cancel(cancel)
        self._state(thread_id, "summarizing")
        summary = scrub_surrogates(
            self.summarizer.summarize(chunk_messages, cfg.max_summary_tokens)
        )
        if not summary.strip():
            raise ValueError("summarizer returned an empty summary")

        self._check_cancel(cancel)
        embedding: list[float] | None = None
        if self.embedder is not None and self.index_store.vector_ready:
            self._state(thread_id, "embedding")
            embedding = embed_text(self.embedder, summary)

        self._check_cancel(cancel)
        now = now_ms()
        chunk = ArchiveChunk(
            id=new_id("chunk"),
            thread_id=thread_id,
            session_id=session_id,
            summary=summary,
            messages=chunk_messages,
            token_count=chunk_tokens,
            message_count=len(chunk_messages),
            message_range=MessageRange(
                first_message_id=first_id,
                last_message_id=last_id,
                first_timestamp=_message_timestamp(first, now),
                last_timestamp=_message_timestamp(last, now),
            ),
            created_at=now_iso(),
        )
        self.chunk_store.write_chunk(chunk)
        try:
            self.index_store.insert_summary(SummaryIndexEntry.from_chunk(chunk), embedding)
        except Exception:
            # No chunk file without an index row.
            self.chunk_store.delete_chunk(thread_id, chunk.id)
            raise
        self._advance_watermark(thread_id, session_id, watermark, new_index, last_id, chunk_tokens)
        self._state(thread_id, "committed", chunk_id=chunk.id, watermark_index=new_index)
        logger.info(
            "chunk archived",
            extra={
                "thread_id": thread_id,
                "chunk_id": chunk.id,
                "messages": chunk.message_count,
                "tokens": chunk_tokens,
                "watermark_index": new_index,
            },
        )
        return chunk

    def _recover_committed(
        self, thread_id: str, session_id: str, first_id: str, last_id: str
    ) -> ArchiveChunk | None:
        if not first_id or not last_id:
            return None
        existing = self.index_store.find_summary_for_range(
            thread_id, session_id, first_id, last_id
        )
        if existing is None:
            return None
        return self.chunk_store.read_chunk(thread_id, existing.chunk_id)

    def _advance_watermark(
        self,
        thread_id: str,
        session_id: str,
        previous: ArchiveWatermark | None,
        new_index: int,
        last_id: str,
        chunk_tokens: int,
    ) -> None:
        watermark = ArchiveWatermark(
            last_archived_message_index=new_index,
            last_archived_message_id=last_id,
            total_archived_tokens=(previous.total_archived_tokens if previous else 0)
            + chunk_tokens,
            total_chunks=(previous.total_chunks if previous else 0) + 1,
            last_archived_at=now_iso(),
            session_id=session_id,
        )
        self.chunk_store.write_watermark(thread_id, watermark)

    def on_turn_complete(self, thread_id: str, session_id: str) -> None:
        """Schedule archival for a thread without waiting for it."""
        if not self.config.enabled or self._cancel.is_set():
            return
        try:
            thread_dirname(thread_id)
        except ValueError:
            logger.warning("ignoring turn for invalid thread id", extra={"thread_id": thread_id})
            return
        if not session_id or not session_id.strip():
            logger.warning("ignoring turn without session id", extra={"thread_id": thread_id})
            return
        with self._guard:
            if thread_id in self._active:
                self._pending[thread_id] = session_id
                return
            self._active.add(thread_id)
        worker = threading.Thread(
            target=self._run_worker,
            args=(thread_id, session_id),
            name=f"chatmem-archive-{thread_id[:32]}",
            daemon=True,
        )
        try:
            worker.start()
        except RuntimeError:
            with self._guard:
                self._active.discard(thread_id)
                self._idle.notify_all()
            logger.exception("failed to start archival worker", extra={"thread_id": thread_id})

    def _run_worker(self, thread_id: str, session_id: str) -> None:
        current = session_id
        while True:
            try:
                self.archive_pending(thread_id, current, cancel=self._cancel)
            except ArchivalCancelled:
                logger.debug("archival cancelled", extra={"thread_id": thread_id})
            except Exception as exc:
                logger.exception(
                    "archival failed",
                    extra={"thread_id": thread_id, "session_id": current},
                    exc_info=exc,
                )
            with self._guard:
                deferred = self._pending.pop(thread_id, None)
                if deferred is None or self._cancel.is_set():
                    self._active.discard(thread_id)
                    self._idle.notify_all()
                    return
            current = deferred

    def is_busy(self, thread_id: str) -> bool:
        with self._guard:
            return thread_id in self._active

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._active, timeout)

    def close(self, timeout: float | None = None) -> None:
        self._cancel.set()
        with self._guard:
            self._pending.clear()
        if timeout is not None:
            self.wait_idle(timeout)
