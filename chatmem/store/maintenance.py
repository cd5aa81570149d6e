from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..semantic import EmbeddingClient, embed_text, embed_texts
from ..storage import ChunkStore
from ..types import SummaryIndexEntry
from . import vectors as store_vectors

if TYPE_CHECKING:
    from ._store import IndexStore

logger = logging.getLogger(__name__)

BACKFILL_BATCH_SIZE = 32


def rebuild_summaries(
    store: IndexStore,
    chunk_store: ChunkStore,
    embedder: EmbeddingClient | None = None,
    *,
    prune: bool = True,
) -> dict[str, int]:
    """Re-create summary rows from chunk files and drop rows whose file is gone."""
    checked = 0
    inserted = 0
    skipped = 0
    pruned = 0
    for thread_id in chunk_store.list_threads():
        for chunk_id in chunk_store.list_chunk_ids(thread_id):
            checked += 1
            if store.get_summary(chunk_id) is not None:
                continue
            chunk = chunk_store.read_chunk(thread_id, chunk_id)
            if chunk is None or not chunk.summary.strip():
                skipped += 1
                continue
            embedding = None
            if embedder is not None and store.vector_ready:
                try:
                    embedding = embed_text(embedder, chunk.summary)
                except Exception as exc:
                    logger.warning(
                        "rebuild: embedding failed; row stored without vector",
                        extra={"chunk_id": chunk_id, "error": str(exc)},
                    )
            store.insert_summary(SummaryIndexEntry.from_chunk(chunk), embedding)
            inserted += 1
    if prune:
        for entry in store.list_summaries(limit=None):
            if chunk_store.chunk_exists(entry.thread_id, entry.chunk_id):
                continue
            if store.delete_summary(entry.chunk_id):
                pruned += 1
    return {"checked": checked, "inserted": inserted, "skipped": skipped, "pruned": pruned}


def _missing_vector_rows(
    store: IndexStore, table: str, text_column: str, vector_table: str, limit: int | None
) -> list[tuple[str, str]]:
    params: list[Any] = []
    limit_clause = ""
    if limit:
        limit_clause = "LIMIT ?"
        params.append(limit)
    with store.reading() as conn:
        rows = conn.execute(
            f"""
            SELECT id, {text_column} AS text
            FROM {table}
            WHERE id NOT IN (SELECT id FROM {vector_table})
            ORDER BY created_at ASC, id ASC
            {limit_clause}
            """,
            params,
        ).fetchall()
    return [(row["id"], row["text"] or "") for row in rows]


def backfill_vectors(
    store: IndexStore,
    embedder: EmbeddingClient | None,
    limit: int | None = None,
    *,
    dry_run: bool = False,
) -> dict[str, int]:
    """Embed summaries and memories that have no vector yet."""
    counts = {"checked": 0, "embedded": 0, "inserted": 0, "skipped": 0}
    if embedder is None or not store.vector_ready:
        return counts
    targets = (
        ("summaries", "summary", "summaries_vec"),
        ("memories", "content", "memories_vec"),
    )
    for table, text_column, vector_table in targets:
        rows = _missing_vector_rows(store, table, text_column, vector_table, limit)
        counts["checked"] += len(rows)
        pending = [(item_id, text) for item_id, text in rows if text.strip()]
        counts["skipped"] += len(rows) - len(pending)
        for start in range(0, len(pending), BACKFILL_BATCH_SIZE):
            batch = pending[start : start + BACKFILL_BATCH_SIZE]
            vectors = embed_texts(embedder, [text for _, text in batch])
            counts["embedded"] += len(vectors)
            if dry_run:
                continue
            with store.transaction() as conn:
                for (item_id, _), vector in zip(batch, vectors, strict=True):
                    store_vectors.upsert_vector(store, conn, vector_table, item_id, vector)
                    counts["inserted"] += 1
    return counts
