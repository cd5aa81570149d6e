from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .. import db
from ..semantic import EmbeddingClient, embed_text
from ..types import TimeRange, UnifiedSearchResult
from .memories import row_to_memory
from .summaries import row_to_entry
from .vectors import cosine_score

if TYPE_CHECKING:
    from ._store import IndexStore

logger = logging.getLogger(__name__)


@dataclass
class _Candidate:
    row: sqlite3.Row
    score: float
    from_vector: bool


def _tokenize(query: str) -> list[str]:
    return re.findall(r"\w+", query)


def expand_query(query: str, stopwords: set[str]) -> str:
    """Build an FTS5 MATCH expression: quoted tokens joined with OR.

    Stopwords are dropped unless nothing else is left.
    """
    tokens = _tokenize(query)
    if not tokens:
        return ""
    meaningful = [token for token in tokens if token.lower() not in stopwords]
    if meaningful:
        tokens = meaningful
    seen: set[str] = set()
    unique: list[str] = []
    for token in tokens:
        key = token.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(token)
    return " OR ".join(f'"{token}"' for token in unique)


def fts_scores(ranks: list[float | None]) -> list[float]:
    """Scale bm25 ranks into [0, 1]; the strongest match in the set scores 1.0.

    Raw bm25 is near zero for terms found in half the rows or more, so only
    the ratio to the best rank is kept. A set with no signal scores 1.0.
    """
    strengths = [max(0.0, -float(rank)) if rank is not None else 0.0 for rank in ranks]
    best = max(strengths, default=0.0)
    if best <= 0.0:
        return [1.0 for _ in strengths]
    return [strength / best for strength in strengths]


def _candidate_limit(store: IndexStore, limit: int) -> int:
    return max(store.SEARCH_CANDIDATE_LIMIT, limit * 10)


def _fts_summaries(
    conn: sqlite3.Connection, match: str, thread_id: str | None, cap: int
) -> list[sqlite3.Row]:
    params: list[Any] = [match]
    thread_clause = ""
    if thread_id is not None:
        thread_clause = "AND summaries.thread_id = ?"
        params.append(thread_id)
    params.append(cap)
    return conn.execute(
        f"""
        SELECT summaries.*, bm25(summaries_fts) AS rank
        FROM summaries_fts
        JOIN summaries ON summaries.rowid = summaries_fts.rowid
        WHERE summaries_fts MATCH ?
        {thread_clause}
        ORDER BY rank
        LIMIT ?
        """,
        params,
    ).fetchall()


def _fts_memories(conn: sqlite3.Connection, match: str, cap: int) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT memories.*, bm25(memories_fts) AS rank
        FROM memories_fts
        JOIN memories ON memories.rowid = memories_fts.rowid
        WHERE memories_fts MATCH ?
        ORDER BY rank
        LIMIT ?
        """,
        (match, cap),
    ).fetchall()


def _vector_summaries(
    conn: sqlite3.Connection, blob: bytes, thread_id: str | None, cap: int
) -> list[sqlite3.Row]:
    params: list[Any] = [blob]
    thread_clause = ""
    if thread_id is not None:
        thread_clause = "WHERE summaries.thread_id = ?"
        params.append(thread_id)
    params.append(cap)
    return conn.execute(
        f"""
        SELECT summaries.*, vec_distance_cosine(summaries_vec.embedding, ?) AS distance
        FROM summaries_vec
        JOIN summaries ON summaries.id = summaries_vec.id
        {thread_clause}
        ORDER BY distance ASC
        LIMIT ?
        """,
        params,
    ).fetchall()


def _vector_memories(conn: sqlite3.Connection, blob: bytes, cap: int) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT memories.*, vec_distance_cosine(memories_vec.embedding, ?) AS distance
        FROM memories_vec
        JOIN memories ON memories.id = memories_vec.id
        ORDER BY distance ASC
        LIMIT ?
        """,
        (blob, cap),
    ).fetchall()


def _merge(
    fts_rows: list[sqlite3.Row], vector_rows: list[sqlite3.Row]
) -> dict[str, _Candidate]:
    merged: dict[str, _Candidate] = {}
    scores = fts_scores([row["rank"] for row in fts_rows])
    for row, score in zip(fts_rows, scores, strict=True):
        merged[row["id"]] = _Candidate(row=row, score=score, from_vector=False)
    for row in vector_rows:
        # Vector similarity replaces the lexical score whenever both exist.
        merged[row["id"]] = _Candidate(
            row=row, score=cosine_score(row["distance"]), from_vector=True
        )
    return merged


def _archive_result(candidate: _Candidate) -> UnifiedSearchResult:
    entry = row_to_entry(candidate.row)
    return UnifiedSearchResult(
        id=entry.chunk_id,
        source="archive",
        text=entry.summary,
        relevance_score=candidate.score,
        thread_id=entry.thread_id,
        token_count=entry.token_count,
        time_range=TimeRange(start=entry.time_range.start, end=entry.time_range.end),
    )


def _memory_result(candidate: _Candidate) -> UnifiedSearchResult:
    memory = row_to_memory(candidate.row)
    return UnifiedSearchResult(
        id=memory.id,
        source="memory",
        text=memory.content,
        relevance_score=candidate.score,
        memory_type=memory.type,
        tags=list(memory.tags),
    )


def _embed_query(
    store: IndexStore, query: str, embedder: EmbeddingClient | None
) -> bytes | None:
    if embedder is None or not store.vector_ready:
        return None
    try:
        vector = embed_text(embedder, query)
    except Exception as exc:
        logger.warning(
            "query embedding failed; using full-text search only",
            extra={"error": str(exc)},
        )
        return None
    if len(vector) != store.dimensions:
        logger.warning(
            "query embedding has wrong dimensions; using full-text search only",
            extra={"got": len(vector), "expected": store.dimensions},
        )
        return None
    return db.serialize_vector(vector)


def search(
    store: IndexStore,
    query: str,
    limit: int = 5,
    thread_id: str | None = None,
    *,
    embedder: EmbeddingClient | None = None,
    min_score: float = 0.0,
) -> list[UnifiedSearchResult]:
    """Hybrid search over archived summaries and persistent memories.

    A thread filter restricts results to that thread's archive; memories have
    no thread and are left out.
    """
    if not isinstance(query, str) or not query.strip():
        raise ValueError("query must not be empty")
    if limit <= 0:
        raise ValueError("limit must be positive")
    cap = _candidate_limit(store, limit)
    match = expand_query(query, store.STOPWORDS)
    blob = _embed_query(store, query, embedder)
    include_memories = thread_id is None

    with store.reading() as conn:
        summary_fts = _fts_summaries(conn, match, thread_id, cap) if match else []
        memory_fts = _fts_memories(conn, match, cap) if match and include_memories else []
        summary_vec: list[sqlite3.Row] = []
        memory_vec: list[sqlite3.Row] = []
        if blob is not None:
            summary_vec = _vector_summaries(conn, blob, thread_id, cap)
            if include_memories:
                memory_vec = _vector_memories(conn, blob, cap)

    results = [_archive_result(c) for c in _merge(summary_fts, summary_vec).values()]
    results.extend(_memory_result(c) for c in _merge(memory_fts, memory_vec).values())
    results = [item for item in results if item.relevance_score >= min_score]
    results.sort(key=lambda item: (-item.relevance_score, item.id))
    logger.debug(
        "search complete",
        extra={
            "query_terms": match,
            "thread_id": thread_id,
            "vector": blob is not None,
            "candidates": len(results),
        },
    )
    return results[:limit]
