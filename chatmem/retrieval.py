from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Sequence

from .config import ChatmemConfig
from .types import UnifiedSearchResult

logger = logging.getLogger(__name__)

MIN_MESSAGE_CHARS = 3
CONTEXT_HEADING = "## Relevant Context from Memory"
CONTEXT_INTRO = "The following information from past conversations may be relevant:"

SearchFn = Callable[..., list[UnifiedSearchResult]]


def retrieve_relevant_memories(
    search_fn: SearchFn,
    message: str,
    thread_id: str | None = None,
    *,
    config: ChatmemConfig,
) -> list[UnifiedSearchResult] | None:
    """Best-effort lookup of memories relevant to an incoming message.

    ``search_fn`` is called as ``search_fn(query, limit, thread_id, min_score=...)``.
    Returns None when there is nothing worth injecting.
    """
    if not config.enabled or not config.auto_memory_enabled:
        return None
    if len((message or "").strip()) < MIN_MESSAGE_CHARS:
        return None
    top_k = max(1, config.auto_memory_top_k)
    min_relevance = config.auto_memory_min_relevance
    try:
        results = search_fn(
            message,
            top_k * 2,
            thread_id if config.auto_memory_thread_scoped else None,
            min_score=min_relevance,
        )
    except Exception as exc:
        logger.warning("auto retrieval failed", extra={"error": str(exc)})
        return None
    relevant = [item for item in results if item.relevance_score >= min_relevance][:top_k]
    return relevant or None


def _format_date(epoch_ms: int) -> str:
    return dt.datetime.fromtimestamp(epoch_ms / 1000, tz=dt.UTC).strftime("%Y-%m-%d")


def format_memory(result: UnifiedSearchResult) -> str:
    parts: list[str] = []
    if result.source == "archive":
        parts.append("[Past Conversation]")
        if result.time_range is not None and result.time_range.start > 0:
            parts.append(f"({_format_date(result.time_range.start)})")
    else:
        memory_type = result.memory_type or "fact"
        parts.append(f"[{memory_type.capitalize()}]")
        if result.tags:
            parts.append(f"({', '.join(result.tags)})")
    parts.append(":")
    parts.append(result.text)
    return " ".join(parts)


def format_memories_for_context(
    results: Sequence[UnifiedSearchResult] | None, max_chars: int
) -> str:
    if not results:
        return ""
    total = 0
    formatted: list[str] = []
    for result in results:
        line = format_memory(result)
        if total + len(line) > max_chars:
            break
        formatted.append(line)
        total += len(line)
    if not formatted:
        return ""
    return "\n".join(["", CONTEXT_HEADING, CONTEXT_INTRO, "", *formatted, ""])
