from __future__ import annotations

from chatmem.config import ChatmemConfig
from chatmem.retrieval import (
    CONTEXT_HEADING,
    format_memories_for_context,
    format_memory,
    retrieve_relevant_memories,
)
from chatmem.types import TimeRange, UnifiedSearchResult


def _archive(result_id: str, score: float, text: str = "Chose sqlite") -> UnifiedSearchResult:
    return UnifiedSearchResult(
        id=result_id,
        source="archive",
        text=text,
        relevance_score=score,
        thread_id="thread-1",
        token_count=100,
        # 2026-01-15T00:00:00Z
        time_range=TimeRange(start=1_768_435_200_000, end=1_768_435_300_000),
    )


def _memory(result_id: str, score: float) -> UnifiedSearchResult:
    return UnifiedSearchResult(
        id=result_id,
        source="memory",
        text="Prefers tabs",
        relevance_score=score,
        memory_type="preference",
        tags=["style", "editor"],
    )


class RecordingSearch:
    def __init__(self, results: list[UnifiedSearchResult]) -> None:
        self.results = results
        self.calls: list[tuple] = []

    def __call__(self, query, limit, thread_id, *, min_score=0.0):
        self.calls.append((query, limit, thread_id, min_score))
        return self.results


def test_retrieve_filters_by_relevance_and_top_k() -> None:
    config = ChatmemConfig(auto_memory_top_k=2, auto_memory_min_relevance=0.5)
    search = RecordingSearch(
        [_archive("a", 0.9), _memory("b", 0.7), _archive("c", 0.6), _archive("d", 0.2)]
    )

    results = retrieve_relevant_memories(
        search, "how did we set up storage?", "thread-1", config=config
    )

    assert results is not None
    assert [r.id for r in results] == ["a", "b"]
    assert search.calls == [("how did we set up storage?", 4, None, 0.5)]


def test_retrieve_scopes_to_thread_when_configured() -> None:
    config = ChatmemConfig(auto_memory_thread_scoped=True)
    search = RecordingSearch([])

    assert retrieve_relevant_memories(search, "storage plans", "thread-9", config=config) is None
    assert search.calls[0][2] == "thread-9"


def test_retrieve_skips_short_messages_and_disabled_config() -> None:
    search = RecordingSearch([_archive("a", 0.9)])

    assert retrieve_relevant_memories(search, " hi ", config=ChatmemConfig()) is None
    assert (
        retrieve_relevant_memories(
            search, "storage plans", config=ChatmemConfig(auto_memory_enabled=False)
        )
        is None
    )
    disabled = ChatmemConfig(enabled=False)
    assert retrieve_relevant_memories(search, "storage plans", config=disabled) is None
    assert search.calls == []


def test_retrieve_swallows_search_errors() -> None:
    def _broken(*args, **kwargs):
        raise RuntimeError("index locked")

    assert retrieve_relevant_memories(_broken, "storage plans", config=ChatmemConfig()) is None


def test_format_memory() -> None:
    assert format_memory(_archive("a", 0.9)) == "[Past Conversation] (2026-01-15) : Chose sqlite"
    assert format_memory(_memory("b", 0.9)) == "[Preference] (style, editor) : Prefers tabs"


def test_format_memories_for_context() -> None:
    text = format_memories_for_context([_archive("a", 0.9), _memory("b", 0.8)], max_chars=2000)

    lines = text.split("\n")
    assert lines[1] == CONTEXT_HEADING
    assert "[Past Conversation] (2026-01-15) : Chose sqlite" in lines
    assert "[Preference] (style, editor) : Prefers tabs" in lines


def test_format_memories_respects_max_chars() -> None:
    results = [_archive("a", 0.9, "x" * 50), _archive("b", 0.8, "y" * 50)]

    text = format_memories_for_context(results, max_chars=90)

    assert "x" * 50 in text
    assert "y" * 50 not in text
    assert format_memories_for_context(results, max_chars=10) == ""
    assert format_memories_for_context(None, max_chars=100) == ""
