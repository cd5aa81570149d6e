from __future__ import annotations

from pathlib import Path

import pytest

from chatmem.store import THREAD_SESSION_TTL_MS, IndexStore
from chatmem.types import PersistentMemory, SummaryIndexEntry, TimeRange
from chatmem.utils import now_ms


def _entry(
    chunk_id: str,
    summary: str,
    *,
    thread_id: str = "thread-1",
    created_at: str = "2026-01-01T00:00:00+00:00",
) -> SummaryIndexEntry:
    return SummaryIndexEntry(
        chunk_id=chunk_id,
        thread_id=thread_id,
        summary=summary,
        token_count=500,
        created_at=created_at,
        time_range=TimeRange(start=1000, end=2000),
        session_id="ses_1",
        first_message_id=f"{chunk_id}-first",
        last_message_id=f"{chunk_id}-last",
    )


def _memory(memory_id: str, content: str, memory_type: str = "fact") -> PersistentMemory:
    return PersistentMemory(
        id=memory_id,
        type=memory_type,  # type: ignore[arg-type]
        content=content,
        tags=["db"],
        created_at=f"2026-01-01T00:00:0{memory_id[-1]}+00:00",
        updated_at=f"2026-01-01T00:00:0{memory_id[-1]}+00:00",
    )


def test_insert_and_get_summary(store: IndexStore) -> None:
    entry = _entry("chunk_1", "Chose sqlite for storage")
    store.insert_summary(entry)

    assert store.get_summary("chunk_1") == entry
    assert store.get_summary("missing") is None


def test_insert_summary_is_an_upsert(store: IndexStore) -> None:
    store.insert_summary(_entry("chunk_1", "first draft about postgres"))
    store.insert_summary(_entry("chunk_1", "final text about sqlite"))

    assert len(store.list_summaries()) == 1
    assert [r.id for r in store.search("sqlite")] == ["chunk_1"]
    assert store.search("postgres") == []


def test_insert_summary_rejects_blank_text(store: IndexStore) -> None:
    with pytest.raises(ValueError):
        store.insert_summary(_entry("chunk_1", "   "))


def test_list_summaries_newest_first_and_by_thread(store: IndexStore) -> None:
    store.insert_summary(_entry("chunk_a", "one", created_at="2026-01-01T00:00:00+00:00"))
    store.insert_summary(_entry("chunk_b", "two", created_at="2026-01-02T00:00:00+00:00"))
    store.insert_summary(
        _entry("chunk_c", "three", thread_id="thread-2", created_at="2026-01-03T00:00:00+00:00")
    )

    assert [e.chunk_id for e in store.list_summaries()] == ["chunk_c", "chunk_b", "chunk_a"]
    assert [e.chunk_id for e in store.list_summaries("thread-1")] == ["chunk_b", "chunk_a"]
    assert [e.chunk_id for e in store.list_summaries(limit=1)] == ["chunk_c"]

    threads = store.list_archive_threads()
    assert [t["thread_id"] for t in threads] == ["thread-2", "thread-1"]
    assert threads[1]["chunks"] == 2
    assert threads[1]["tokens"] == 1000


def test_find_summary_for_range(store: IndexStore) -> None:
    store.insert_summary(_entry("chunk_1", "text"))

    found = store.find_summary_for_range("thread-1", "ses_1", "chunk_1-first", "chunk_1-last")
    assert found is not None and found.chunk_id == "chunk_1"
    missing = store.find_summary_for_range("thread-1", "ses_2", "chunk_1-first", "chunk_1-last")
    assert missing is None


def test_delete_summary(store: IndexStore) -> None:
    store.insert_summary(_entry("chunk_1", "sqlite notes"))

    assert store.delete_summary("chunk_1") is True
    assert store.delete_summary("chunk_1") is False
    assert store.search("sqlite") == []


def test_memory_crud(store: IndexStore) -> None:
    memory = _memory("mem_1", "User prefers tabs")
    store.insert_memory(memory)
    assert store.get_memory("mem_1") == memory

    memory.content = "User prefers spaces"
    memory.tags = ["style"]
    assert store.update_memory(memory) is True
    stored = store.get_memory("mem_1")
    assert stored is not None
    assert stored.content == "User prefers spaces"
    assert stored.tags == ["style"]

    assert store.update_memory(_memory("mem_9", "ghost")) is False
    assert store.delete_memory("mem_1") is True
    assert store.delete_memory("mem_1") is False
    assert store.get_memory("mem_1") is None


def test_list_memories_filters_and_orders(store: IndexStore) -> None:
    store.insert_memory(_memory("mem_1", "a fact"))
    store.insert_memory(_memory("mem_2", "a preference", "preference"))
    store.insert_memory(_memory("mem_3", "another fact"))

    assert [m.id for m in store.list_memories()] == ["mem_3", "mem_2", "mem_1"]
    assert [m.id for m in store.list_memories("fact")] == ["mem_3", "mem_1"]
    assert [m.id for m in store.list_memories(limit=1)] == ["mem_3"]
    with pytest.raises(ValueError):
        store.list_memories(limit=0)


def test_stats_counts_rows(store: IndexStore) -> None:
    store.insert_summary(_entry("chunk_1", "text"))
    store.insert_memory(_memory("mem_1", "a fact"))
    store.insert_memory(_memory("mem_2", "likes tea", "preference"))

    stats = store.stats()

    assert stats["summaries"] == 1
    assert stats["archived_threads"] == 1
    assert stats["archived_tokens"] == 500
    assert stats["memories"] == 2
    assert stats["memories_by_type"] == {"fact": 1, "preference": 1}


def test_vectors_follow_rows(store: IndexStore) -> None:
    if not store.vector_ready:
        pytest.skip("sqlite-vec unavailable")
    store.insert_summary(_entry("chunk_1", "text"), [1.0, 0.0, 0.0, 0.0])
    store.insert_memory(_memory("mem_1", "a fact"), [0.0, 1.0, 0.0, 0.0])
    assert store.stats()["vectors"] == {"summaries": 1, "memories": 1}

    # Updating content without a new embedding drops the stale vector.
    assert store.update_memory(_memory("mem_1", "changed")) is True
    assert store.stats()["vectors"] == {"summaries": 1, "memories": 0}

    store.delete_summary("chunk_1")
    assert store.stats()["vectors"] == {"summaries": 0, "memories": 0}


def test_wrong_dimension_embedding_is_rejected(store: IndexStore) -> None:
    if not store.vector_ready:
        pytest.skip("sqlite-vec unavailable")
    with pytest.raises(ValueError, match="dimensions"):
        store.insert_summary(_entry("chunk_1", "text"), [1.0, 0.0])
    assert store.get_summary("chunk_1") is None


def test_thread_session_upsert_keeps_created_at_for_same_session(store: IndexStore) -> None:
    first = store.upsert_thread_session("thread-1", "ses_1")
    again = store.upsert_thread_session("thread-1", "ses_1", share_url="https://share/x")
    assert again.created_at == first.created_at
    assert again.share_url == "https://share/x"

    switched = store.upsert_thread_session("thread-1", "ses_2")
    assert switched.session_id == "ses_2"
    assert switched.share_url == "https://share/x"
    assert store.get_thread_session("thread-1") == switched
    assert store.get_thread_session("other") is None


def test_stale_thread_sessions_are_pruned(store: IndexStore) -> None:
    store.upsert_thread_session("thread-old", "ses_1")
    store.upsert_thread_session("thread-new", "ses_2")
    with store.transaction() as conn:
        conn.execute(
            "UPDATE thread_sessions SET updated_at = ? WHERE thread_id = 'thread-old'",
            (now_ms() - THREAD_SESSION_TTL_MS - 1000,),
        )

    assert store.delete_stale_thread_sessions(THREAD_SESSION_TTL_MS) == 1
    assert store.get_thread_session("thread-old") is None
    assert store.get_thread_session("thread-new") is not None


def test_thread_session_requires_ids(store: IndexStore) -> None:
    with pytest.raises(ValueError):
        store.upsert_thread_session(" ", "ses_1")


def test_reopen_keeps_data(tmp_path: Path) -> None:
    path = tmp_path / "mem.sqlite"
    with IndexStore(path, dimensions=4) as store:
        store.insert_summary(_entry("chunk_1", "persisted summary"))
    with IndexStore(path, dimensions=4) as store:
        assert store.get_summary("chunk_1") is not None
