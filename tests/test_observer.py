from __future__ import annotations

import threading
from pathlib import Path

import pytest
from conftest import make_message

from chatmem.config import ChatmemConfig
from chatmem.observer import ArchivalCancelled, ArchivalObserver, build_chunk_messages
from chatmem.semantic import EmbeddingError
from chatmem.storage import ChunkStore
from chatmem.store import IndexStore
from chatmem.summarizer import SummarizationError

THREAD = "thread-1"


def _messages(count: int, start: int = 0, tokens: int = 30) -> list[dict]:
    return [
        make_message(
            index,
            f"message {index} about sqlite",
            role="user" if index % 2 == 0 else "assistant",
            tokens=tokens,
        )
        for index in range(start, start + count)
    ]


@pytest.fixture
def observer(config, chunk_store, store, session_source, summarizer, embedder):
    obs = ArchivalObserver(config, chunk_store, store, session_source, summarizer, embedder)
    yield obs
    obs.close(timeout=5)


def test_build_chunk_messages_respects_max() -> None:
    messages = _messages(10)
    chunk = build_chunk_messages(messages, 50, 200)
    assert [m["id"] for m in chunk] == [f"msg_{i:04d}" for i in range(6)]


def test_build_chunk_messages_keeps_a_lone_oversized_message() -> None:
    messages = [make_message(0, "huge", tokens=500), make_message(1, "small", tokens=10)]
    assert [m["id"] for m in build_chunk_messages(messages, 50, 200)] == ["msg_0000"]


def test_build_chunk_messages_below_min_needs_every_message() -> None:
    messages = [make_message(0, "a", tokens=20), make_message(1, "b", tokens=190)]
    assert build_chunk_messages(messages, 50, 200) == []
    assert len(build_chunk_messages(messages[:1], 10, 200)) == 1


def test_below_threshold_does_nothing(observer, session_source, chunk_store, summarizer) -> None:
    session_source.sessions["ses_1"] = _messages(3)

    assert observer.check_and_archive(THREAD, "ses_1") is None

    assert chunk_store.list_chunk_ids(THREAD) == []
    assert chunk_store.read_watermark(THREAD) is None
    assert summarizer.calls == []


def test_no_messages_does_nothing(observer) -> None:
    assert observer.check_and_archive(THREAD, "ses_empty") is None


def test_archives_chunk_when_threshold_reached(
    observer, session_source, chunk_store: ChunkStore, store: IndexStore
) -> None:
    session_source.sessions["ses_1"] = _messages(5)

    chunk = observer.check_and_archive(THREAD, "ses_1")

    assert chunk is not None
    assert chunk.id.startswith("chunk_")
    assert chunk.message_count == 5
    assert chunk.token_count == 150
    assert chunk.summary.startswith("Summary: message 0")
    assert chunk.message_range.first_message_id == "msg_0000"
    assert chunk.message_range.last_message_id == "msg_0004"
    assert chunk.message_range.first_timestamp == 1_700_000_000_000
    assert chunk.message_range.last_timestamp == 1_700_000_000_004
    assert chunk_store.read_chunk(THREAD, chunk.id) == chunk

    watermark = chunk_store.read_watermark(THREAD)
    assert watermark is not None
    assert watermark.last_archived_message_index == 4
    assert watermark.last_archived_message_id == "msg_0004"
    assert watermark.total_chunks == 1
    assert watermark.total_archived_tokens == 150
    assert watermark.session_id == "ses_1"

    entry = store.get_summary(chunk.id)
    assert entry is not None
    assert entry.thread_id == THREAD
    assert entry.time_range.start == 1_700_000_000_000
    assert [r.id for r in store.search("sqlite")] == [chunk.id]


def test_watermark_advances_over_following_turns(observer, session_source, chunk_store) -> None:
    session_source.sessions["ses_1"] = _messages(5)
    first = observer.check_and_archive(THREAD, "ses_1")
    assert first is not None

    session_source.sessions["ses_1"] = _messages(8)
    assert observer.check_and_archive(THREAD, "ses_1") is None

    session_source.sessions["ses_1"] = _messages(9)
    second = observer.check_and_archive(THREAD, "ses_1")

    assert second is not None
    assert second.message_range.first_message_id == "msg_0005"
    assert second.message_range.last_message_id == "msg_0008"
    watermark = chunk_store.read_watermark(THREAD)
    assert watermark is not None
    assert watermark.last_archived_message_index == 8
    assert watermark.total_chunks == 2
    assert watermark.total_archived_tokens == 270


def test_archive_pending_drains_backlog(observer, session_source, chunk_store) -> None:
    session_source.sessions["ses_1"] = _messages(10)

    chunks = observer.archive_pending(THREAD, "ses_1")

    assert [c.message_count for c in chunks] == [6, 4]
    assert len(chunk_store.list_chunk_ids(THREAD)) == 2
    watermark = chunk_store.read_watermark(THREAD)
    assert watermark is not None and watermark.last_archived_message_index == 9


def test_new_session_restarts_from_the_beginning(observer, session_source, chunk_store) -> None:
    session_source.sessions["ses_1"] = _messages(5)
    observer.check_and_archive(THREAD, "ses_1")

    session_source.sessions["ses_2"] = _messages(4, tokens=30)
    chunk = observer.check_and_archive(THREAD, "ses_2")

    assert chunk is not None
    assert chunk.session_id == "ses_2"
    assert chunk.message_range.first_message_id == "msg_0000"
    watermark = chunk_store.read_watermark(THREAD)
    assert watermark is not None
    assert watermark.session_id == "ses_2"
    assert watermark.last_archived_message_index == 3
    assert watermark.total_chunks == 1


def test_summarization_failure_leaves_no_trace(
    observer, session_source, summarizer, chunk_store, store
) -> None:
    session_source.sessions["ses_1"] = _messages(5)
    summarizer.fail = True

    with pytest.raises(SummarizationError):
        observer.check_and_archive(THREAD, "ses_1")

    assert chunk_store.list_chunk_ids(THREAD) == []
    assert chunk_store.read_watermark(THREAD) is None
    assert store.list_summaries() == []


def test_embedding_failure_leaves_no_trace(
    observer, session_source, embedder, chunk_store, store
) -> None:
    if not store.vector_ready:
        pytest.skip("sqlite-vec unavailable")
    session_source.sessions["ses_1"] = _messages(5)
    embedder.fail = True

    with pytest.raises(EmbeddingError):
        observer.check_and_archive(THREAD, "ses_1")

    assert chunk_store.list_chunk_ids(THREAD) == []
    assert chunk_store.read_watermark(THREAD) is None
    assert store.list_summaries() == []

    embedder.fail = False
    assert observer.check_and_archive(THREAD, "ses_1") is not None


def test_index_failure_removes_the_chunk_file(
    observer, session_source, chunk_store, store, monkeypatch: pytest.MonkeyPatch
) -> None:
    session_source.sessions["ses_1"] = _messages(5)

    def _broken_insert(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "insert_summary", _broken_insert)

    with pytest.raises(RuntimeError, match="disk full"):
        observer.check_and_archive(THREAD, "ses_1")

    assert chunk_store.list_chunk_ids(THREAD) == []
    assert chunk_store.read_watermark(THREAD) is None


def test_failed_watermark_write_is_recovered_without_duplicates(
    observer, session_source, summarizer, chunk_store: ChunkStore, store
) -> None:
    session_source.sessions["ses_1"] = _messages(5)
    original = chunk_store.write_watermark
    failures = {"left": 1}

    def _flaky_write(thread_id, watermark):
        if failures["left"]:
            failures["left"] -= 1
            raise OSError("watermark write failed")
        return original(thread_id, watermark)

    chunk_store.write_watermark = _flaky_write  # type: ignore[method-assign]

    with pytest.raises(OSError):
        observer.check_and_archive(THREAD, "ses_1")
    assert len(chunk_store.list_chunk_ids(THREAD)) == 1
    assert chunk_store.read_watermark(THREAD) is None

    recovered = observer.check_and_archive(THREAD, "ses_1")

    assert recovered is not None
    assert chunk_store.list_chunk_ids(THREAD) == [recovered.id]
    assert len(store.list_summaries()) == 1
    assert len(summarizer.calls) == 1
    watermark = chunk_store.read_watermark(THREAD)
    assert watermark is not None and watermark.last_archived_message_index == 4


def test_cancellation_aborts_without_committing(
    config, chunk_store, store, session_source, summarizer, embedder
) -> None:
    session_source.sessions["ses_1"] = _messages(5)
    cancel = threading.Event()

    class _CancellingSummarizer:
        def summarize(self, messages, max_tokens):
            cancel.set()
            return summarizer.summarize(messages, max_tokens)

    observer = ArchivalObserver(
        config, chunk_store, store, session_source, _CancellingSummarizer(), embedder
    )

    with pytest.raises(ArchivalCancelled):
        observer.check_and_archive(THREAD, "ses_1", cancel=cancel)

    assert chunk_store.list_chunk_ids(THREAD) == []
    assert chunk_store.read_watermark(THREAD) is None


def test_precancelled_attempt_does_not_fetch(observer, session_source) -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ArchivalCancelled):
        observer.check_and_archive(THREAD, "ses_1", cancel=cancel)
    assert session_source.calls == []


def test_invalid_arguments(observer) -> None:
    with pytest.raises(ValueError):
        observer.check_and_archive("..", "ses_1")
    with pytest.raises(ValueError):
        observer.check_and_archive(THREAD, " ")


def test_turn_triggers_coalesce_while_busy(
    observer, session_source, summarizer, chunk_store
) -> None:
    session_source.sessions["ses_1"] = _messages(5)
    gate = threading.Event()
    summarizer.gate = gate

    observer.on_turn_complete(THREAD, "ses_1")
    observer.on_turn_complete(THREAD, "ses_1")
    observer.on_turn_complete(THREAD, "ses_1")
    assert observer.is_busy(THREAD)

    gate.set()
    assert observer.wait_idle(timeout=5)

    assert len(summarizer.calls) == 1
    assert len(chunk_store.list_chunk_ids(THREAD)) == 1
    # first run: archive + recheck; one deferred run for the coalesced triggers
    assert len(session_source.calls) == 3


def test_worker_failure_is_logged_not_raised(
    observer, session_source, summarizer, chunk_store, caplog: pytest.LogCaptureFixture
) -> None:
    session_source.sessions["ses_1"] = _messages(5)
    summarizer.fail = True

    observer.on_turn_complete(THREAD, "ses_1")
    assert observer.wait_idle(timeout=5)

    assert chunk_store.list_chunk_ids(THREAD) == []
    assert any(record.getMessage() == "archival failed" for record in caplog.records)


def test_disabled_config_skips_archival(
    tmp_path: Path, chunk_store, store, session_source, summarizer
) -> None:
    config = ChatmemConfig(
        enabled=False, chunk_token_threshold=100, chunk_token_min=50, chunk_token_max=200
    )
    observer = ArchivalObserver(config, chunk_store, store, session_source, summarizer)
    session_source.sessions["ses_1"] = _messages(5)

    observer.on_turn_complete(THREAD, "ses_1")

    assert not observer.is_busy(THREAD)
    assert session_source.calls == []


def test_invalid_thread_id_is_ignored_by_turn_hook(observer, session_source) -> None:
    observer.on_turn_complete("", "ses_1")
    observer.on_turn_complete(THREAD, "")
    assert observer.wait_idle(timeout=1)
    assert session_source.calls == []


def test_lone_surrogate_in_tool_output_does_not_stall_archival(
    observer, session_source, chunk_store: ChunkStore, store: IndexStore
) -> None:
    messages = _messages(5)
    messages[1]["parts"][0]["text"] = "tool output cut mid emoji \ud83d"
    session_source.sessions["ses_1"] = messages

    chunk = observer.check_and_archive(THREAD, "ses_1")

    assert chunk is not None
    assert "\ud83d" not in chunk.summary
    stored = chunk_store.read_chunk(THREAD, chunk.id)
    assert stored is not None
    assert stored.messages[1]["parts"][0]["text"].endswith("\ud83d")
    assert [entry.chunk_id for entry in store.list_summaries(THREAD)] == [chunk.id]
    watermark = chunk_store.read_watermark(THREAD)
    assert watermark is not None and watermark.last_archived_message_index == 4


def test_undecodable_watermark_restarts_thread(observer, session_source, chunk_store) -> None:
    session_source.sessions["ses_1"] = _messages(5)
    path = chunk_store.watermark_path(THREAD)
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\xff\xfe garbage")

    chunk = observer.check_and_archive(THREAD, "ses_1")

    assert chunk is not None
    assert chunk.message_range.first_message_id == "msg_0000"
    watermark = chunk_store.read_watermark(THREAD)
    assert watermark is not None and watermark.last_archived_message_index == 4
