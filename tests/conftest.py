from __future__ import annotations

import math
import re
import threading
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from chatmem.config import CONFIG_ENV_OVERRIDES, ChatmemConfig
from chatmem.semantic import EmbeddingError
from chatmem.storage import ChunkStore
from chatmem.store import IndexStore
from chatmem.summarizer import SummarizationError
from chatmem.system import MemorySystem

DIMENSIONS = 4

# Words that land on the same axis embed close together.
_AXES = (
    {"database", "sqlite", "postgres", "schema", "migration", "storage"},
    {"python", "typing", "pytest", "package", "code"},
    {"coffee", "tea", "breakfast", "morning", "drink"},
    {"deploy", "kubernetes", "docker", "release", "server"},
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    for env_var in (
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "CHATMEM_VECTOR_DISABLED",
        "CHATMEM_API_LOGS",
        "CHATMEM_API_DEBUG",
    ):
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("CHATMEM_CONFIG", str(tmp_path / "config.json"))


class FakeEmbedder:
    """Deterministic bag-of-words embedder over four topic axes."""

    model = "fake-embedder"

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.fail = False

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("embedding backend down")
        return [self._vector(text) for text in texts]

    @staticmethod
    def _vector(text: str) -> list[float]:
        words = re.findall(r"\w+", text.lower())
        vector = [0.01] * DIMENSIONS
        for word in words:
            for axis, vocabulary in enumerate(_AXES):
                if word in vocabulary:
                    vector[axis] += 1.0
        norm = math.sqrt(sum(value * value for value in vector))
        return [value / norm for value in vector]


class ScriptedSummarizer:
    def __init__(self) -> None:
        self.calls: list[list[Mapping[str, Any]]] = []
        self.fail = False
        self.gate: threading.Event | None = None

    def summarize(self, messages: Sequence[Mapping[str, Any]], max_tokens: int) -> str:
        self.calls.append(list(messages))
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail:
            raise SummarizationError("summarizer unavailable")
        texts = [
            part.get("text", "")
            for message in messages
            for part in message.get("parts") or []
            if part.get("type") == "text"
        ]
        return "Summary: " + " ".join(texts)[:200]


class FakeSessionSource:
    def __init__(self) -> None:
        self.sessions: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[str] = []

    def get_session_messages(self, session_id: str) -> list[dict[str, Any]]:
        self.calls.append(session_id)
        return list(self.sessions.get(session_id, []))


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def summarizer() -> ScriptedSummarizer:
    return ScriptedSummarizer()


@pytest.fixture
def session_source() -> FakeSessionSource:
    return FakeSessionSource()


@pytest.fixture
def config(tmp_path: Path) -> ChatmemConfig:
    return ChatmemConfig(
        storage_path=str(tmp_path / "storage"),
        chunk_token_threshold=100,
        chunk_token_min=50,
        chunk_token_max=200,
        embedding_dimensions=DIMENSIONS,
    )


@pytest.fixture
def store(tmp_path: Path) -> Iterator[IndexStore]:
    index = IndexStore(tmp_path / "index.sqlite", dimensions=DIMENSIONS).open()
    yield index
    index.close()


@pytest.fixture
def chunk_store(tmp_path: Path) -> ChunkStore:
    return ChunkStore(tmp_path / "storage")


@pytest.fixture
def system(
    config: ChatmemConfig,
    store: IndexStore,
    chunk_store: ChunkStore,
    session_source: FakeSessionSource,
    summarizer: ScriptedSummarizer,
    embedder: FakeEmbedder,
) -> Iterator[MemorySystem]:
    memory_system = MemorySystem(
        config,
        index_store=store,
        chunk_store=chunk_store,
        session_source=session_source,
        summarizer=summarizer,
        embedder=embedder,
    ).open()
    yield memory_system
    memory_system.close()


def make_message(
    index: int,
    text: str,
    *,
    role: str = "user",
    tokens: int | None = None,
    created: int | None = None,
) -> dict[str, Any]:
    message: dict[str, Any] = {
        "id": f"msg_{index:04d}",
        "sessionID": "ses_1",
        "role": role,
        "time": {"created": created if created is not None else 1_700_000_000_000 + index},
        "parts": [{"id": f"prt_{index:04d}", "type": "text", "text": text}],
    }
    if tokens is not None:
        message["tokens"] = {"input": tokens, "output": 0, "reasoning": 0}
    return message
