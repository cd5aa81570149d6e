from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from typing import Protocol

from .config import ChatmemConfig

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """The embedding backend failed to produce vectors."""


class EmbeddingClient(Protocol):
    model: str

    def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


class _FastEmbedClient:
    def __init__(self, model: str) -> None:
        try:
            from fastembed import TextEmbedding
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("fastembed is required for semantic search") from exc
        self.model = model
        self._embedder = TextEmbedding(model_name=model)

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        try:
            embeddings = self._embedder.embed(list(texts))
            return [[float(value) for value in vec] for vec in embeddings]
        except Exception as exc:
            raise EmbeddingError(f"fastembed embedding failed: {exc}") from exc


class _OpenAIEmbeddingClient:
    def __init__(
        self,
        model: str,
        api_key: str | None,
        base_url: str | None,
        timeout_s: float,
        dimensions: int | None = None,
    ) -> None:
        try:
            from openai import OpenAI
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("openai package is required for openai embeddings") from exc
        self.model = model
        self.dimensions = dimensions
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s)

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        batch = list(texts)
        if not batch:
            return []
        kwargs: dict[str, object] = {"model": self.model, "input": batch}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        try:
            resp = self.client.embeddings.create(**kwargs)  # type: ignore[arg-type]
        except Exception as exc:
            raise EmbeddingError(f"openai embedding failed: {exc}") from exc
        ordered = sorted(resp.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]


_CLIENTS: dict[tuple[str, str], EmbeddingClient] = {}
_CLIENTS_LOCK = threading.Lock()


def get_embedding_client(config: ChatmemConfig) -> EmbeddingClient | None:
    """Return a cached embedding client, or None when embeddings are disabled or unavailable."""
    if config.embedding_disabled:
        return None
    provider = (config.embedding_provider or "fastembed").strip().lower()
    key = (provider, config.embedding_model)
    with _CLIENTS_LOCK:
        cached = _CLIENTS.get(key)
        if cached is not None:
            return cached
        client: EmbeddingClient
        try:
            if provider == "openai":
                client = _OpenAIEmbeddingClient(
                    model=config.embedding_model,
                    api_key=config.summarization_api_key
                    if config.summarization_provider == "openai"
                    else None,
                    base_url=None,
                    timeout_s=config.collaborator_timeout_s,
                    dimensions=config.embedding_dimensions,
                )
            else:
                client = _FastEmbedClient(model=config.embedding_model)
        except Exception as exc:
            logger.warning(
                "embedding client unavailable",
                extra={"provider": provider, "model": config.embedding_model},
                exc_info=exc,
            )
            return None
        _CLIENTS[key] = client
        return client


def embed_texts(client: EmbeddingClient, texts: Iterable[str]) -> list[list[float]]:
    """Embed ``texts`` and check that one vector came back per input."""
    batch = [text for text in texts]
    if not batch:
        return []
    vectors = client.embed(batch)
    if len(vectors) != len(batch):
        raise EmbeddingError(f"expected {len(batch)} embeddings, got {len(vectors)}")
    return [list(vector) for vector in vectors]


def embed_text(client: EmbeddingClient, text: str) -> list[float]:
    return embed_texts(client, [text])[0]
