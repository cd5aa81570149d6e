from __future__ import annotations

import logging
from collections.abc import Iterable

from .memory_types import normalize_tags, validate_memory_type
from .semantic import EmbeddingClient, embed_text
from .store import IndexStore
from .types import PersistentMemory
from .utils import new_id, now_iso, scrub_surrogates

logger = logging.getLogger(__name__)


def _clean_content(content: str) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValueError("content must not be empty")
    return scrub_surrogates(content.strip())


class PersistentMemoryManager:
    """Agent-written facts, preferences and learnings."""

    def __init__(self, store: IndexStore, embedder: EmbeddingClient | None = None) -> None:
        self.store = store
        self.embedder = embedder

    def _embed(self, content: str) -> list[float] | None:
        # Embedding errors propagate: a memory is stored whole or not at all.
        if self.embedder is None or not self.store.vector_ready:
            return None
        return embed_text(self.embedder, content)

    def write(
        self,
        memory_type: str,
        content: str,
        tags: Iterable[str] | None = None,
    ) -> PersistentMemory:
        validated = validate_memory_type(memory_type)
        text = _clean_content(content)
        normalized_tags = normalize_tags(tags)
        embedding = self._embed(text)
        now = now_iso()
        memory = PersistentMemory(
            id=new_id("mem"),
            type=validated,
            content=text,
            tags=normalized_tags,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_memory(memory, embedding)
        logger.info(
            "memory written",
            extra={"memory_id": memory.id, "memory_type": memory.type, "tags": normalized_tags},
        )
        return memory

    def update(
        self,
        memory_id: str,
        content: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> PersistentMemory | None:
        existing = self.store.get_memory(memory_id)
        if existing is None:
            return None
        new_content = existing.content if content is None else _clean_content(content)
        new_tags = existing.tags if tags is None else normalize_tags(tags)
        embedding = self._embed(new_content)
        updated = PersistentMemory(
            id=existing.id,
            type=existing.type,
            content=new_content,
            tags=new_tags,
            created_at=existing.created_at,
            updated_at=now_iso(),
        )
        if not self.store.update_memory(updated, embedding):
            return None
        return updated

    def delete(self, memory_id: str) -> bool:
        deleted = self.store.delete_memory(memory_id)
        if deleted:
            logger.info("memory deleted", extra={"memory_id": memory_id})
        return deleted

    def get(self, memory_id: str) -> PersistentMemory | None:
        return self.store.get_memory(memory_id)

    def list(self, memory_type: str | None = None, limit: int = 100) -> list[PersistentMemory]:
        validated = validate_memory_type(memory_type) if memory_type else None
        return self.store.list_memories(validated, limit)
