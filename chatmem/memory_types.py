from __future__ import annotations

from collections.abc import Iterable
from typing import Final, cast

from .types import MemoryType
from .utils import scrub_surrogates

ALLOWED_MEMORY_TYPES: Final[tuple[str, ...]] = ("fact", "preference", "learning")


def normalize_memory_type(memory_type: str) -> str:
    return (memory_type or "").strip().lower()


def validate_memory_type(memory_type: str) -> MemoryType:
    normalized = normalize_memory_type(memory_type)
    if normalized in ALLOWED_MEMORY_TYPES:
        return cast(MemoryType, normalized)

    if normalized in {"note", "decision", "observation"}:
        raise ValueError(
            f"Invalid memory type '{normalized}'. Use 'fact' or 'learning' instead. "
            f"Allowed types: {', '.join(ALLOWED_MEMORY_TYPES)}"
        )

    raise ValueError(
        f"Invalid memory type '{normalized}'. Allowed types: {', '.join(ALLOWED_MEMORY_TYPES)}"
    )


def normalize_tags(tags: Iterable[str] | None) -> list[str]:
    """Strip, drop blanks and dedupe while keeping first-seen order."""
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    seen: set[str] = set()
    result: list[str] = []
    for tag in tags:
        cleaned = scrub_surrogates(str(tag).strip())
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        result.append(cleaned)
    return result
