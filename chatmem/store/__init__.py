from __future__ import annotations

from ._store import IndexStore
from .search import expand_query, fts_scores
from .thread_sessions import THREAD_SESSION_TTL_MS

__all__ = [
    "IndexStore",
    "THREAD_SESSION_TTL_MS",
    "expand_query",
    "fts_scores",
]
