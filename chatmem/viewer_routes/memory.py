from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import parse_qs, unquote

from ..memory_types import ALLOWED_MEMORY_TYPES
from ..semantic import EmbeddingError
from ..system import MemorySystem

logger = logging.getLogger(__name__)

PREFIX = "/api/memory"
DELETE_PREFIX = f"{PREFIX}/delete/"
MAX_LIMIT = 500


class _ViewerHandler(Protocol):
    def _send_json(self, payload: dict[str, Any], status: int = 200) -> None: ...


def _field(payload: dict[str, Any], name: str, alias: str | None = None) -> Any:
    if name in payload:
        return payload[name]
    if alias is not None:
        return payload.get(alias)
    return None


def _required_str(
    payload: dict[str, Any], name: str, errors: list[dict[str, str]], alias: str | None = None
) -> str:
    value = _field(payload, name, alias)
    if not isinstance(value, str) or not value.strip():
        errors.append({"field": name, "message": "must be a non-empty string"})
        return ""
    return value


def _optional_str(
    payload: dict[str, Any], name: str, errors: list[dict[str, str]], alias: str | None = None
) -> str | None:
    value = _field(payload, name, alias)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        errors.append({"field": name, "message": "must be a non-empty string"})
        return None
    return value


def _optional_int(
    payload: dict[str, Any], name: str, errors: list[dict[str, str]], default: int
) -> int:
    value = payload.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0 or value > MAX_LIMIT:
        errors.append({"field": name, "message": f"must be an integer in 1..{MAX_LIMIT}"})
        return default
    return value


def _query_int(params: dict[str, list[str]], name: str, default: int) -> int | None:
    raw = params.get(name, [None])[0]
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return None
    if value <= 0 or value > MAX_LIMIT:
        return None
    return value


def _invalid(handler: _ViewerHandler, details: Any) -> None:
    handler._send_json({"error": "invalid input", "details": details}, status=400)


def handle_get(handler: _ViewerHandler, system: MemorySystem, path: str, query: str) -> bool:
    if not path.startswith(PREFIX):
        return False
    params = parse_qs(query)

    if path == f"{PREFIX}/list":
        limit = _query_int(params, "limit", 100)
        if limit is None:
            _invalid(handler, [{"field": "limit", "message": "must be a positive integer"}])
            return True
        memory_type = params.get("type", [None])[0] or None
        try:
            items = system.list_memories(memory_type, limit)
        except ValueError as exc:
            _invalid(handler, [{"field": "type", "message": str(exc)}])
            return True
        handler._send_json({"items": [item.to_dict() for item in items]})
        return True

    if path == f"{PREFIX}/archives":
        thread_id = params.get("thread_id", [None])[0]
        if thread_id:
            limit = _query_int(params, "limit", 50)
            if limit is None:
                _invalid(handler, [{"field": "limit", "message": "must be a positive integer"}])
                return True
            entries = system.list_archives(thread_id, limit)
            handler._send_json(
                {"thread_id": thread_id, "items": [entry.to_dict() for entry in entries]}
            )
            return True
        handler._send_json({"threads": system.list_archive_threads()})
        return True

    if path == f"{PREFIX}/stats":
        handler._send_json(system.stats())
        return True

    return False


def handle_post(
    handler: _ViewerHandler,
    system: MemorySystem,
    path: str,
    payload: dict[str, Any] | None,
) -> bool:
    routes = {
        f"{PREFIX}/write": _post_write,
        f"{PREFIX}/search": _post_search,
        f"{PREFIX}/read": _post_read,
        f"{PREFIX}/turn-complete": _post_turn_complete,
    }
    route = routes.get(path)
    if route is None:
        return False
    if payload is None:
        _invalid(handler, [{"field": "body", "message": "expected a JSON object"}])
        return True
    route(handler, system, payload)
    return True


def _post_write(handler: _ViewerHandler, system: MemorySystem, payload: dict[str, Any]) -> None:
    errors: list[dict[str, str]] = []
    memory_type = _required_str(payload, "type", errors)
    if memory_type and memory_type.strip().lower() not in ALLOWED_MEMORY_TYPES:
        errors.append(
            {"field": "type", "message": f"must be one of {', '.join(ALLOWED_MEMORY_TYPES)}"}
        )
    content = _required_str(payload, "content", errors)
    tags = payload.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        errors.append({"field": "tags", "message": "must be a list of strings"})
        tags = []
    if errors:
        _invalid(handler, errors)
        return
    try:
        memory = system.write_memory(memory_type, content, tags)
    except ValueError as exc:
        _invalid(handler, [{"field": "body", "message": str(exc)}])
        return
    except EmbeddingError as exc:
        logger.warning("memory write failed", extra={"error": str(exc)})
        handler._send_json({"error": "embedding failed", "details": str(exc)}, status=502)
        return
    handler._send_json(memory.to_dict())


def _post_search(handler: _ViewerHandler, system: MemorySystem, payload: dict[str, Any]) -> None:
    errors: list[dict[str, str]] = []
    query = _required_str(payload, "query", errors)
    limit = _optional_int(payload, "limit", errors, 5)
    thread_id = _optional_str(payload, "thread_id", errors, alias="threadId")
    if errors:
        _invalid(handler, errors)
        return
    results = system.search(query, limit, thread_id)
    handler._send_json({"results": [item.to_dict() for item in results]})


def _post_read(handler: _ViewerHandler, system: MemorySystem, payload: dict[str, Any]) -> None:
    errors: list[dict[str, str]] = []
    thread_id = _required_str(payload, "thread_id", errors, alias="threadId")
    chunk_id = _required_str(payload, "chunk_id", errors, alias="chunkId")
    if errors:
        _invalid(handler, errors)
        return
    try:
        chunk = system.read_chunk(thread_id, chunk_id)
    except ValueError as exc:
        _invalid(handler, [{"field": "body", "message": str(exc)}])
        return
    if chunk is None:
        handler._send_json({"error": "chunk not found"}, status=404)
        return
    handler._send_json(chunk.to_dict())


def _post_turn_complete(
    handler: _ViewerHandler, system: MemorySystem, payload: dict[str, Any]
) -> None:
    errors: list[dict[str, str]] = []
    thread_id = _required_str(payload, "thread_id", errors, alias="threadId")
    session_id = _optional_str(payload, "session_id", errors, alias="sessionId")
    if errors:
        _invalid(handler, errors)
        return
    if session_id is None:
        mapping = system.resolve_session(thread_id)
        if mapping is None:
            _invalid(handler, [{"field": "session_id", "message": "unknown thread; required"}])
            return
        session_id = mapping.session_id
    system.on_turn_complete(thread_id, session_id)
    handler._send_json(
        {"accepted": True, "thread_id": thread_id, "session_id": session_id}, status=202
    )


def handle_delete(handler: _ViewerHandler, system: MemorySystem, path: str) -> bool:
    if not path.startswith(DELETE_PREFIX):
        return False
    memory_id = unquote(path[len(DELETE_PREFIX) :])
    if not memory_id or "/" in memory_id:
        _invalid(handler, [{"field": "id", "message": "must be a memory id"}])
        return True
    handler._send_json({"deleted": system.delete_memory(memory_id)})
    return True
