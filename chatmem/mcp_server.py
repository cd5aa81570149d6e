from __future__ import annotations

import atexit
import json
import threading
from typing import Any, Dict, List, Optional

try:
    from mcp.server.fastmcp import FastMCP
except Exception as exc:  # pragma: no cover
    raise SystemExit(
        "mcp package is required for the MCP server. Install with `pip install -e .`"
    ) from exc

from .config import load_config
from .system import MemorySystem
from .utils import scrub_surrogates


def build_system() -> MemorySystem:
    return MemorySystem(load_config()).open()


def build_server(system: MemorySystem | None = None) -> FastMCP:
    mcp = FastMCP("chatmem")
    lock = threading.Lock()
    holder: dict[str, MemorySystem] = {}
    if system is not None:
        holder["system"] = system

    def get_system() -> MemorySystem:
        with lock:
            current = holder.get("system")
            if current is None:
                current = build_system()
                holder["system"] = current
                atexit.register(current.close)
            return current

    @mcp.tool()
    def memory_search(
        query: str,
        limit: int = 5,
        thread_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Search archived conversation summaries and saved memories."""
        try:
            results = get_system().search(query, limit, thread_id)
        except ValueError as exc:
            return {"error": str(exc)}
        return {"results": [item.to_dict() for item in results]}

    @mcp.tool()
    def memory_write(
        type: str,  # noqa: A002
        content: str,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Save a fact, preference or learning for later recall."""
        try:
            memory = get_system().write_memory(type, content, tags or [])
        except ValueError as exc:
            return {"error": str(exc)}
        return {"memory": memory.to_dict()}

    @mcp.tool()
    def memory_read(thread_id: str, chunk_id: str) -> Dict[str, Any]:
        """Read the full transcript of an archived chunk found by memory_search."""
        try:
            chunk = get_system().read_chunk(thread_id, chunk_id)
        except ValueError as exc:
            return {"error": str(exc)}
        if chunk is None:
            return {"error": "chunk not found"}
        payload = json.loads(scrub_surrogates(json.dumps(chunk.to_dict(), ensure_ascii=False)))
        return {"chunk": payload}

    @mcp.tool()
    def memory_list(type: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:  # noqa: A002
        """List saved memories, newest first."""
        try:
            items = get_system().list_memories(type, limit)
        except ValueError as exc:
            return {"error": str(exc)}
        return {"items": [item.to_dict() for item in items]}

    @mcp.tool()
    def memory_delete(memory_id: str) -> Dict[str, Any]:
        """Delete a saved memory by id."""
        return {"deleted": get_system().delete_memory(memory_id)}

    return mcp


def run() -> None:
    server = build_server()
    server.run()


if __name__ == "__main__":
    run()
