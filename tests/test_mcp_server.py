from __future__ import annotations

import asyncio

from chatmem.mcp_server import build_server
from chatmem.system import MemorySystem


def test_server_registers_memory_tools(system: MemorySystem) -> None:
    server = build_server(system)

    tools = asyncio.run(server.list_tools())

    assert {tool.name for tool in tools} == {
        "memory_search",
        "memory_write",
        "memory_read",
        "memory_list",
        "memory_delete",
    }
