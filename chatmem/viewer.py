from __future__ import annotations

import logging
import os
import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, cast
from urllib.parse import urlparse

from .system import MemorySystem
from .viewer_http import (
    MissingOriginPolicy,
    read_json_body,
    reject_cross_origin,
    send_error_response,
    send_json_response,
)
from .viewer_routes import memory as viewer_routes_memory

logger = logging.getLogger(__name__)

DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 38889


class MemoryHTTPServer(HTTPServer):
    def __init__(self, address: tuple[str, int], system: MemorySystem) -> None:
        super().__init__(address, MemoryAPIHandler)
        self.system = system


class MemoryAPIHandler(BaseHTTPRequestHandler):
    @property
    def system(self) -> MemorySystem:
        return cast(MemoryHTTPServer, self.server).system

    def _send_json(self, payload: dict[str, Any], status: int = 200) -> None:
        send_json_response(self, payload, status=status)

    def _read_json(self) -> dict[str, Any] | None:
        return read_json_body(self)

    def _reject_cross_origin(self, *, missing_origin_policy: MissingOriginPolicy = "allow") -> bool:
        return reject_cross_origin(self, missing_origin_policy=missing_origin_policy)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        if os.environ.get("CHATMEM_API_LOGS") == "1":
            super().log_message(format, *args)

    def _send_internal_error(self, exc: Exception) -> None:
        logger.exception("memory api request failed", extra={"path": self.path}, exc_info=exc)
        details = str(exc) if os.environ.get("CHATMEM_API_DEBUG") == "1" else None
        send_error_response(self, "internal server error", status=500, details=details)

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path == "/api/health":
            self._send_json({"ok": True})
            return
        try:
            if viewer_routes_memory.handle_get(self, self.system, parsed.path, parsed.query):
                return
            send_error_response(self, "not found", status=404)
        except Exception as exc:  # pragma: no cover
            self._send_internal_error(exc)

    def do_POST(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if self._reject_cross_origin(missing_origin_policy="reject_if_unsafe"):
            return
        payload = self._read_json()
        try:
            if viewer_routes_memory.handle_post(self, self.system, parsed.path, payload):
                return
            send_error_response(self, "not found", status=404)
        except Exception as exc:  # pragma: no cover
            self._send_internal_error(exc)

    def do_DELETE(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if self._reject_cross_origin(missing_origin_policy="reject_if_unsafe"):
            return
        try:
            if viewer_routes_memory.handle_delete(self, self.system, parsed.path):
                return
            send_error_response(self, "not found", status=404)
        except Exception as exc:  # pragma: no cover
            self._send_internal_error(exc)


def _port_open(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.2)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


def start_api(
    system: MemorySystem,
    host: str = DEFAULT_API_HOST,
    port: int = DEFAULT_API_PORT,
    background: bool = False,
) -> MemoryHTTPServer | None:
    """Serve the memory API. Returns None if something already listens on the port."""
    if _port_open(host, port):
        logger.warning("memory api port already in use", extra={"host": host, "port": port})
        return None
    server = MemoryHTTPServer((host, port), system)
    if background:
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        return server
    try:
        server.serve_forever()
    finally:
        server.server_close()
    return server
