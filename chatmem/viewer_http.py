from __future__ import annotations

import json
from http.server import BaseHTTPRequestHandler
from typing import Any, Literal
from urllib.parse import urlparse

from .utils import scrub_surrogates

_ALLOWED_ORIGIN_HOSTS = {"127.0.0.1", "localhost", "::1"}
MAX_BODY_BYTES = 1_000_000


def _loopback_host(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme != "http":
        return False
    if parsed.username is not None or parsed.password is not None:
        return False
    try:
        hostname = parsed.hostname
        _ = parsed.port
    except ValueError:
        return False
    return hostname in _ALLOWED_ORIGIN_HOSTS


def _is_loopback_origin(origin: str) -> bool:
    if not _loopback_host(origin):
        return False
    parsed = urlparse(origin)
    return parsed.path in ("", "/") and not parsed.query and not parsed.fragment


def _is_unsafe_missing_origin(handler: BaseHTTPRequestHandler) -> bool:
    sec_fetch_site = (handler.headers.get("Sec-Fetch-Site") or "").strip().lower()
    if sec_fetch_site and sec_fetch_site not in {"same-origin", "same-site", "none"}:
        return True
    referer = handler.headers.get("Referer")
    return bool(referer) and not _loopback_host(referer)


def send_json_response(
    handler: BaseHTTPRequestHandler,
    payload: dict[str, Any],
    status: int = 200,
) -> None:
    body = scrub_surrogates(json.dumps(payload, ensure_ascii=False)).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def send_error_response(
    handler: BaseHTTPRequestHandler,
    error: str,
    status: int = 400,
    details: Any = None,
) -> None:
    payload: dict[str, Any] = {"error": error}
    if details is not None:
        payload["details"] = details
    send_json_response(handler, payload, status=status)


def read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any] | None:
    """Parse a JSON object body; None for an empty, oversized or invalid body."""
    try:
        length = int(handler.headers.get("Content-Length", "0") or 0)
    except ValueError:
        return None
    if length <= 0 or length > MAX_BODY_BYTES:
        return None
    raw = handler.rfile.read(length).decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


MissingOriginPolicy = Literal["allow", "reject", "reject_if_unsafe"]


def reject_cross_origin(
    handler: BaseHTTPRequestHandler,
    *,
    missing_origin_policy: MissingOriginPolicy = "allow",
) -> bool:
    """Send 403 and return True unless the request comes from a loopback origin."""
    origin = handler.headers.get("Origin")
    if not origin:
        if missing_origin_policy == "allow":
            return False
        if missing_origin_policy == "reject_if_unsafe" and not _is_unsafe_missing_origin(handler):
            return False
        send_json_response(handler, {"error": "forbidden"}, status=403)
        return True
    if _is_loopback_origin(origin):
        return False
    send_json_response(handler, {"error": "forbidden"}, status=403)
    return True
