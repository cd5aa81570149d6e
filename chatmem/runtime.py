from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol
from urllib.parse import quote, urlparse

import httpx

from .types import Message

logger = logging.getLogger(__name__)


class SessionSource(Protocol):
    def get_session_messages(self, session_id: str) -> list[Message]: ...


def build_base_url(address: str) -> str:
    trimmed = address.strip().rstrip("/")
    if not trimmed:
        return ""
    parsed = urlparse(trimmed)
    if parsed.scheme:
        return trimmed
    return f"http://{trimmed}"


def flatten_message(payload: Mapping[str, Any]) -> Message:
    """Turn an ``{info, parts}`` envelope into a flat message dict."""
    info = payload.get("info")
    if not isinstance(info, Mapping):
        return dict(payload)  # type: ignore[return-value]
    message: dict[str, Any] = dict(info)
    parts = payload.get("parts")
    message["parts"] = list(parts) if isinstance(parts, list) else []
    return message  # type: ignore[return-value]


class OpencodeSessionSource:
    """Reads session history from an opencode server."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = build_base_url(base_url)
        if not self.base_url:
            raise ValueError("runtime base url is required")
        self.timeout_s = timeout_s
        self._transport = transport

    def get_session_messages(self, session_id: str) -> list[Message]:
        if not session_id.strip():
            raise ValueError("session_id is required")
        url = f"{self.base_url}/session/{quote(session_id, safe='')}/message"
        with httpx.Client(timeout=self.timeout_s, transport=self._transport) as client:
            response = client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, list):
            logger.warning(
                "unexpected session messages payload",
                extra={"session_id": session_id, "type": type(payload).__name__},
            )
            return []
        return [flatten_message(item) for item in payload if isinstance(item, Mapping)]
