from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from typing import Any

CHARS_PER_TOKEN = 4


def estimate_text_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _usage_tokens(message: Mapping[str, Any]) -> int:
    tokens = message.get("tokens")
    if not isinstance(tokens, Mapping):
        return 0
    total = 0
    for key in ("input", "output", "reasoning"):
        value = tokens.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            total += int(value)
    return total


def _part_chars(part: Mapping[str, Any]) -> int:
    chars = 0
    text = part.get("text")
    if isinstance(text, str):
        chars += len(text)
    state = part.get("state")
    if isinstance(state, Mapping):
        tool_input = state.get("input")
        if tool_input is not None:
            chars += len(json.dumps(tool_input, separators=(",", ":"), ensure_ascii=False))
        output = state.get("output")
        if isinstance(output, str):
            chars += len(output)
    return chars


def estimate_message_tokens(message: Mapping[str, Any]) -> int:
    """Token cost of one message.

    Usage metadata reported by the runtime wins; otherwise fall back to a
    characters/4 estimate over part text, tool inputs and tool outputs.
    """
    reported = _usage_tokens(message)
    if reported > 0:
        return reported
    parts = message.get("parts") or []
    chars = sum(_part_chars(part) for part in parts if isinstance(part, Mapping))
    if chars <= 0:
        return 0
    return math.ceil(chars / CHARS_PER_TOKEN)


def estimate_messages_tokens(messages: Iterable[Mapping[str, Any]]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)
