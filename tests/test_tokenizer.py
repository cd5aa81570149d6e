from __future__ import annotations

from chatmem.tokenizer import (
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_text_tokens,
)


def test_estimate_text_tokens_rounds_up() -> None:
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens("abc") == 1
    assert estimate_text_tokens("abcd") == 1
    assert estimate_text_tokens("abcde") == 2


def test_reported_usage_wins_over_character_estimate() -> None:
    message = {
        "role": "assistant",
        "tokens": {"input": 120, "output": 30, "reasoning": 5},
        "parts": [{"type": "text", "text": "x" * 4000}],
    }
    assert estimate_message_tokens(message) == 155


def test_zero_usage_falls_back_to_characters() -> None:
    message = {
        "role": "user",
        "tokens": {"input": 0, "output": 0},
        "parts": [{"type": "text", "text": "x" * 10}],
    }
    assert estimate_message_tokens(message) == 3


def test_tool_input_and_output_are_counted() -> None:
    message = {
        "role": "assistant",
        "parts": [
            {
                "type": "tool",
                "tool": "bash",
                "state": {"status": "completed", "input": {"cmd": "ls"}, "output": "a.txt"},
            }
        ],
    }
    # {"cmd":"ls"} is 12 chars, "a.txt" is 5
    assert estimate_message_tokens(message) == 5


def test_empty_message_costs_nothing() -> None:
    assert estimate_message_tokens({"role": "user", "parts": []}) == 0
    assert estimate_message_tokens({"role": "user"}) == 0


def test_estimate_messages_tokens_sums() -> None:
    messages = [
        {"role": "user", "tokens": {"input": 10}},
        {"role": "assistant", "parts": [{"type": "text", "text": "12345678"}]},
    ]
    assert estimate_messages_tokens(messages) == 12
    assert estimate_messages_tokens([]) == 0
