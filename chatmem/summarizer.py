from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from .config import ChatmemConfig
from .tokenizer import CHARS_PER_TOKEN
from .utils import scrub_surrogates

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_MODEL = "claude-3-5-haiku-latest"

SUMMARY_SYSTEM_PROMPT = (
    "You write summaries of archived conversation chunks for an agent's long-term memory. "
    "The summary is what a later search will match against, so keep the concrete details: "
    "decisions and the reasons given, topics and their conclusions, tool calls with their "
    "file paths, commands and results, stated user preferences or constraints, names, URLs "
    "and code references, and any open commitments. "
    "Stay under 300 words and write in the past tense."
)

TOOL_INPUT_PREVIEW_CHARS = 200
TOOL_OUTPUT_PREVIEW_CHARS = 300


class SummarizationError(RuntimeError):
    """The summarization backend failed."""


class SummaryClient(Protocol):
    def summarize(self, messages: Sequence[Mapping[str, Any]], max_tokens: int) -> str: ...


def format_transcript(messages: Sequence[Mapping[str, Any]]) -> str:
    lines: list[str] = []
    for message in messages:
        role = "User" if message.get("role") == "user" else "Assistant"
        for part in message.get("parts") or []:
            if not isinstance(part, Mapping):
                continue
            part_type = part.get("type")
            if part_type == "text" and part.get("text"):
                lines.append(f"[{role}]: {part['text']}")
            elif part_type == "tool" and part.get("tool"):
                state = part.get("state") or {}
                status = state.get("status") or "unknown"
                tool_input = state.get("input")
                preview = ""
                if tool_input:
                    preview = json.dumps(tool_input, ensure_ascii=False)[:TOOL_INPUT_PREVIEW_CHARS]
                lines.append(f"[Tool: {part['tool']}] ({status}) input={preview}")
                output = state.get("output")
                if isinstance(output, str) and output:
                    lines.append(f"  -> {output[:TOOL_OUTPUT_PREVIEW_CHARS]}")
    return scrub_surrogates("\n".join(lines))


def heuristic_summary(messages: Sequence[Mapping[str, Any]], max_tokens: int) -> str:
    """Summary built without a model: message counts, first requests, tools used."""
    requests: list[str] = []
    tools: list[str] = []
    for message in messages:
        for part in message.get("parts") or []:
            if not isinstance(part, Mapping):
                continue
            if part.get("type") == "text" and message.get("role") == "user" and part.get("text"):
                requests.append(" ".join(str(part["text"]).split()))
            elif part.get("type") == "tool" and part.get("tool"):
                tool = str(part["tool"])
                if tool not in tools:
                    tools.append(tool)
    first_role = messages[0].get("role", "unknown") if messages else "unknown"
    last_role = messages[-1].get("role", "unknown") if messages else "unknown"
    lines = [f"{len(messages)} messages, {first_role} to {last_role}."]
    if requests:
        lines.append("User requests: " + " | ".join(request[:200] for request in requests[:5]))
    if tools:
        lines.append("Tools used: " + ", ".join(tools))
    text = "\n".join(lines)
    max_chars = max(max_tokens, 1) * CHARS_PER_TOKEN
    return scrub_surrogates(text[:max_chars])


class _OpenAISummaryClient:
    def __init__(self, model: str, api_key: str, base_url: str | None, timeout_s: float) -> None:
        try:
            from openai import OpenAI
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("openai package is required for model summaries") from exc
        self.model = model
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s)

    def complete(self, transcript: str, max_tokens: int) -> str:
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": f"Summarize this conversation chunk:\n\n{transcript}"},
            ],
            max_tokens=max_tokens,
            temperature=0,
        )
        return resp.choices[0].message.content or ""


class _AnthropicSummaryClient:
    def __init__(self, model: str, api_key: str, base_url: str | None, timeout_s: float) -> None:
        try:
            import anthropic
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("anthropic package is required for model summaries") from exc
        self.model = model
        self.client = anthropic.Anthropic(api_key=api_key, base_url=base_url, timeout=timeout_s)

    def complete(self, transcript: str, max_tokens: int) -> str:
        resp = self.client.messages.create(
            model=self.model,
            system=SUMMARY_SYSTEM_PROMPT,
            messages=[
                {"role": "user", "content": f"Summarize this conversation chunk:\n\n{transcript}"}
            ],
            max_tokens=max_tokens,
            temperature=0,
        )
        texts = [
            getattr(block, "text", "")
            for block in resp.content
            if getattr(block, "type", None) == "text"
        ]
        return "".join(texts)


class Summarizer:
    """Chunk summarizer backed by an OpenAI or Anthropic model.

    Without credentials every summary is heuristic. A model call that raises
    becomes SummarizationError; an empty model answer falls back to the heuristic.
    """

    def __init__(self, config: ChatmemConfig, *, force_heuristic: bool = False) -> None:
        self.provider = (config.summarization_provider or "openai").strip().lower()
        self.force_heuristic = force_heuristic
        model = config.summarization_model
        if self.provider == "anthropic" and model.startswith("gpt-"):
            model = DEFAULT_ANTHROPIC_MODEL
        self.model = model
        self.llm: _OpenAISummaryClient | _AnthropicSummaryClient | None = None
        api_key = config.summarization_api_key
        if force_heuristic:
            return
        if not api_key:
            logger.info(
                "summarizer: no api key, using heuristic summaries",
                extra={"provider": self.provider},
            )
            return
        try:
            if self.provider == "anthropic":
                self.llm = _AnthropicSummaryClient(
                    model, api_key, config.summarization_base_url, config.collaborator_timeout_s
                )
            else:
                self.llm = _OpenAISummaryClient(
                    model, api_key, config.summarization_base_url, config.collaborator_timeout_s
                )
        except Exception as exc:  # pragma: no cover
            logger.exception(
                "summarizer: client init failed",
                extra={"provider": self.provider, "model": model},
                exc_info=exc,
            )
            self.llm = None

    def summarize(self, messages: Sequence[Mapping[str, Any]], max_tokens: int) -> str:
        if not messages:
            raise ValueError("cannot summarize an empty chunk")
        if self.llm is None:
            return heuristic_summary(messages, max_tokens)
        transcript = format_transcript(messages)
        try:
            content = self.llm.complete(transcript, max_tokens)
        except Exception as exc:
            raise SummarizationError(f"{self.provider} summarization failed: {exc}") from exc
        summary = content.strip()
        if not summary:
            logger.warning(
                "summarizer returned empty content",
                extra={"provider": self.provider, "model": self.model},
            )
            return heuristic_summary(messages, max_tokens)
        return summary
