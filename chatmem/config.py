from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/chatmem/config.json").expanduser()
DEFAULT_STORAGE_PATH = Path("~/.chatmem").expanduser()
DB_FILENAME = "chatmem.sqlite"

# Output sizes of the embedding models we know about. Anything else must set
# embedding_dimensions explicitly.
KNOWN_EMBEDDING_DIMENSIONS = {
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

AUTO_MEMORY_TOP_K_CAP = 10

CONFIG_ENV_OVERRIDES = {
    "enabled": "CHATMEM_ENABLED",
    "storage_path": "CHATMEM_STORAGE_PATH",
    "db_path": "CHATMEM_DB",
    "chunk_token_threshold": "CHATMEM_CHUNK_TOKENS",
    "chunk_token_min": "CHATMEM_CHUNK_TOKENS_MIN",
    "chunk_token_max": "CHATMEM_CHUNK_TOKENS_MAX",
    "summarization_provider": "CHATMEM_SUMMARY_PROVIDER",
    "summarization_model": "CHATMEM_SUMMARY_MODEL",
    "summarization_base_url": "CHATMEM_SUMMARY_BASE_URL",
    "summarization_api_key": "CHATMEM_SUMMARY_API_KEY",
    "max_summary_tokens": "CHATMEM_SUMMARY_MAX_TOKENS",
    "embedding_provider": "CHATMEM_EMBEDDING_PROVIDER",
    "embedding_model": "CHATMEM_EMBEDDING_MODEL",
    "embedding_dimensions": "CHATMEM_EMBEDDING_DIMENSIONS",
    "embedding_disabled": "CHATMEM_EMBEDDING_DISABLED",
    "collaborator_timeout_s": "CHATMEM_TIMEOUT_S",
    "runtime_base_url": "CHATMEM_RUNTIME_URL",
    "api_host": "CHATMEM_API_HOST",
    "api_port": "CHATMEM_API_PORT",
    "auto_memory_enabled": "CHATMEM_AUTO_MEMORY_ENABLED",
    "auto_memory_top_k": "CHATMEM_AUTO_MEMORY_TOP_K",
    "auto_memory_min_relevance": "CHATMEM_AUTO_MEMORY_MIN_RELEVANCE",
    "auto_memory_max_chars": "CHATMEM_AUTO_MEMORY_MAX_CHARS",
    "auto_memory_thread_scoped": "CHATMEM_AUTO_MEMORY_THREAD_SCOPED",
}

_INT_KEYS = {
    "chunk_token_threshold",
    "chunk_token_min",
    "chunk_token_max",
    "max_summary_tokens",
    "embedding_dimensions",
    "api_port",
    "auto_memory_top_k",
    "auto_memory_max_chars",
}
_FLOAT_KEYS = {"collaborator_timeout_s", "auto_memory_min_relevance"}
_BOOL_KEYS = {
    "enabled",
    "embedding_disabled",
    "auto_memory_enabled",
    "auto_memory_thread_scoped",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CHATMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def _strip_json_comments(text: str) -> str:
    """Strip // and /* */ comments outside of string literals."""
    result: list[str] = []
    in_string = False
    escape_next = False
    i = 0
    while i < len(text):
        char = text[i]
        if escape_next:
            result.append(char)
            escape_next = False
            i += 1
            continue
        if in_string:
            if char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
            result.append(char)
            i += 1
            continue
        if char == '"':
            in_string = True
            result.append(char)
            i += 1
            continue
        if text.startswith("//", i):
            end = text.find("\n", i)
            i = len(text) if end == -1 else end
            continue
        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end == -1:
                raise ValueError("unterminated block comment")
            i = end + 2
            continue
        result.append(char)
        i += 1
    return "".join(result)


def _strip_trailing_commas(text: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    result: list[str] = []
    in_string = False
    escape_next = False
    i = 0
    while i < len(text):
        char = text[i]
        if escape_next:
            result.append(char)
            escape_next = False
            i += 1
            continue
        if char == "\\" and in_string:
            result.append(char)
            escape_next = True
            i += 1
            continue
        if char == '"':
            in_string = not in_string
            result.append(char)
            i += 1
            continue
        if not in_string and char == ",":
            j = i + 1
            while j < len(text) and text[j].isspace():
                j += 1
            if j < len(text) and text[j] in {"]", "}"}:
                i += 1
                continue
        result.append(char)
        i += 1
    return "".join(result)


def _parse_config_text(raw: str) -> dict[str, Any]:
    try:
        data = json.loads(_strip_trailing_commas(_strip_json_comments(raw)))
    except (json.JSONDecodeError, ValueError) as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    return _parse_config_text(raw)


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class ChatmemConfig:
    enabled: bool = True
    storage_path: str = str(DEFAULT_STORAGE_PATH)
    # Derived from storage_path unless set explicitly.
    db_path: str | None = None

    # Archival thresholds, in estimated tokens.
    chunk_token_threshold: int = 25_000
    chunk_token_min: int = 15_000
    chunk_token_max: int = 40_000

    summarization_provider: str = "openai"
    summarization_model: str = "gpt-4o-mini"
    summarization_base_url: str | None = None
    summarization_api_key: str | None = None
    max_summary_tokens: int = 1024

    embedding_provider: str = "fastembed"
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dimensions: int | None = None
    embedding_disabled: bool = False

    collaborator_timeout_s: float = 60.0
    runtime_base_url: str = "http://127.0.0.1:4096"

    api_host: str = "127.0.0.1"
    api_port: int = 38889

    auto_memory_enabled: bool = True
    auto_memory_top_k: int = 3
    auto_memory_min_relevance: float = 0.3
    auto_memory_max_chars: int = 2000
    auto_memory_thread_scoped: bool = False

    @property
    def resolved_storage_path(self) -> Path:
        return Path(self.storage_path).expanduser()

    @property
    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return self.resolved_storage_path / DB_FILENAME

    @property
    def resolved_embedding_dimensions(self) -> int:
        if self.embedding_dimensions:
            return self.embedding_dimensions
        return KNOWN_EMBEDDING_DIMENSIONS.get(self.embedding_model, 384)


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int | None, *, key: str) -> int | None:
    if value is None:
        return default
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    if parsed <= 0:
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    return parsed


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    if parsed < 0:
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    return parsed


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _apply_value(cfg: ChatmemConfig, key: str, value: object) -> None:
    current = getattr(cfg, key)
    if key in _INT_KEYS:
        setattr(cfg, key, _parse_int(value, current, key=key))
    elif key in _FLOAT_KEYS:
        setattr(cfg, key, _parse_float(value, current, key=key))
    elif key in _BOOL_KEYS:
        setattr(cfg, key, _coerce_bool(value, current, key=key))
    elif isinstance(value, str):
        if value.strip():
            setattr(cfg, key, value.strip())
    elif value is not None:
        warnings.warn(f"Invalid value for {key}: {value!r}", RuntimeWarning, stacklevel=2)


def _apply_dict(cfg: ChatmemConfig, data: dict[str, Any]) -> ChatmemConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        _apply_value(cfg, key, value)
    return cfg


def _apply_env(cfg: ChatmemConfig) -> ChatmemConfig:
    for key, value in get_env_overrides().items():
        _apply_value(cfg, key, value)
    if not cfg.summarization_api_key:
        if cfg.summarization_provider == "anthropic":
            cfg.summarization_api_key = os.getenv("ANTHROPIC_API_KEY")
        else:
            cfg.summarization_api_key = os.getenv("OPENAI_API_KEY")
    return cfg


def _validate(cfg: ChatmemConfig) -> ChatmemConfig:
    if cfg.chunk_token_min > cfg.chunk_token_max:
        warnings.warn(
            f"chunk_token_min {cfg.chunk_token_min} exceeds chunk_token_max "
            f"{cfg.chunk_token_max}; using max",
            RuntimeWarning,
            stacklevel=2,
        )
        cfg.chunk_token_min = cfg.chunk_token_max
    clamped = min(max(cfg.chunk_token_threshold, cfg.chunk_token_min), cfg.chunk_token_max)
    if clamped != cfg.chunk_token_threshold:
        warnings.warn(
            f"chunk_token_threshold {cfg.chunk_token_threshold} outside "
            f"[{cfg.chunk_token_min}, {cfg.chunk_token_max}]; using {clamped}",
            RuntimeWarning,
            stacklevel=2,
        )
        cfg.chunk_token_threshold = clamped
    cfg.auto_memory_top_k = min(cfg.auto_memory_top_k, AUTO_MEMORY_TOP_K_CAP)
    if cfg.auto_memory_min_relevance > 1.0:
        warnings.warn(
            f"Invalid auto_memory_min_relevance: {cfg.auto_memory_min_relevance!r}",
            RuntimeWarning,
            stacklevel=2,
        )
        cfg.auto_memory_min_relevance = 0.3
    return cfg


def load_config(path: Path | None = None) -> ChatmemConfig:
    cfg = ChatmemConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = _parse_config_text(config_path.read_text() or "{}")
        except ValueError:
            warnings.warn(
                f"Ignoring invalid config file {config_path}", RuntimeWarning, stacklevel=2
            )
            data = {}
        cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return _validate(cfg)
