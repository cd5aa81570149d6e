from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from .types import ArchiveChunk, ArchiveWatermark

logger = logging.getLogger(__name__)

ARCHIVES_DIR = "archives"
CHUNKS_DIR = "chunks"
WATERMARK_FILENAME = "watermark.json"


def thread_dirname(thread_id: str) -> str:
    """Map a thread id onto a single safe path segment."""
    if not isinstance(thread_id, str) or not thread_id.strip():
        raise ValueError("thread_id must be a non-empty string")
    if thread_id in {".", ".."}:
        raise ValueError(f"invalid thread_id: {thread_id!r}")
    return quote(thread_id, safe="")


def _check_chunk_id(chunk_id: str) -> str:
    if not isinstance(chunk_id, str) or not chunk_id.strip():
        raise ValueError("chunk_id must be a non-empty string")
    if chunk_id in {".", ".."} or "/" in chunk_id or "\\" in chunk_id or "\x00" in chunk_id:
        raise ValueError(f"invalid chunk_id: {chunk_id!r}")
    return chunk_id


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON so readers only ever see the old or the new complete file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name + ".tmp.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _read_json(path: Path, *, kind: str) -> dict[str, Any] | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except UnicodeDecodeError:
        logger.warning(f"{kind} file is not valid utf-8", extra={"path": str(path)})
        return None
    except OSError as exc:
        logger.warning(f"{kind} read failed", extra={"path": str(path)}, exc_info=exc)
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"{kind} file is corrupt", extra={"path": str(path)})
        return None
    if not isinstance(data, dict):
        logger.warning(f"{kind} file is not an object", extra={"path": str(path)})
        return None
    return data


class ChunkStore:
    """Verbatim chunk transcripts and per-thread watermarks on disk."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).expanduser()

    @property
    def archives_dir(self) -> Path:
        return self.root / ARCHIVES_DIR

    def thread_dir(self, thread_id: str) -> Path:
        return self.archives_dir / thread_dirname(thread_id)

    def chunk_path(self, thread_id: str, chunk_id: str) -> Path:
        return self.thread_dir(thread_id) / CHUNKS_DIR / f"{_check_chunk_id(chunk_id)}.json"

    def watermark_path(self, thread_id: str) -> Path:
        return self.thread_dir(thread_id) / WATERMARK_FILENAME

    def write_chunk(self, chunk: ArchiveChunk) -> Path:
        path = self.chunk_path(chunk.thread_id, chunk.id)
        atomic_write_json(path, chunk.to_dict())
        logger.debug(
            "chunk written",
            extra={"thread_id": chunk.thread_id, "chunk_id": chunk.id, "path": str(path)},
        )
        return path

    def read_chunk(self, thread_id: str, chunk_id: str) -> ArchiveChunk | None:
        path = self.chunk_path(thread_id, chunk_id)
        data = _read_json(path, kind="chunk")
        if data is None:
            return None
        try:
            return ArchiveChunk.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("chunk file is malformed", extra={"path": str(path)})
            return None

    def chunk_exists(self, thread_id: str, chunk_id: str) -> bool:
        return self.chunk_path(thread_id, chunk_id).is_file()

    def delete_chunk(self, thread_id: str, chunk_id: str) -> bool:
        path = self.chunk_path(thread_id, chunk_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def list_chunk_ids(self, thread_id: str) -> list[str]:
        chunks_dir = self.thread_dir(thread_id) / CHUNKS_DIR
        if not chunks_dir.is_dir():
            return []
        return sorted(path.stem for path in chunks_dir.glob("*.json"))

    def list_threads(self) -> list[str]:
        if not self.archives_dir.is_dir():
            return []
        return sorted(unquote(path.name) for path in self.archives_dir.iterdir() if path.is_dir())

    def read_watermark(self, thread_id: str) -> ArchiveWatermark | None:
        path = self.watermark_path(thread_id)
        data = _read_json(path, kind="watermark")
        if data is None:
            return None
        try:
            return ArchiveWatermark.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("watermark file is malformed", extra={"path": str(path)})
            return None

    def write_watermark(self, thread_id: str, watermark: ArchiveWatermark) -> Path:
        path = self.watermark_path(thread_id)
        atomic_write_json(path, watermark.to_dict())
        return path
