from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, TypedDict

MemoryType = Literal["fact", "preference", "learning"]
ResultSource = Literal["archive", "memory"]


class TokenUsage(TypedDict, total=False):
    input: int
    output: int
    reasoning: int
    cache: dict[str, int]


class PartState(TypedDict, total=False):
    status: str
    input: Any
    output: str
    time: dict[str, int]


class MessagePart(TypedDict, total=False):
    id: str
    type: str
    text: str
    tool: str
    state: PartState


class Message(TypedDict, total=False):
    """A runtime message, stored verbatim in chunk files."""

    id: str
    sessionID: str
    role: str
    time: dict[str, int]
    tokens: TokenUsage
    cost: float
    parts: list[MessagePart]


@dataclass
class TimeRange:
    start: int
    end: int


@dataclass
class MessageRange:
    first_message_id: str
    last_message_id: str
    first_timestamp: int
    last_timestamp: int


@dataclass
class ArchiveChunk:
    id: str
    thread_id: str
    session_id: str
    summary: str
    messages: list[Message]
    token_count: int
    message_count: int
    message_range: MessageRange
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveChunk:
        message_range = data["message_range"]
        return cls(
            id=str(data["id"]),
            thread_id=str(data["thread_id"]),
            session_id=str(data["session_id"]),
            summary=str(data["summary"]),
            messages=list(data["messages"]),
            token_count=int(data["token_count"]),
            message_count=int(data["message_count"]),
            message_range=MessageRange(
                first_message_id=str(message_range["first_message_id"]),
                last_message_id=str(message_range["last_message_id"]),
                first_timestamp=int(message_range["first_timestamp"]),
                last_timestamp=int(message_range["last_timestamp"]),
            ),
            created_at=str(data["created_at"]),
        )


@dataclass
class ArchiveWatermark:
    last_archived_message_index: int
    last_archived_message_id: str
    total_archived_tokens: int
    total_chunks: int
    last_archived_at: str
    # Session the index refers to; a different session restarts archival at 0.
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveWatermark:
        session_id = data.get("session_id")
        return cls(
            last_archived_message_index=int(data["last_archived_message_index"]),
            last_archived_message_id=str(data["last_archived_message_id"]),
            total_archived_tokens=int(data["total_archived_tokens"]),
            total_chunks=int(data["total_chunks"]),
            last_archived_at=str(data["last_archived_at"]),
            session_id=str(session_id) if session_id is not None else None,
        )


@dataclass
class SummaryIndexEntry:
    chunk_id: str
    thread_id: str
    summary: str
    token_count: int
    created_at: str
    time_range: TimeRange
    session_id: str | None = None
    first_message_id: str | None = None
    last_message_id: str | None = None

    @classmethod
    def from_chunk(cls, chunk: ArchiveChunk) -> SummaryIndexEntry:
        return cls(
            chunk_id=chunk.id,
            thread_id=chunk.thread_id,
            summary=chunk.summary,
            token_count=chunk.token_count,
            created_at=chunk.created_at,
            time_range=TimeRange(
                start=chunk.message_range.first_timestamp,
                end=chunk.message_range.last_timestamp,
            ),
            session_id=chunk.session_id,
            first_message_id=chunk.message_range.first_message_id,
            last_message_id=chunk.message_range.last_message_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PersistentMemory:
    id: str
    type: MemoryType
    content: str
    tags: list[str]
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ThreadSession:
    thread_id: str
    session_id: str
    share_url: str | None
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UnifiedSearchResult:
    id: str
    source: ResultSource
    text: str
    relevance_score: float
    thread_id: str | None = None
    token_count: int | None = None
    time_range: TimeRange | None = None
    memory_type: MemoryType | None = None
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.source == "archive":
            data.pop("memory_type")
            data.pop("tags")
        else:
            data.pop("thread_id")
            data.pop("token_count")
            data.pop("time_range")
        return data
