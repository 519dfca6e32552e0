"""Shared domain models used across the ragchat pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Sequence

Role = Literal["user", "assistant"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utcnow()


@dataclass(frozen=True)
class Message:
    """One conversational turn stored in a session."""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        role = data.get("role")
        if role not in ("user", "assistant"):
            raise ValueError(f"Unknown message role: {role!r}")
        return cls(role=role, content=str(data.get("content", "")), timestamp=_parse_timestamp(data.get("timestamp")))


@dataclass
class Session:
    """Server-side conversation state keyed by an opaque identifier."""

    id: str
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
            "messages": [message.to_dict() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Session":
        return cls(
            id=str(data["id"]),
            created_at=_parse_timestamp(data.get("createdAt")),
            last_activity=_parse_timestamp(data.get("lastActivity")),
            messages=[Message.from_dict(item) for item in data.get("messages") or []],
        )


@dataclass(frozen=True)
class DocumentChunk:
    """Slice of a source document stored and retrieved independently."""

    id: str
    title: str
    content: str
    embedding: Sequence[float] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Document chunk requires an id")
        if not self.content or not self.content.strip():
            raise ValueError(f"Document chunk {self.id} has empty content")


@dataclass(frozen=True)
class RetrievalCandidate:
    """Chunk returned by the vector index with its raw distance."""

    id: str
    content: str
    metadata: Mapping[str, Any]
    distance: float

    @property
    def similarity(self) -> float:
        # Cosine distance lies in [0, 2]; 1 - distance is the cosine similarity.
        return 1.0 - self.distance


@dataclass(frozen=True)
class ContextItem:
    """Ranked context block handed to the generator."""

    id: str
    content: str
    similarity: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StageTiming:
    name: str
    duration_ms: float
    status: Literal["completed", "failed", "skipped"] = "completed"


@dataclass(frozen=True)
class StreamChunk:
    """Incremental unit of a streamed answer."""

    chunk: str
    full_text: str
    index: int
    is_complete: bool = False
    error: bool = False


AnswerSource = Literal["rag_pipeline", "fallback", "unavailable"]


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of one query through the retrieval-augmented pipeline."""

    query: str
    answer: str
    success: bool
    source: AnswerSource
    context: Sequence[ContextItem] = ()
    timings: Sequence[StageTiming] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    error: str | None = None
    fallback_answer: str | None = None
