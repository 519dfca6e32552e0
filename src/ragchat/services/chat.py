"""Session-aware chat handling around the query pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence

from ragchat.cache.sessions import SessionStore
from ragchat.metrics.observability import get_logger
from ragchat.models import AnswerSource, ContextItem, Message, PipelineResult, utcnow
from ragchat.services.generation import ChunkCallback
from ragchat.services.query import QueryOptions, RAGPipeline


@dataclass(frozen=True)
class ChatReply:
    """Answer delivered to a chat client together with its provenance."""

    session_id: str
    user_message: str
    answer: str
    source: AnswerSource
    success: bool
    context: Sequence[ContextItem] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


class ChatService:
    """Reads and writes session history around each pipeline run.

    Session bookkeeping happens whether or not the pipeline succeeds, so
    the assistant turn is recorded even when it is a fallback answer.
    """

    def __init__(self, sessions: SessionStore, pipeline: RAGPipeline, options: QueryOptions | None = None) -> None:
        self._sessions = sessions
        self._pipeline = pipeline
        self._options = options
        self._logger = get_logger("chat")

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def pipeline(self) -> RAGPipeline:
        return self._pipeline

    async def resolve_session(self, session_id: str | None = None) -> str:
        session = await self._sessions.get_or_create_session(session_id)
        if session is not None:
            return session.id
        # The store reported a write failure; answer anyway under the requested id.
        return session_id or self._sessions.generate_session_id()

    async def send_message(self, message: str, session_id: str | None = None) -> ChatReply:
        session_id = await self.resolve_session(session_id)
        await self._sessions.append_message(session_id, Message(role="user", content=message))
        result = await self._pipeline.process_query(message, self._options, session_id=session_id)
        return await self._record_reply(session_id, message, result)

    async def stream_message(self, message: str, on_chunk: ChunkCallback, session_id: str | None = None) -> ChatReply:
        session_id = await self.resolve_session(session_id)
        await self._sessions.append_message(session_id, Message(role="user", content=message))
        result = await self._pipeline.process_streaming_query(message, on_chunk, self._options, session_id=session_id)
        return await self._record_reply(session_id, message, result)

    async def _record_reply(self, session_id: str, message: str, result: PipelineResult) -> ChatReply:
        if not await self._sessions.append_message(session_id, Message(role="assistant", content=result.answer)):
            self._logger.warning("chat.reply_not_recorded", session_id=session_id)
        self._logger.info("chat.replied", session_id=session_id, source=result.source, success=result.success)
        return ChatReply(
            session_id=session_id,
            user_message=message,
            answer=result.answer,
            source=result.source,
            success=result.success,
            context=tuple(result.context),
            metadata=dict(result.metadata),
        )
