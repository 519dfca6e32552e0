"""Pydantic models for the ragchat API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ragchat.config import get_settings

SESSION_ID_PATTERN = r"^[A-Za-z0-9_:\-]{1,100}$"


class ApiModel(BaseModel):
    """Base model speaking camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class ChatRequest(ApiModel):
    message: str = Field(
        ...,
        min_length=1,
        max_length=get_settings().max_query_length,
        description="End-user question to answer",
    )
    session_id: Optional[str] = Field(default=None, pattern=SESSION_ID_PATTERN)


class ContextModel(ApiModel):
    id: str
    content: str
    similarity: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChatResponse(ApiModel):
    session_id: str
    user_message: str
    bot_response: str
    source: Literal["rag_pipeline", "fallback", "unavailable"]
    context: List[ContextModel] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class MessageModel(ApiModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime


class CreateSessionRequest(ApiModel):
    session_id: Optional[str] = Field(default=None, pattern=SESSION_ID_PATTERN)


class SessionModel(ApiModel):
    id: str
    created_at: datetime
    last_activity: datetime
    message_count: int
    messages: List[MessageModel] = Field(default_factory=list)


class SessionHistoryResponse(ApiModel):
    session_id: str
    messages: List[MessageModel]
    total_messages: int


class SessionStatsResponse(ApiModel):
    total_sessions: int
    active_sessions: int
    total_messages: int
    storage: str
    degraded: bool


class PipelineConfigModel(ApiModel):
    top_k: int
    similarity_threshold: float
    max_context_chunks: int


class PipelineConfigUpdate(ApiModel):
    top_k: Optional[int] = None
    similarity_threshold: Optional[float] = None
    max_context_chunks: Optional[int] = None


class ArticleModel(ApiModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    id: Optional[str] = None
    url: Optional[str] = None
    published: Optional[str] = None
    source: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None


class ArticleIngestionRequest(ApiModel):
    articles: List[ArticleModel] = Field(
        ...,
        min_length=1,
        max_length=get_settings().max_articles_per_request,
    )


class IngestionSummaryModel(ApiModel):
    total_articles: int
    unique_articles: int
    skipped_articles: int
    processed_chunks: int
    success_count: int
    error_count: int
    average_chunks_per_article: float
    duration_seconds: float


class SearchHit(ApiModel):
    id: str
    content: str
    similarity: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(ApiModel):
    query: str
    results: List[SearchHit]


class DocumentModel(ApiModel):
    id: str
    title: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
