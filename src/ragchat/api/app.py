"""FastAPI application exposing ragchat services."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError

from ragchat import __version__
from ragchat.api.schemas import (
    SESSION_ID_PATTERN,
    ArticleIngestionRequest,
    ChatRequest,
    ChatResponse,
    ContextModel,
    CreateSessionRequest,
    DocumentModel,
    IngestionSummaryModel,
    MessageModel,
    PipelineConfigModel,
    PipelineConfigUpdate,
    SearchHit,
    SearchResponse,
    SessionHistoryResponse,
    SessionModel,
    SessionStatsResponse,
)
from ragchat.cache import CacheStore, SessionStore
from ragchat.config import Settings, get_settings
from ragchat.embeddings import EmbeddingClient, EmbeddingConfig, HashEmbeddingClient, JinaEmbeddingClient
from ragchat.errors import ServiceUnavailableError, VectorStoreError
from ragchat.ingestion import Article, ArticleIngestor, IngestionConfig, IngestionError
from ragchat.metrics.observability import (
    PipelineMetrics,
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    get_logger,
)
from ragchat.models import Message
from ragchat.retrieval import VectorSearchGateway, create_vector_gateway
from ragchat.services.chat import ChatService
from ragchat.services.generation import GeminiBackend, GenerationClient, GenerationConfig, TemplateBackend
from ragchat.services.query import PipelineConfig, RAGPipeline
from ragchat.services.streaming import ChannelHub, sse_stream


@dataclass(frozen=True)
class AppDependencies:
    cache: CacheStore
    sessions: SessionStore
    embedder: EmbeddingClient
    gateway: VectorSearchGateway
    pipeline: RAGPipeline
    chat: ChatService
    ingestor: ArticleIngestor
    hub: ChannelHub


def _build_embedder(settings: Settings) -> EmbeddingClient:
    config = EmbeddingConfig(
        model=settings.embedding_model,
        base_url=settings.jina_base_url,
        api_key=settings.jina_api_key,
        max_tokens=settings.embedding_max_tokens,
        dim=settings.embedding_dim,
        batch_size=settings.embedding_batch_size,
        batch_delay_seconds=settings.embedding_batch_delay_seconds,
        max_concurrency=settings.embedding_max_concurrency,
        timeout_seconds=settings.embedding_timeout_seconds,
        batch_timeout_seconds=settings.embedding_batch_timeout_seconds,
    )
    if settings.embedding_provider == "hash":
        return HashEmbeddingClient(config)
    return JinaEmbeddingClient(config)


def _build_generator(settings: Settings) -> GenerationClient:
    config = GenerationConfig(
        model=settings.generator_model,
        api_key=settings.gemini_api_key,
        max_output_tokens=settings.generator_max_output_tokens,
        temperature=settings.generator_temperature,
        top_p=settings.generator_top_p,
        timeout_seconds=settings.generation_timeout_seconds,
    )
    if settings.generator_provider == "template":
        return GenerationClient(TemplateBackend(), config)
    return GenerationClient(GeminiBackend(config), config)


def _build_dependencies(settings: Settings) -> AppDependencies:
    cache = CacheStore(
        redis_url=settings.redis_url,
        max_consecutive_errors=settings.cache_max_consecutive_errors,
        connect_timeout=settings.cache_connect_timeout_seconds,
    )
    sessions = SessionStore(
        cache,
        ttl_seconds=settings.session_ttl_seconds,
        max_messages=settings.max_session_messages,
    )
    embedder = _build_embedder(settings)
    gateway = create_vector_gateway(settings)
    pipeline = RAGPipeline(
        embedder,
        gateway,
        _build_generator(settings),
        PipelineConfig(
            top_k=settings.rag_top_k,
            similarity_threshold=settings.similarity_threshold,
            max_context_chunks=settings.max_context_chunks,
            fallback_word_delay_seconds=settings.fallback_word_delay_seconds,
        ),
    )
    ingestor = ArticleIngestor(
        embedder,
        gateway,
        IngestionConfig(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            min_chunk_length=settings.min_chunk_length,
            min_article_length=settings.min_article_length,
        ),
    )
    return AppDependencies(
        cache=cache,
        sessions=sessions,
        embedder=embedder,
        gateway=gateway,
        pipeline=pipeline,
        chat=ChatService(sessions, pipeline),
        ingestor=ingestor,
        hub=ChannelHub(),
    )


class RateLimiter:
    """Sliding-window request limit per client address and path."""

    def __init__(self, requests: int, window_seconds: int) -> None:
        self.requests = requests
        self.window = window_seconds
        self._buckets: dict[str, deque[float]] = {}

    def __call__(self, request: Request) -> None:
        client_ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        key = f"{client_ip}:{request.url.path}"
        now = time.monotonic()
        cutoff = now - self.window
        self._evict_idle(cutoff)
        bucket = self._buckets.setdefault(key, deque())
        while bucket and bucket[0] < cutoff:
            bucket.popleft()
        if len(bucket) >= self.requests:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests, please try again later",
            )
        bucket.append(now)

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict_idle(self, cutoff: float) -> None:
        for key in [key for key, stamps in self._buckets.items() if not stamps or stamps[-1] < cutoff]:
            del self._buckets[key]


def _message_models(messages: list[Message]) -> list[MessageModel]:
    return [MessageModel(role=m.role, content=m.content, timestamp=m.timestamp) for m in messages]


def _config_model(pipeline: RAGPipeline) -> PipelineConfigModel:
    config = pipeline.config
    return PipelineConfigModel(
        top_k=config.top_k,
        similarity_threshold=config.similarity_threshold,
        max_context_chunks=config.max_context_chunks,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await deps.cache.connect()
        deps.pipeline.initialize()
        logger.info(
            "app.started",
            environment=settings.environment,
            cache=deps.cache.backend_name,
            pipeline_ready=deps.pipeline.is_ready(),
        )
        try:
            yield
        finally:
            await deps.cache.close()
            await deps.embedder.aclose()
            logger.info("app.stopped")

    app = FastAPI(title="ragchat API", version=__version__, lifespan=lifespan)
    app.state.dependencies = deps

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    def _error_response(request: Request, status_code: int, detail: str) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()
        return JSONResponse(status_code=status_code, content={"detail": detail, "correlation_id": correlation_id})

    @app.exception_handler(ServiceUnavailableError)
    async def handle_unavailable(request: Request, exc: ServiceUnavailableError) -> JSONResponse:
        logger.error("service.unavailable", detail=str(exc))
        return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, "Service temporarily unavailable")

    @app.exception_handler(VectorStoreError)
    async def handle_vector_store_error(request: Request, exc: VectorStoreError) -> JSONResponse:
        logger.error("vectordb.error", detail=str(exc))
        return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, "Vector database unavailable")

    @app.exception_handler(IngestionError)
    async def handle_ingestion_error(request: Request, exc: IngestionError) -> JSONResponse:
        logger.error("ingestion.error", detail=str(exc))
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to ingest articles")

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("request.invalid", detail=str(exc))
        return _error_response(request, status.HTTP_400_BAD_REQUEST, "Invalid input data")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled.error", detail=str(exc), error_type=type(exc).__name__)
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_chat(dep: AppDependencies = Depends(get_dependencies)) -> ChatService:
        return dep.chat

    def get_sessions(dep: AppDependencies = Depends(get_dependencies)) -> SessionStore:
        return dep.sessions

    def get_pipeline(dep: AppDependencies = Depends(get_dependencies)) -> RAGPipeline:
        return dep.pipeline

    def get_ingestor(dep: AppDependencies = Depends(get_dependencies)) -> ArticleIngestor:
        return dep.ingestor

    def get_gateway(dep: AppDependencies = Depends(get_dependencies)) -> VectorSearchGateway:
        return dep.gateway

    session_path = Path(..., pattern=SESSION_ID_PATTERN)

    @app.get("/")
    async def index() -> dict[str, object]:
        return {
            "message": "ragchat API",
            "version": __version__,
            "status": "running",
            "endpoints": {
                "health": "/api/health",
                "chat": "/api/chat",
                "sessions": "/api/sessions",
                "ingest": "/api/ingest",
                "channel": "/ws",
            },
        }

    # Chat

    @app.post("/api/chat", response_model=ChatResponse)
    async def send_message(
        payload: ChatRequest,
        chat: ChatService = Depends(get_chat),
        _rl: None = Depends(rate_limiter),
    ) -> ChatResponse:
        reply = await chat.send_message(payload.message, payload.session_id)
        return ChatResponse(
            session_id=reply.session_id,
            user_message=reply.user_message,
            bot_response=reply.answer,
            source=reply.source,
            context=[
                ContextModel(id=item.id, content=item.content, similarity=item.similarity, metadata=dict(item.metadata))
                for item in reply.context
            ],
            metadata=dict(reply.metadata),
            timestamp=reply.timestamp,
        )

    @app.post("/api/chat/stream")
    async def stream_message(
        payload: ChatRequest,
        chat: ChatService = Depends(get_chat),
        _rl: None = Depends(rate_limiter),
    ) -> StreamingResponse:
        session_id = await chat.resolve_session(payload.session_id)

        async def produce(on_chunk):
            return await chat.stream_message(payload.message, on_chunk, session_id)

        return StreamingResponse(
            sse_stream(produce, session_id=session_id),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # Sessions

    @app.post("/api/sessions", status_code=status.HTTP_201_CREATED)
    async def create_session(
        payload: Optional[CreateSessionRequest] = None,
        sessions: SessionStore = Depends(get_sessions),
    ) -> dict[str, object]:
        session_id = await sessions.create_session(payload.session_id if payload else None)
        if session_id is None:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create session")
        return {"success": True, "sessionId": session_id}

    @app.get("/api/sessions/stats", response_model=SessionStatsResponse)
    async def session_stats(dep: AppDependencies = Depends(get_dependencies)) -> SessionStatsResponse:
        stats = await dep.sessions.stats()
        return SessionStatsResponse(
            total_sessions=stats.total_sessions,
            active_sessions=stats.active_sessions,
            total_messages=stats.total_messages,
            storage=stats.storage,
            degraded=dep.cache.degraded,
        )

    @app.get("/api/sessions/{session_id}", response_model=SessionModel)
    async def get_session(
        session_id: str = session_path,
        sessions: SessionStore = Depends(get_sessions),
    ) -> SessionModel:
        session = await sessions.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
        return SessionModel(
            id=session.id,
            created_at=session.created_at,
            last_activity=session.last_activity,
            message_count=len(session.messages),
            messages=_message_models(session.messages),
        )

    @app.get("/api/sessions/{session_id}/history", response_model=SessionHistoryResponse)
    async def session_history(
        session_id: str = session_path,
        limit: Optional[int] = Query(default=None, ge=1, le=100),
        sessions: SessionStore = Depends(get_sessions),
    ) -> SessionHistoryResponse:
        messages = await sessions.get_messages(session_id)
        if messages is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
        selected = messages[-limit:] if limit else messages
        return SessionHistoryResponse(
            session_id=session_id,
            messages=_message_models(selected),
            total_messages=len(messages),
        )

    @app.post("/api/sessions/{session_id}/clear")
    async def clear_session(
        session_id: str = session_path,
        sessions: SessionStore = Depends(get_sessions),
    ) -> dict[str, object]:
        if not await sessions.clear_messages(session_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
        return {"success": True, "sessionId": session_id}

    @app.delete("/api/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_session(
        session_id: str = session_path,
        sessions: SessionStore = Depends(get_sessions),
    ) -> Response:
        if not await sessions.delete_session(session_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Ingestion

    @app.post("/api/ingest/articles", response_model=IngestionSummaryModel, status_code=status.HTTP_201_CREATED)
    async def ingest_articles(
        payload: ArticleIngestionRequest,
        ingestor: ArticleIngestor = Depends(get_ingestor),
        _rl: None = Depends(rate_limiter),
    ) -> IngestionSummaryModel:
        articles = [Article(**item.model_dump()) for item in payload.articles]
        summary = await ingestor.ingest_articles(articles)
        return IngestionSummaryModel(
            total_articles=summary.total_articles,
            unique_articles=summary.unique_articles,
            skipped_articles=summary.skipped_articles,
            processed_chunks=summary.processed_chunks,
            success_count=summary.success_count,
            error_count=summary.error_count,
            average_chunks_per_article=summary.average_chunks_per_article,
            duration_seconds=summary.duration_seconds,
        )

    @app.get("/api/ingest/stats")
    async def ingestion_stats(ingestor: ArticleIngestor = Depends(get_ingestor)) -> dict[str, object]:
        return dict(await ingestor.stats())

    @app.get("/api/ingest/search", response_model=SearchResponse)
    async def search_documents(
        q: str = Query(..., min_length=1, max_length=500),
        limit: int = Query(default=5, ge=1, le=20),
        mode: str = Query(default="semantic", pattern="^(semantic|text)$"),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> SearchResponse:
        if mode == "text":
            candidates = await dep.gateway.search_by_text(q, limit)
        else:
            embedding = await dep.embedder.embed(q)
            candidates = await dep.gateway.search_similar(embedding.vector, limit)
        return SearchResponse(
            query=q,
            results=[
                SearchHit(id=c.id, content=c.content, similarity=c.similarity, metadata=dict(c.metadata))
                for c in candidates
            ],
        )

    @app.get("/api/ingest/documents/{document_id}", response_model=DocumentModel)
    async def get_document(document_id: str, gateway: VectorSearchGateway = Depends(get_gateway)) -> DocumentModel:
        chunk = await gateway.get_document(document_id)
        if chunk is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        return DocumentModel(id=chunk.id, title=chunk.title, content=chunk.content, metadata=dict(chunk.metadata))

    @app.delete("/api/ingest/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_document(document_id: str, gateway: VectorSearchGateway = Depends(get_gateway)) -> Response:
        if not await gateway.delete_document(document_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/api/ingest/documents", status_code=status.HTTP_204_NO_CONTENT)
    async def clear_documents(gateway: VectorSearchGateway = Depends(get_gateway)) -> Response:
        await gateway.clear()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Pipeline

    @app.get("/api/pipeline/config", response_model=PipelineConfigModel)
    async def pipeline_config(pipeline: RAGPipeline = Depends(get_pipeline)) -> PipelineConfigModel:
        return _config_model(pipeline)

    @app.patch("/api/pipeline/config", response_model=PipelineConfigModel)
    async def update_pipeline_config(
        payload: PipelineConfigUpdate,
        pipeline: RAGPipeline = Depends(get_pipeline),
    ) -> PipelineConfigModel:
        pipeline.update_config(
            top_k=payload.top_k,
            similarity_threshold=payload.similarity_threshold,
            max_context_chunks=payload.max_context_chunks,
        )
        return _config_model(pipeline)

    @app.get("/api/pipeline/stats")
    async def pipeline_stats(pipeline: RAGPipeline = Depends(get_pipeline)) -> dict[str, object]:
        return await pipeline.stats()

    # Health

    @app.get("/api/health")
    async def healthcheck(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, object]:
        return {
            "status": "ok",
            "version": __version__,
            "environment": settings.environment,
            "services": {
                "cache": {"backend": dep.cache.backend_name, "degraded": dep.cache.degraded},
                "vector_db": {"storage": dep.gateway.name, "available": dep.gateway.is_available()},
                "pipeline": {"ready": dep.pipeline.is_ready()},
            },
        }

    @app.get("/api/health/live")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/api/health/ready")
    async def readiness(dep: AppDependencies = Depends(get_dependencies)) -> JSONResponse:
        cache_ok = await dep.cache.ping()
        ready = cache_ok and dep.pipeline.is_ready()
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if ready else "not_ready",
                "cache": cache_ok,
                "pipeline": dep.pipeline.is_ready(),
            },
        )

    @app.get("/api/health/pipeline")
    async def pipeline_health(pipeline: RAGPipeline = Depends(get_pipeline)) -> dict[str, object]:
        return await pipeline.health_check()

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    # Real-time channel

    @app.websocket("/ws")
    async def channel(websocket: WebSocket) -> None:
        dep: AppDependencies = websocket.app.state.dependencies
        hub = dep.hub
        await websocket.accept()
        PipelineMetrics.channel_connections.inc()
        pending: set[asyncio.Task] = set()
        try:
            while True:
                try:
                    frame = await websocket.receive_json()
                except ValueError:
                    await hub.send(websocket, "error", {"message": "Invalid message format"})
                    continue
                event = frame.get("event") if isinstance(frame, dict) else None
                data = frame.get("data") if isinstance(frame, dict) else None

                if event == "join_session":
                    session_id = data.get("sessionId") if isinstance(data, dict) else data
                    if not isinstance(session_id, str) or not session_id:
                        await hub.send(websocket, "error", {"message": "Invalid session ID"})
                        continue
                    hub.join(session_id, websocket)
                elif event == "send_message":
                    try:
                        request = ChatRequest.model_validate(
                            {"message": (data or {}).get("message"), "sessionId": (data or {}).get("sessionId")}
                        )
                    except (ValidationError, AttributeError):
                        await hub.send(websocket, "error", {"message": "Invalid input data"})
                        continue
                    session_id = await dep.chat.resolve_session(request.session_id)
                    hub.join(session_id, websocket)

                    async def produce(on_chunk, message=request.message, session_id=session_id):
                        return await dep.chat.stream_message(message, on_chunk, session_id)

                    task = asyncio.create_task(hub.deliver(websocket, session_id, produce))
                    pending.add(task)
                    task.add_done_callback(pending.discard)
                else:
                    await hub.send(websocket, "error", {"message": f"Unknown event: {event}"})
        except WebSocketDisconnect:
            logger.info("channel.disconnected", pending=len(pending))
        finally:
            for task in list(pending):
                task.cancel()
            hub.leave(websocket)
            PipelineMetrics.channel_connections.dec()

    return app


app = create_app()
