"""Query orchestration combining embedding, retrieval and generation."""

from __future__ import annotations

import asyncio
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from typing import Any, Iterator, Mapping, Sequence

from ragchat.embeddings.service import EmbeddingClient
from ragchat.errors import RagChatError, VectorStoreError
from ragchat.metrics.observability import PipelineMetrics, TimedSection, get_logger
from ragchat.models import ContextItem, PipelineResult, RetrievalCandidate, StageTiming, StreamChunk
from ragchat.retrieval.service import filter_relevant_context, prepare_context
from ragchat.retrieval.store import VectorSearchGateway
from ragchat.services.generation import ChunkCallback, GenerationClient, GenerationOptions

NOT_READY_MESSAGE = (
    "I apologize, but my knowledge base is not currently available. Please try again in a little while."
)
NO_INFORMATION_MESSAGE = (
    "I apologize, but I don't have enough information in my knowledge base to answer your question. "
    "Could you try rephrasing your question or asking about a different topic?"
)
STREAM_FALLBACK_MESSAGE = "I don't have enough relevant information to answer your question."
STREAM_ERROR_MESSAGE = "I apologize, but I encountered an error processing your request."
TECHNICAL_DIFFICULTIES_MESSAGE = (
    "I apologize, but I'm having technical difficulties processing your request right now."
)

FALLBACK_PROMPT_TEMPLATE = """The user asked: "{query}"

I don't have specific information in my knowledge base to answer this question directly. Please provide a helpful response explaining that you don't have enough relevant information, but offer to help in other ways or suggest how they might find the information they need.

Be polite, helpful, and acknowledge their question."""

FALLBACK_OPTIONS = GenerationOptions(max_output_tokens=150, temperature=0.7)

TOP_K_RANGE = (1, 20)
THRESHOLD_RANGE = (0.0, 1.0)
MAX_CONTEXT_RANGE = (1, 10)


@dataclass(frozen=True)
class PipelineConfig:
    """Retrieval parameters applied when a query does not override them."""

    top_k: int = 3
    similarity_threshold: float = 0.1
    max_context_chunks: int = 5
    fallback_word_delay_seconds: float = 0.1


@dataclass(frozen=True)
class QueryOptions:
    top_k: int | None = None
    similarity_threshold: float | None = None
    max_context_chunks: int | None = None
    where: Mapping[str, Any] | None = None
    generation: GenerationOptions | None = None


def _clamp(value, bounds):
    low, high = bounds
    return max(low, min(high, value))


class _StageRecorder:
    """Collects per-stage timings and feeds the stage latency histogram."""

    def __init__(self) -> None:
        self.timings: list[StageTiming] = []

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        completed = False

        def record(duration: float) -> None:
            PipelineMetrics.observe_stage(name, duration)
            self.timings.append(
                StageTiming(name=name, duration_ms=duration * 1000, status="completed" if completed else "failed")
            )

        with TimedSection(record):
            yield
            completed = True

    def skip(self, name: str) -> None:
        self.timings.append(StageTiming(name=name, duration_ms=0.0, status="skipped"))


class RAGPipeline:
    """Answers questions through embedding, search, filtering, assembly and generation.

    Stages run strictly in order. Any stage failure is converted into a
    textual answer, so callers always receive a :class:`PipelineResult`
    whose ``source`` tells a primary answer from a fallback.
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        gateway: VectorSearchGateway,
        generator: GenerationClient,
        config: PipelineConfig | None = None,
    ) -> None:
        self._embedder = embedder
        self._gateway = gateway
        self._generator = generator
        self._config = config or PipelineConfig()
        self._initialized = False
        self._logger = get_logger("pipeline")

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def generator(self) -> GenerationClient:
        return self._generator

    def initialize(self) -> bool:
        missing = [
            name
            for name, available in (
                ("embeddings", self._embedder.is_available()),
                ("vector_db", self._gateway.is_available()),
                ("llm", self._generator.is_available()),
            )
            if not available
        ]
        if missing:
            self._logger.error("pipeline.initialize_failed", missing=missing)
            self._initialized = False
            return False
        self._initialized = True
        self._logger.info("pipeline.initialized", **asdict(self._config))
        return True

    def is_ready(self) -> bool:
        return (
            self._initialized
            and self._embedder.is_available()
            and self._gateway.is_available()
            and self._generator.is_available()
        )

    async def process_query(
        self,
        query: str,
        options: QueryOptions | None = None,
        *,
        session_id: str | None = None,
    ) -> PipelineResult:
        query = self._validate_query(query)
        options = options or QueryOptions()
        if not self.is_ready():
            return self._not_ready_result(query, session_id)

        recorder = _StageRecorder()
        metadata: dict[str, Any] = {}
        start = time.perf_counter()
        try:
            relevant = await self._retrieve(query, options, recorder, metadata)
            if not relevant:
                recorder.skip("context_preparation")
                with recorder.stage("fallback_generation"):
                    answer = await self.generate_fallback_response(query)
                PipelineMetrics.observe_fallback("no_context")
                self._logger.warning("pipeline.no_relevant_context", query_length=len(query))
                metadata["total_duration_ms"] = (time.perf_counter() - start) * 1000
                return PipelineResult(
                    query=query,
                    answer=answer,
                    success=True,
                    source="fallback",
                    context=(),
                    timings=tuple(recorder.timings),
                    metadata=metadata,
                    session_id=session_id,
                )

            with recorder.stage("context_preparation"):
                context = self.prepare_context(relevant, self._max_context(options))
            metadata["final_context_length"] = len(context)

            with recorder.stage("llm_generation"):
                response = await self._generator.generate_rag_response(query, context, options.generation)
            metadata["response_length"] = len(response.text)
            metadata["usage"] = dict(response.usage)
        except Exception as exc:
            return await self._failure_result(query, session_id, exc, recorder, metadata)

        metadata["total_duration_ms"] = (time.perf_counter() - start) * 1000
        self._logger.info(
            "pipeline.complete",
            context_count=len(context),
            duration_ms=metadata["total_duration_ms"],
        )
        return PipelineResult(
            query=query,
            answer=response.text,
            success=True,
            source="rag_pipeline",
            context=tuple(context),
            timings=tuple(recorder.timings),
            metadata=metadata,
            session_id=session_id,
        )

    async def process_streaming_query(
        self,
        query: str,
        on_chunk: ChunkCallback,
        options: QueryOptions | None = None,
        *,
        session_id: str | None = None,
    ) -> PipelineResult:
        """Run the query and deliver the answer through ``on_chunk``.

        Every path ends with exactly one chunk whose ``is_complete`` flag is
        set; failures set ``error`` on that chunk instead of raising.
        """

        query = self._validate_query(query)
        options = options or QueryOptions()
        delivered = 0

        async def relay(chunk: StreamChunk) -> None:
            nonlocal delivered
            await on_chunk(chunk)
            delivered += 1

        if not self.is_ready():
            await relay(StreamChunk(chunk=NOT_READY_MESSAGE, full_text=NOT_READY_MESSAGE, index=0, is_complete=True, error=True))
            return self._not_ready_result(query, session_id)

        recorder = _StageRecorder()
        metadata: dict[str, Any] = {}
        try:
            relevant = await self._retrieve(query, options, recorder, metadata)
            if not relevant:
                recorder.skip("context_preparation")
                PipelineMetrics.observe_fallback("no_context")
                with recorder.stage("fallback_stream"):
                    await self._stream_words(STREAM_FALLBACK_MESSAGE, relay)
                return PipelineResult(
                    query=query,
                    answer=STREAM_FALLBACK_MESSAGE,
                    success=True,
                    source="fallback",
                    timings=tuple(recorder.timings),
                    metadata=metadata,
                    session_id=session_id,
                )

            with recorder.stage("context_preparation"):
                context = self.prepare_context(relevant, self._max_context(options))
            metadata["final_context_length"] = len(context)

            with recorder.stage("llm_generation"):
                response = await self._generator.generate_streaming_rag_response(
                    query, context, options.generation, relay
                )
            metadata["chunks"] = response.chunks
            metadata["usage"] = dict(response.usage)
        except Exception as exc:
            category = getattr(exc, "category", "internal_error")
            self._logger.error("pipeline.stream_failed", error=str(exc), error_type=type(exc).__name__)
            PipelineMetrics.observe_fallback("stream_failure")
            try:
                await on_chunk(
                    StreamChunk(
                        chunk=STREAM_ERROR_MESSAGE,
                        full_text=STREAM_ERROR_MESSAGE,
                        index=delivered,
                        is_complete=True,
                        error=True,
                    )
                )
            except Exception as delivery_exc:
                self._logger.warning("pipeline.error_chunk_undelivered", error=str(delivery_exc))
            return PipelineResult(
                query=query,
                answer=STREAM_ERROR_MESSAGE,
                success=False,
                source="fallback",
                timings=tuple(recorder.timings),
                metadata=metadata,
                session_id=session_id,
                error=category,
            )

        return PipelineResult(
            query=query,
            answer=response.text,
            success=True,
            source="rag_pipeline",
            context=tuple(context),
            timings=tuple(recorder.timings),
            metadata=metadata,
            session_id=session_id,
        )

    def filter_relevant_context(
        self,
        candidates: Sequence[RetrievalCandidate],
        threshold: float | None = None,
    ) -> list[RetrievalCandidate]:
        return filter_relevant_context(
            candidates, self._config.similarity_threshold if threshold is None else threshold
        )

    def prepare_context(self, relevant: Sequence[RetrievalCandidate], max_count: int | None = None) -> list[ContextItem]:
        return prepare_context(relevant, self._config.max_context_chunks if max_count is None else max_count)

    async def generate_fallback_response(self, query: str) -> str:
        """Answer without retrieved context; never raises."""

        try:
            return await self._generate_fallback(query)
        except (RagChatError, ValueError) as exc:
            self._logger.error("pipeline.fallback_failed", error=str(exc))
            return NO_INFORMATION_MESSAGE

    def update_config(
        self,
        *,
        top_k: int | None = None,
        similarity_threshold: float | None = None,
        max_context_chunks: int | None = None,
    ) -> PipelineConfig:
        changes: dict[str, Any] = {}
        if top_k is not None:
            changes["top_k"] = _clamp(int(top_k), TOP_K_RANGE)
        if similarity_threshold is not None:
            changes["similarity_threshold"] = _clamp(float(similarity_threshold), THRESHOLD_RANGE)
        if max_context_chunks is not None:
            changes["max_context_chunks"] = _clamp(int(max_context_chunks), MAX_CONTEXT_RANGE)
        self._config = replace(self._config, **changes)
        self._logger.info("pipeline.config_updated", **asdict(self._config))
        return self._config

    async def stats(self) -> dict[str, object]:
        try:
            vector_stats = await self._gateway.stats()
        except VectorStoreError as exc:
            return {"ready": False, "error": str(exc)}
        return {
            "ready": self.is_ready(),
            "configuration": {
                "top_k": self._config.top_k,
                "similarity_threshold": self._config.similarity_threshold,
                "max_context_chunks": self._config.max_context_chunks,
            },
            "services": {
                "embeddings": self._embedder.stats(),
                "vector_db": vector_stats,
                "llm": self._generator.stats(),
            },
        }

    async def health_check(self) -> dict[str, object]:
        embeddings, vector_db, llm = await asyncio.gather(
            self._embedder.health_check(),
            self._gateway.health_check(),
            self._generator.health_check(),
        )
        checks = {"embeddings": embeddings, "vector_db": vector_db, "llm": llm}
        healthy = all(check.get("status") == "ok" for check in checks.values())
        return {"status": "ok" if healthy else "degraded", "services": checks, "ready": self.is_ready()}

    async def _retrieve(
        self,
        query: str,
        options: QueryOptions,
        recorder: _StageRecorder,
        metadata: dict[str, Any],
    ) -> list[RetrievalCandidate]:
        with recorder.stage("embedding_generation"):
            embedding = await self._embedder.embed(query)
        metadata["query_embedding_dimensions"] = embedding.dimensions

        top_k = options.top_k or self._config.top_k
        with recorder.stage("vector_search"):
            candidates = await self._gateway.search_similar(embedding.vector, top_k, options.where)
        metadata["search_results_count"] = len(candidates)

        threshold = (
            self._config.similarity_threshold if options.similarity_threshold is None else options.similarity_threshold
        )
        with recorder.stage("context_filtering"):
            relevant = self.filter_relevant_context(candidates, threshold)
        metadata["relevant_context_count"] = len(relevant)
        PipelineMetrics.observe_retrieval(len(candidates), (candidate.similarity for candidate in candidates))
        return relevant

    async def _generate_fallback(self, query: str) -> str:
        result = await self._generator.generate(FALLBACK_PROMPT_TEMPLATE.format(query=query), FALLBACK_OPTIONS)
        return result.text

    async def _failure_result(
        self,
        query: str,
        session_id: str | None,
        exc: Exception,
        recorder: _StageRecorder,
        metadata: dict[str, Any],
    ) -> PipelineResult:
        category = getattr(exc, "category", "internal_error")
        self._logger.error("pipeline.failed", error=str(exc), error_type=type(exc).__name__, category=category)
        PipelineMetrics.observe_fallback("stage_failure")
        try:
            answer = await self._generate_fallback(query)
        except (RagChatError, ValueError) as fallback_exc:
            self._logger.error("pipeline.fallback_failed", error=str(fallback_exc))
            answer = TECHNICAL_DIFFICULTIES_MESSAGE
        return PipelineResult(
            query=query,
            answer=answer,
            success=False,
            source="fallback",
            timings=tuple(recorder.timings),
            metadata=metadata,
            session_id=session_id,
            error=category,
            fallback_answer=answer,
        )

    def _not_ready_result(self, query: str, session_id: str | None) -> PipelineResult:
        self._logger.warning("pipeline.not_ready")
        PipelineMetrics.observe_fallback("not_ready")
        return PipelineResult(
            query=query,
            answer=NOT_READY_MESSAGE,
            success=False,
            source="unavailable",
            session_id=session_id,
            error="service_unavailable",
            fallback_answer=NOT_READY_MESSAGE,
        )

    async def _stream_words(self, text: str, on_chunk: ChunkCallback) -> None:
        words = text.split(" ")
        for index, word in enumerate(words):
            await on_chunk(
                StreamChunk(chunk=f"{word} ", full_text=" ".join(words[: index + 1]), index=index)
            )
            if self._config.fallback_word_delay_seconds > 0:
                await asyncio.sleep(self._config.fallback_word_delay_seconds)
        await on_chunk(StreamChunk(chunk="", full_text=text, index=len(words), is_complete=True))

    def _max_context(self, options: QueryOptions) -> int:
        return options.max_context_chunks or self._config.max_context_chunks

    @staticmethod
    def _validate_query(query: str) -> str:
        if not isinstance(query, str) or not query.strip():
            raise ValueError("Query must be a non-empty string")
        return query.strip()
