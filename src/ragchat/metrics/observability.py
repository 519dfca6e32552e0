"""Observability helpers for ragchat."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from typing import Callable, Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "ragchat") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages and supporting stores."""

    stage_latency = Histogram(
        "ragchat_stage_duration_seconds",
        "Time spent in each pipeline stage.",
        ["stage"],
        buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    retrieved_candidate_count = Histogram(
        "ragchat_retrieved_candidate_count",
        "Number of candidates returned by similarity search.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    similarity_score = Histogram(
        "ragchat_similarity_score",
        "Similarity of retrieved candidates.",
        buckets=(0.0, 0.1, 0.25, 0.5, 0.75, 1.0),
    )
    fallback_total = Counter(
        "ragchat_fallback_answers_total",
        "Answers produced without retrieved context.",
        ["reason"],
    )
    streamed_chunks = Counter(
        "ragchat_streamed_chunks_total",
        "Chunks delivered to streaming clients.",
        ["transport"],
    )
    session_store_degraded = Gauge(
        "ragchat_session_store_degraded",
        "1 when the session store runs on the in-process fallback.",
    )
    channel_connections = Gauge(
        "ragchat_channel_connections",
        "Open real-time channel connections.",
    )
    ingestion_latency = Histogram(
        "ragchat_ingestion_duration_seconds",
        "Time spent ingesting articles.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    ingestion_chunks = Histogram(
        "ragchat_ingestion_chunk_count",
        "Chunks stored per ingestion batch.",
        buckets=(0, 1, 5, 10, 20, 40, 80),
    )

    @classmethod
    def observe_stage(cls, stage: str, duration_seconds: float) -> None:
        cls.stage_latency.labels(stage=stage).observe(duration_seconds)

    @classmethod
    def observe_retrieval(cls, candidate_count: int, scores: Iterable[float]) -> None:
        cls.retrieved_candidate_count.observe(candidate_count)
        for score in scores:
            cls.similarity_score.observe(_clamp_score(score))

    @classmethod
    def observe_fallback(cls, reason: str) -> None:
        cls.fallback_total.labels(reason=reason).inc()

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_chunks.observe(chunk_count)


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback: Callable[[float], None]) -> None:
        self._callback = callback
        self._start = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        duration = time.perf_counter() - self._start
        self._callback(duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
