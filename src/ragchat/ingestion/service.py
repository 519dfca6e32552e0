"""Article ingestion: chunking, embedding and storage."""

from __future__ import annotations

import re
import time
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence
from uuid import NAMESPACE_URL, uuid5

from langchain_text_splitters import RecursiveCharacterTextSplitter

from ragchat.embeddings.service import EmbeddingClient
from ragchat.errors import VectorStoreError
from ragchat.metrics.observability import PipelineMetrics, get_logger
from ragchat.models import DocumentChunk, utcnow
from ragchat.retrieval.store import VectorSearchGateway


class IngestionError(RuntimeError):
    """Raised when a batch of articles cannot be stored."""


@dataclass(frozen=True)
class IngestionConfig:
    """Configuration for article ingestion."""

    chunk_size: int = 1000
    chunk_overlap: int = 100
    min_chunk_length: int = 50
    min_article_length: int = 100


@dataclass(frozen=True)
class Article:
    """Already-acquired article text plus its publication metadata."""

    title: str
    content: str
    id: str | None = None
    url: str | None = None
    published: str | None = None
    source: str | None = None
    author: str | None = None
    category: str | None = None

    @property
    def article_id(self) -> str:
        if self.id:
            return self.id
        return uuid5(NAMESPACE_URL, self.url or self.title).hex

    @property
    def dedupe_key(self) -> str:
        return self.url or re.sub(r"\s+", " ", self.title.lower()).strip()


@dataclass(frozen=True)
class IngestionSummary:
    total_articles: int
    unique_articles: int
    skipped_articles: int
    processed_chunks: int
    success_count: int
    error_count: int
    duration_seconds: float
    errors: Sequence[str] = field(default_factory=tuple)

    @property
    def average_chunks_per_article(self) -> float:
        if not self.total_articles:
            return 0.0
        return round(self.processed_chunks / self.total_articles, 1)


def _normalize_text(raw: str) -> str:
    normalized = unicodedata.normalize("NFKC", raw)
    normalized = normalized.replace("\u00a0", " ")
    normalized = re.sub(r"[ \t\r\f\v]+", " ", normalized)
    return normalized.strip()


def remove_duplicates(articles: Sequence[Article]) -> list[Article]:
    seen: set[str] = set()
    unique: list[Article] = []
    for article in articles:
        key = article.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(article)
    return unique


class ArticleIngestor:
    """Split articles into overlapping chunks, embed them and store them."""

    _logger = get_logger("ingestion")

    def __init__(
        self,
        embedder: EmbeddingClient,
        gateway: VectorSearchGateway,
        config: IngestionConfig | None = None,
    ) -> None:
        self._embedder = embedder
        self._gateway = gateway
        self._config = config or IngestionConfig()
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self._config.chunk_size,
            chunk_overlap=self._config.chunk_overlap,
            separators=["\n\n", "\n", ". ", "! ", "? ", " ", ""],
        )

    def chunk_text(self, text: str) -> list[str]:
        pieces = self._splitter.split_text(_normalize_text(text))
        return [piece.strip() for piece in pieces if len(piece.strip()) > self._config.min_chunk_length]

    def build_chunks(self, article: Article) -> list[DocumentChunk]:
        """Chunk one article; embeddings are attached later."""

        pieces = self.chunk_text(article.content)
        processed_at = utcnow().isoformat()
        chunks: List[DocumentChunk] = []
        for index, piece in enumerate(pieces):
            metadata: Dict[str, Any] = {
                "original_id": article.article_id,
                "title": article.title,
                "chunk_index": index,
                "total_chunks": len(pieces),
                "word_count": len(piece.split()),
                "processed_at": processed_at,
            }
            for key in ("url", "published", "source", "author", "category"):
                value = getattr(article, key)
                if value:
                    metadata[key] = value
            chunks.append(
                DocumentChunk(
                    id=f"{article.article_id}_chunk_{index}",
                    title=article.title,
                    content=piece,
                    metadata=metadata,
                )
            )
        return chunks

    async def ingest_articles(self, articles: Sequence[Article]) -> IngestionSummary:
        start = time.perf_counter()
        unique = remove_duplicates(articles)
        pending: list[DocumentChunk] = []
        skipped = 0
        for article in unique:
            if len(article.content.strip()) < self._config.min_article_length:
                self._logger.warning("ingestion.article_skipped", title=article.title[:80], reason="short_content")
                skipped += 1
                continue
            pending.extend(self.build_chunks(article))

        stored: list[DocumentChunk] = []
        errors: list[str] = []
        if pending:
            batch = await self._embedder.embed_batch([chunk.content for chunk in pending])
            for chunk, item in zip(pending, batch.items):
                if item.ok:
                    stored.append(
                        DocumentChunk(
                            id=chunk.id,
                            title=chunk.title,
                            content=chunk.content,
                            embedding=item.vector,
                            metadata=chunk.metadata,
                        )
                    )
                else:
                    errors.append(f"{chunk.id}: {item.error}")

        if stored:
            try:
                result = await self._gateway.add_documents(stored)
            except VectorStoreError as exc:
                raise IngestionError(f"Failed to store {len(stored)} chunks: {exc}") from exc
            self._logger.info("ingestion.stored", count=result.count)

        duration = time.perf_counter() - start
        PipelineMetrics.observe_ingestion(duration, len(stored))
        summary = IngestionSummary(
            total_articles=len(articles),
            unique_articles=len(unique),
            skipped_articles=skipped,
            processed_chunks=len(stored),
            success_count=len(stored),
            error_count=len(errors),
            duration_seconds=duration,
            errors=tuple(errors),
        )
        self._logger.info(
            "ingestion.complete",
            total_articles=summary.total_articles,
            processed_chunks=summary.processed_chunks,
            error_count=summary.error_count,
            duration_seconds=duration,
        )
        return summary

    async def stats(self) -> Mapping[str, object]:
        return {
            "vector_database": await self._gateway.stats(),
            "chunk_size": self._config.chunk_size,
            "chunk_overlap": self._config.chunk_overlap,
        }
