"""Tests for article chunking and ingestion."""

from __future__ import annotations

import pytest

from ragchat.embeddings import EmbeddingConfig, HashEmbeddingClient
from ragchat.errors import VectorStoreError
from ragchat.ingestion import Article, ArticleIngestor, IngestionConfig, IngestionError, remove_duplicates
from ragchat.retrieval import InMemoryVectorGateway

PARAGRAPH = (
    "The central bank raised interest rates by a quarter point on Tuesday. "
    "Officials said inflation remained above target for the sixth month. "
    "Markets had largely expected the move and reacted calmly. "
)


class BrokenGateway(InMemoryVectorGateway):
    async def add_documents(self, chunks):
        raise VectorStoreError("index offline")


def _ingestor(gateway=None, **config) -> ArticleIngestor:
    return ArticleIngestor(
        HashEmbeddingClient(EmbeddingConfig(dim=8, batch_delay_seconds=0.0)),
        gateway or InMemoryVectorGateway(),
        IngestionConfig(**config),
    )


def test_article_id_is_stable_for_same_url():
    first = Article(title="A", content="x", url="https://news.example/a")
    second = Article(title="B", content="y", url="https://news.example/a")
    assert first.article_id == second.article_id
    assert Article(title="A", content="x", id="custom").article_id == "custom"


def test_remove_duplicates_by_url_then_title():
    articles = [
        Article(title="Rates rise", content="one", url="https://n/1"),
        Article(title="Other", content="two", url="https://n/1"),
        Article(title="Storm  Warning", content="three"),
        Article(title="storm warning", content="four"),
    ]
    unique = remove_duplicates(articles)
    assert [a.content for a in unique] == ["one", "three"]


def test_chunk_text_overlaps_and_drops_short_pieces():
    ingestor = _ingestor(chunk_size=200, chunk_overlap=40)
    chunks = ingestor.chunk_text(PARAGRAPH * 4)
    assert len(chunks) > 1
    assert all(50 < len(chunk) <= 200 for chunk in chunks)
    assert ingestor.chunk_text("too short") == []


def test_build_chunks_carries_article_metadata():
    ingestor = _ingestor(chunk_size=200, chunk_overlap=40)
    article = Article(
        title="Rates rise",
        content=PARAGRAPH * 3,
        url="https://news.example/rates",
        source="Wire",
        published="2024-05-01",
    )
    chunks = ingestor.build_chunks(article)
    assert [chunk.id for chunk in chunks] == [f"{article.article_id}_chunk_{n}" for n in range(len(chunks))]
    first = chunks[0].metadata
    assert first["chunk_index"] == 0
    assert first["total_chunks"] == len(chunks)
    assert first["source"] == "Wire"
    assert first["url"] == "https://news.example/rates"
    assert "author" not in first


@pytest.mark.asyncio
async def test_ingest_articles_stores_embedded_chunks():
    gateway = InMemoryVectorGateway()
    ingestor = _ingestor(gateway)
    summary = await ingestor.ingest_articles(
        [
            Article(title="Rates rise", content=PARAGRAPH * 2, url="https://n/1"),
            Article(title="Rates rise again", content=PARAGRAPH * 2, url="https://n/1"),
            Article(title="Brief", content="Too short to keep."),
        ]
    )
    assert summary.total_articles == 3
    assert summary.unique_articles == 2
    assert summary.skipped_articles == 1
    assert summary.processed_chunks == await gateway.count()
    assert summary.processed_chunks >= 1
    assert summary.error_count == 0
    article_id = Article(title="Rates rise", content=PARAGRAPH, url="https://n/1").article_id
    stored = await gateway.get_document(f"{article_id}_chunk_0")
    assert stored is not None
    assert stored.embedding is not None and len(stored.embedding) == 8


@pytest.mark.asyncio
async def test_store_failure_raises_ingestion_error():
    ingestor = _ingestor(BrokenGateway())
    with pytest.raises(IngestionError):
        await ingestor.ingest_articles([Article(title="Rates", content=PARAGRAPH * 2)])


@pytest.mark.asyncio
async def test_stats_reports_index_and_chunking():
    ingestor = _ingestor(chunk_size=300)
    stats = await ingestor.stats()
    assert stats["chunk_size"] == 300
    assert stats["vector_database"]["storage"] == "in-memory"
