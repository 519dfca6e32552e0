from __future__ import annotations

from uuid import uuid4

import chromadb
import pytest

from ragchat.config import Settings
from ragchat.models import DocumentChunk
from ragchat.retrieval import ChromaVectorGateway, InMemoryVectorGateway, create_vector_gateway


def _chunk(chunk_id: str, content: str, vector, **metadata) -> DocumentChunk:
    return DocumentChunk(
        id=chunk_id,
        title=metadata.pop("title", f"Title {chunk_id}"),
        content=content,
        embedding=tuple(vector),
        metadata={"source": "Wire", **metadata},
    )


def _chroma() -> ChromaVectorGateway:
    return ChromaVectorGateway(f"test-{uuid4().hex}", client=chromadb.EphemeralClient())


@pytest.mark.asyncio
async def test_chroma_search_ranks_closest_first():
    gateway = _chroma()
    await gateway.add_documents(
        [
            _chunk("a", "markets rallied today", [1.0, 0.0, 0.0]),
            _chunk("b", "storm hits the coast", [0.0, 1.0, 0.0]),
            _chunk("c", "stocks close higher", [0.9, 0.1, 0.0]),
        ]
    )
    results = await gateway.search_similar([1.0, 0.0, 0.0], k=2)
    assert [candidate.id for candidate in results] == ["a", "c"]
    assert results[0].similarity == pytest.approx(1.0, abs=1e-4)
    assert results[0].metadata["source"] == "Wire"
    assert results[0].metadata["title"] == "Title a"


@pytest.mark.asyncio
async def test_chroma_search_never_returns_more_than_k():
    gateway = _chroma()
    await gateway.add_documents([_chunk("only", "single document", [0.5, 0.5, 0.0])])
    assert len(await gateway.search_similar([1.0, 0.0, 0.0], k=5)) == 1
    assert await gateway.search_similar([1.0, 0.0, 0.0], k=0) == []


@pytest.mark.asyncio
async def test_chroma_empty_collection_returns_nothing():
    gateway = _chroma()
    assert await gateway.search_similar([1.0, 0.0], k=3) == []


@pytest.mark.asyncio
async def test_chroma_where_filter_uses_scalar_metadata():
    gateway = _chroma()
    await gateway.add_documents(
        [
            _chunk("a", "sports result", [1.0, 0.0], category="sports"),
            _chunk("b", "budget vote", [1.0, 0.1], category="politics"),
        ]
    )
    results = await gateway.search_similar([1.0, 0.0], k=5, where={"category": "politics"})
    assert [candidate.id for candidate in results] == ["b"]


@pytest.mark.asyncio
async def test_chroma_get_delete_and_clear():
    gateway = _chroma()
    await gateway.add_documents(
        [_chunk("a", "first text", [1.0, 0.0], chunk_index=0), _chunk("b", "second text", [0.0, 1.0])]
    )
    document = await gateway.get_document("a")
    assert document is not None
    assert document.content == "first text"
    assert dict(document.metadata) == {"source": "Wire", "chunk_index": 0}
    assert document.title == "Title a"
    assert len(document.embedding) == 2

    assert await gateway.delete_document("a")
    assert not await gateway.delete_document("a")
    assert await gateway.get_document("a") is None
    assert await gateway.count() == 1

    await gateway.clear()
    assert await gateway.count() == 0
    stats = await gateway.stats()
    assert stats["storage"] == "chromadb"


@pytest.mark.asyncio
async def test_chroma_text_search_matches_substrings():
    gateway = _chroma()
    await gateway.add_documents(
        [_chunk("a", "central bank raises rates", [1.0, 0.0]), _chunk("b", "football final", [0.0, 1.0])]
    )
    results = await gateway.search_by_text("raises rates", k=5)
    assert [candidate.id for candidate in results] == ["a"]


@pytest.mark.asyncio
async def test_memory_gateway_placeholder_distances():
    gateway = InMemoryVectorGateway()
    await gateway.add_documents(
        [_chunk("a", "Alpha content", [1.0]), _chunk("b", "beta content", [0.0]), _chunk("c", "gamma", [0.5])]
    )
    similar = await gateway.search_similar([1.0], k=2)
    assert [candidate.id for candidate in similar] == ["a", "b"]
    assert all(candidate.distance == 0.5 for candidate in similar)

    text = await gateway.search_by_text("ALPHA", k=5)
    assert [candidate.id for candidate in text] == ["a"]
    assert text[0].distance == 0.7


@pytest.mark.asyncio
async def test_memory_gateway_delete_and_clear():
    gateway = InMemoryVectorGateway()
    await gateway.add_documents([_chunk("a", "alpha", [1.0])])
    assert await gateway.delete_document("a")
    assert not await gateway.delete_document("a")
    await gateway.add_documents([_chunk("b", "beta", [1.0])])
    await gateway.clear()
    assert await gateway.count() == 0


def test_factory_selects_memory_when_configured():
    gateway = create_vector_gateway(Settings(environment="test", vector_store="memory"))
    assert isinstance(gateway, InMemoryVectorGateway)


def test_factory_uses_supplied_chroma_client():
    settings = Settings(environment="test", chroma_collection=f"test-{uuid4().hex}")
    gateway = create_vector_gateway(settings, client=chromadb.EphemeralClient())
    assert isinstance(gateway, ChromaVectorGateway)
    assert gateway.is_available()
