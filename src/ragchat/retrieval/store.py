"""Vector search gateways over Chroma and an in-process fallback."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, MutableMapping, Protocol, Sequence, TypeVar

import chromadb
from chromadb.api import ClientAPI

from ragchat.config import Settings
from ragchat.errors import VectorStoreError
from ragchat.metrics.observability import get_logger
from ragchat.models import DocumentChunk, RetrievalCandidate

T = TypeVar("T")

# Placeholder distances reported by the in-process gateway; not comparable across calls.
MEMORY_SEARCH_DISTANCE = 0.5
MEMORY_TEXT_SEARCH_DISTANCE = 0.7

_SCALAR_TYPES = (str, int, float, bool)


@dataclass(frozen=True)
class AddResult:
    count: int


class VectorSearchGateway(Protocol):
    """Uniform interface over a similarity index."""

    name: str

    def is_available(self) -> bool:
        """Return True when the index can serve requests."""

    async def add_documents(self, chunks: Sequence[DocumentChunk]) -> AddResult:
        """Store chunks and return how many were written."""

    async def search_similar(
        self,
        query_vector: Sequence[float],
        k: int,
        where: Mapping[str, Any] | None = None,
    ) -> list[RetrievalCandidate]:
        """Return at most k candidates in the index's native ranking."""

    async def search_by_text(self, text: str, k: int) -> list[RetrievalCandidate]:
        """Return at most k chunks whose content contains text."""

    async def get_document(self, document_id: str) -> DocumentChunk | None:
        """Return a stored chunk by id."""

    async def delete_document(self, document_id: str) -> bool:
        """Remove a chunk; True if it was present."""

    async def clear(self) -> None:
        """Remove every stored chunk."""

    async def count(self) -> int:
        """Return the number of stored chunks."""

    async def stats(self) -> dict[str, object]:
        """Describe the index."""

    async def health_check(self) -> dict[str, object]:
        """Probe the index."""


class ChromaVectorGateway:
    """Chroma-backed gateway using cosine distance."""

    name = "chromadb"

    def __init__(
        self,
        collection_name: str = "news_articles",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            Path(persist_directory).mkdir(parents=True, exist_ok=True)
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection_name = collection_name
        self._persist_directory = str(persist_directory) if persist_directory else None
        self._timeout = timeout_seconds
        self._collection = self._open_collection()
        self._logger = get_logger("vectordb")

    def _open_collection(self):
        return self._client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine", "hnsw:construction_ef": 100, "hnsw:M": 16},
        )

    def is_available(self) -> bool:
        return self._collection is not None

    async def add_documents(self, chunks: Sequence[DocumentChunk]) -> AddResult:
        if not chunks:
            return AddResult(count=0)
        missing = [chunk.id for chunk in chunks if not chunk.embedding]
        if missing:
            raise VectorStoreError(f"Chunks without embeddings cannot be indexed: {', '.join(missing[:5])}")
        ids = [chunk.id for chunk in chunks]
        await self._run(
            lambda: self._collection.upsert(
                ids=ids,
                embeddings=[list(chunk.embedding or ()) for chunk in chunks],
                metadatas=[self._serialize_metadata(chunk) for chunk in chunks],
                documents=[chunk.content for chunk in chunks],
            )
        )
        self._logger.info("vectordb.added", count=len(ids))
        return AddResult(count=len(ids))

    async def search_similar(
        self,
        query_vector: Sequence[float],
        k: int,
        where: Mapping[str, Any] | None = None,
    ) -> list[RetrievalCandidate]:
        if k <= 0:
            return []
        available = await self.count()
        if available == 0:
            return []
        results = await self._run(
            lambda: self._collection.query(
                query_embeddings=[list(query_vector)],
                n_results=min(k, available),
                where=dict(where) if where else None,
                include=["documents", "metadatas", "distances"],
            )
        )
        ids = self._first(results.get("ids"))
        documents = self._first(results.get("documents"))
        metadatas = self._first(results.get("metadatas"))
        distances = self._first(results.get("distances"))
        candidates = [
            RetrievalCandidate(
                id=chunk_id,
                content=document or "",
                metadata=self._candidate_metadata(metadata or {}),
                distance=float(distance),
            )
            for chunk_id, document, metadata, distance in zip(ids, documents, metadatas, distances)
        ]
        return candidates[:k]

    async def search_by_text(self, text: str, k: int) -> list[RetrievalCandidate]:
        if k <= 0 or not text.strip():
            return []
        results = await self._run(
            lambda: self._collection.get(
                where_document={"$contains": text},
                limit=k,
                include=["documents", "metadatas"],
            )
        )
        return [
            RetrievalCandidate(
                id=chunk_id,
                content=document or "",
                metadata=self._candidate_metadata(metadata or {}),
                distance=MEMORY_TEXT_SEARCH_DISTANCE,
            )
            for chunk_id, document, metadata in zip(
                results.get("ids") or [],
                results.get("documents") or [],
                results.get("metadatas") or [],
            )
        ]

    async def get_document(self, document_id: str) -> DocumentChunk | None:
        result = await self._run(
            lambda: self._collection.get(ids=[document_id], include=["documents", "metadatas", "embeddings"])
        )
        ids = result.get("ids") or []
        if not ids:
            return None
        stored = result.get("metadatas") or [{}]
        embeddings = result.get("embeddings")
        embedding = embeddings[0] if embeddings is not None and len(embeddings) else None
        metadata = stored[0] or {}
        return DocumentChunk(
            id=ids[0],
            title=str(metadata.get("title", "")),
            content=(result.get("documents") or [""])[0],
            embedding=tuple(float(value) for value in embedding) if embedding is not None else None,
            metadata=self._public_metadata(metadata),
        )

    async def delete_document(self, document_id: str) -> bool:
        existing = await self._run(lambda: self._collection.get(ids=[document_id], include=[]))
        if not existing.get("ids"):
            return False
        await self._run(lambda: self._collection.delete(ids=[document_id]))
        return True

    async def clear(self) -> None:
        def reset() -> None:
            self._client.delete_collection(name=self._collection_name)
            self._collection = self._open_collection()

        await self._run(reset)
        self._logger.info("vectordb.cleared", collection=self._collection_name)

    async def count(self) -> int:
        return int(await self._run(self._collection.count))

    async def stats(self) -> dict[str, object]:
        collections = await self._run(self._client.list_collections)
        return {
            "count": await self.count(),
            "storage": self.name,
            "collections": [getattr(item, "name", item) for item in collections],
            "persist_path": self._persist_directory,
        }

    async def health_check(self) -> dict[str, object]:
        try:
            await self._run(self._client.heartbeat)
            documents = await self.count()
        except VectorStoreError as exc:
            return {"status": "error", "message": str(exc)}
        return {"status": "ok", "storage": self.name, "documents": documents, "collection": self._collection_name}

    async def _run(self, func: Callable[[], T]) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise VectorStoreError("Vector database timed out") from exc
        except VectorStoreError:
            raise
        except Exception as exc:
            raise VectorStoreError(f"Vector database error: {exc}") from exc

    @staticmethod
    def _serialize_metadata(chunk: DocumentChunk) -> MutableMapping[str, object]:
        metadata: MutableMapping[str, object] = {
            "title": chunk.title,
            "metadata_json": json.dumps(dict(chunk.metadata), default=str),
        }
        # Scalar copies keep the fields usable in `where` filters.
        for key, value in chunk.metadata.items():
            if isinstance(value, _SCALAR_TYPES) and key not in metadata:
                metadata[key] = value
        return metadata

    @staticmethod
    def _public_metadata(stored: Mapping[str, object]) -> Dict[str, object]:
        raw = stored.get("metadata_json")
        if isinstance(raw, str) and raw:
            try:
                loaded = json.loads(raw)
            except json.JSONDecodeError:
                loaded = None
            if isinstance(loaded, dict):
                return dict(loaded)
        return {key: value for key, value in stored.items() if key != "metadata_json"}

    @classmethod
    def _candidate_metadata(cls, stored: Mapping[str, object]) -> Dict[str, object]:
        return {"title": stored.get("title", ""), **cls._public_metadata(stored)}

    @staticmethod
    def _first(value: object) -> list:
        if isinstance(value, list) and value:
            return list(value[0] or [])
        return []


class InMemoryVectorGateway:
    """Process-local fallback without vector math.

    ``search_similar`` returns the first ``k`` stored chunks with a fixed
    placeholder distance, and ``search_by_text`` a case-insensitive substring
    match, so scores are not comparable across calls.
    """

    name = "in-memory"

    def __init__(self) -> None:
        self._documents: dict[str, DocumentChunk] = {}

    def is_available(self) -> bool:
        return True

    async def add_documents(self, chunks: Sequence[DocumentChunk]) -> AddResult:
        for chunk in chunks:
            self._documents[chunk.id] = chunk
        return AddResult(count=len(chunks))

    async def search_similar(
        self,
        query_vector: Sequence[float],
        k: int,
        where: Mapping[str, Any] | None = None,
    ) -> list[RetrievalCandidate]:
        if k <= 0:
            return []
        matches = [chunk for chunk in self._documents.values() if self._matches(chunk, where)]
        return [self._candidate(chunk, MEMORY_SEARCH_DISTANCE) for chunk in matches[:k]]

    async def search_by_text(self, text: str, k: int) -> list[RetrievalCandidate]:
        needle = text.lower().strip()
        if k <= 0 or not needle:
            return []
        matches = [chunk for chunk in self._documents.values() if needle in chunk.content.lower()]
        return [self._candidate(chunk, MEMORY_TEXT_SEARCH_DISTANCE) for chunk in matches[:k]]

    async def get_document(self, document_id: str) -> DocumentChunk | None:
        return self._documents.get(document_id)

    async def delete_document(self, document_id: str) -> bool:
        return self._documents.pop(document_id, None) is not None

    async def clear(self) -> None:
        self._documents.clear()

    async def count(self) -> int:
        return len(self._documents)

    async def stats(self) -> dict[str, object]:
        return {"count": len(self._documents), "storage": self.name, "collections": ["fallback"]}

    async def health_check(self) -> dict[str, object]:
        return {"status": "ok", "storage": self.name, "documents": len(self._documents)}

    @staticmethod
    def _matches(chunk: DocumentChunk, where: Mapping[str, Any] | None) -> bool:
        if not where:
            return True
        return all(chunk.metadata.get(key) == value for key, value in where.items())

    @staticmethod
    def _candidate(chunk: DocumentChunk, distance: float) -> RetrievalCandidate:
        metadata = {"title": chunk.title, **dict(chunk.metadata)}
        return RetrievalCandidate(id=chunk.id, content=chunk.content, metadata=metadata, distance=distance)


def create_vector_gateway(settings: Settings, *, client: ClientAPI | None = None) -> VectorSearchGateway:
    """Select the gateway variant once at startup."""

    logger = get_logger("vectordb")
    if settings.vector_store == "memory":
        logger.info("vectordb.selected", storage=InMemoryVectorGateway.name)
        return InMemoryVectorGateway()
    try:
        if client is None and settings.chroma_host:
            client = chromadb.HttpClient(
                host=settings.chroma_host,
                port=settings.chroma_port or 8000,
                ssl=settings.chroma_ssl,
            )
        gateway = ChromaVectorGateway(
            settings.chroma_collection,
            client=client,
            persist_directory=None if client else settings.chroma_persist_dir,
            timeout_seconds=settings.vector_search_timeout_seconds,
        )
    except Exception as exc:
        logger.warning("vectordb.fallback", reason="chroma_unavailable", detail=str(exc))
        return InMemoryVectorGateway()
    logger.info("vectordb.selected", storage=ChromaVectorGateway.name, collection=settings.chroma_collection)
    return gateway
