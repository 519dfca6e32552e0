"""Embedding clients for ragchat."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence, Tuple

import httpx

from ragchat.errors import (
    EmbeddingError,
    InvalidApiKeyError,
    ProviderError,
    ProviderNetworkError,
    ProviderServerError,
    ProviderTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
)

LOGGER = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding clients."""

    model: str = "jina-embeddings-v2-base-en"
    base_url: str = "https://api.jina.ai/v1/embeddings"
    api_key: str | None = None
    max_tokens: int = 8192
    dim: int = 768
    normalize: bool = True
    batch_size: int = 10
    batch_delay_seconds: float = 0.1
    max_concurrency: int = 1
    timeout_seconds: float = 30.0
    batch_timeout_seconds: float = 60.0

    @property
    def max_chars(self) -> int:
        return self.max_tokens * CHARS_PER_TOKEN


@dataclass(frozen=True)
class EmbeddingResult:
    """Vector for a single text."""

    vector: Tuple[float, ...]
    model: str
    usage: Mapping[str, Any] = field(default_factory=dict)

    @property
    def dimensions(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class BatchItem:
    """Per-item outcome of a batch request."""

    index: int
    text: str
    vector: Tuple[float, ...] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.vector is not None


@dataclass(frozen=True)
class BatchEmbeddingResult:
    items: Sequence[BatchItem]

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def successful(self) -> int:
        return sum(1 for item in self.items if item.ok)

    @property
    def failed(self) -> int:
        return self.total - self.successful


class EmbeddingClient(Protocol):
    """Protocol describing embedding behaviour."""

    def is_available(self) -> bool:
        """Return True when the client can serve requests."""

    async def embed(self, text: str) -> EmbeddingResult:
        """Return the embedding for one text."""

    async def embed_batch(self, texts: Sequence[str], batch_size: int | None = None) -> BatchEmbeddingResult:
        """Return per-item embeddings or errors for many texts."""

    async def health_check(self) -> dict[str, object]:
        """Probe the provider."""

    def stats(self) -> dict[str, object]:
        """Describe the client configuration."""

    async def aclose(self) -> None:
        """Release network resources."""


class BaseEmbeddingClient(ABC):
    """Input preparation and batch scheduling shared by the concrete clients."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    @property
    def config(self) -> EmbeddingConfig:
        return self._config

    def is_available(self) -> bool:
        return True

    def prepare_text(self, text: str) -> str:
        if not isinstance(text, str):
            raise ValueError("Text input is required and must be a string")
        clean = text.strip()
        if not clean:
            raise ValueError("Text input cannot be empty")
        if len(clean) > self._config.max_chars:
            LOGGER.warning(
                "Text of %d chars may exceed token limit (%d), truncating",
                len(clean),
                self._config.max_tokens,
            )
            clean = clean[: self._config.max_chars]
        return clean

    async def embed(self, text: str) -> EmbeddingResult:
        self._require_available()
        clean = self.prepare_text(text)
        vectors, model, usage = await self._embed_many([clean], timeout=self._config.timeout_seconds)
        return EmbeddingResult(vector=vectors[0], model=model, usage=usage)

    async def embed_batch(self, texts: Sequence[str], batch_size: int | None = None) -> BatchEmbeddingResult:
        self._require_available()
        if not texts:
            raise ValueError("Texts input must be a non-empty sequence")
        size = max(1, batch_size or self._config.batch_size)

        items: dict[int, BatchItem] = {}
        valid: list[tuple[int, str]] = []
        for index, text in enumerate(texts):
            try:
                valid.append((index, self.prepare_text(text)))
            except ValueError as exc:
                items[index] = BatchItem(index=index, text=text if isinstance(text, str) else "", error=str(exc))

        batches = [valid[start : start + size] for start in range(0, len(valid), size)]
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrency))

        async def run(number: int, batch: list[tuple[int, str]]) -> list[BatchItem]:
            async with semaphore:
                try:
                    vectors, _, _ = await self._embed_many(
                        [text for _, text in batch],
                        timeout=self._config.batch_timeout_seconds,
                    )
                    results = [
                        BatchItem(index=index, text=text, vector=vector)
                        for (index, text), vector in zip(batch, vectors)
                    ]
                    LOGGER.info("Processed embedding batch %d/%d", number + 1, len(batches))
                except ProviderError as exc:
                    LOGGER.error("Embedding batch %d failed: %s", number + 1, exc)
                    results = [BatchItem(index=index, text=text, error=str(exc)) for index, text in batch]
                if number < len(batches) - 1 and self._config.batch_delay_seconds > 0:
                    await asyncio.sleep(self._config.batch_delay_seconds)
                return results

        for batch_items in await asyncio.gather(*(run(n, batch) for n, batch in enumerate(batches))):
            for item in batch_items:
                items[item.index] = item

        result = BatchEmbeddingResult(items=[items[index] for index in sorted(items)])
        LOGGER.info("Batch embedding complete: %d success, %d failed", result.successful, result.failed)
        return result

    async def health_check(self) -> dict[str, object]:
        if not self.is_available():
            return {"status": "unavailable", "message": "API key not configured"}
        try:
            result = await self.embed("Health check test")
        except ProviderError as exc:
            return {"status": "error", "message": str(exc)}
        return {"status": "ok", "model": result.model, "dimensions": result.dimensions}

    def stats(self) -> dict[str, object]:
        return {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "available": self.is_available(),
        }

    async def aclose(self) -> None:
        return None

    @abstractmethod
    async def _embed_many(
        self,
        texts: list[str],
        *,
        timeout: float,
    ) -> tuple[list[Tuple[float, ...]], str, Mapping[str, Any]]:
        """Embed one prepared batch; return vectors, model name and usage."""

    def _require_available(self) -> None:
        if not self.is_available():
            raise ServiceUnavailableError("Embeddings service not available - missing API key")

    def _normalize(self, vector: Sequence[float]) -> Tuple[float, ...]:
        if not self._config.normalize:
            return tuple(float(value) for value in vector)
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return tuple(float(value) / norm for value in vector)


class HashEmbeddingClient(BaseEmbeddingClient):
    """Deterministic lightweight embeddings used for testing and offline runs."""

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        return self._normalize([byte / 255.0 for byte in raw])

    async def _embed_many(
        self,
        texts: list[str],
        *,
        timeout: float,
    ) -> tuple[list[Tuple[float, ...]], str, Mapping[str, Any]]:
        return [self._hash_to_vector(text) for text in texts], "hash", {}

    def stats(self) -> dict[str, object]:
        return {**super().stats(), "model": "hash", "dim": self._config.dim}


class JinaEmbeddingClient(BaseEmbeddingClient):
    """Embedding client for the Jina embeddings HTTP API."""

    def __init__(self, config: EmbeddingConfig | None = None, *, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()
        if not self._config.api_key:
            LOGGER.warning("Jina API key not configured - embeddings service disabled")

    def is_available(self) -> bool:
        return bool(self._config.api_key)

    def stats(self) -> dict[str, object]:
        return {**super().stats(), "base_url": self._config.base_url}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _embed_many(
        self,
        texts: list[str],
        *,
        timeout: float,
    ) -> tuple[list[Tuple[float, ...]], str, Mapping[str, Any]]:
        try:
            response = await self._http.post(
                self._config.base_url,
                json={"input": texts, "model": self._config.model},
                headers={
                    "Authorization": f"Bearer {self._config.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError("Timed out waiting for Jina API") from exc
        except httpx.TransportError as exc:
            raise ProviderNetworkError("Network error - unable to connect to Jina API") from exc

        if response.status_code >= 400:
            raise self._map_status(response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingError("Invalid response format from Jina API") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or len(data) != len(texts):
            raise EmbeddingError("Invalid response format from Jina API")
        vectors: list[Tuple[float, ...]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingError("Invalid embedding format received")
            vectors.append(tuple(float(value) for value in embedding))
        return vectors, str(payload.get("model") or self._config.model), payload.get("usage") or {}

    @staticmethod
    def _map_status(response: httpx.Response) -> ProviderError:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = "Unknown API error"
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                message = str(error["message"])
            elif body.get("detail") or body.get("message"):
                message = str(body.get("detail") or body.get("message"))
        LOGGER.error("Jina API error (%d): %s", status, message)
        if status in (401, 403):
            return InvalidApiKeyError("Invalid Jina API key")
        if status == 429:
            return RateLimitedError("Jina API rate limit exceeded")
        if status >= 500:
            return ProviderServerError("Jina API server error")
        return EmbeddingError(f"Jina API error: {message}")
