"""Embedding clients."""

from .service import (
    BatchEmbeddingResult,
    BatchItem,
    EmbeddingClient,
    EmbeddingConfig,
    EmbeddingResult,
    HashEmbeddingClient,
    JinaEmbeddingClient,
)

__all__ = [
    "BatchEmbeddingResult",
    "BatchItem",
    "EmbeddingClient",
    "EmbeddingConfig",
    "EmbeddingResult",
    "HashEmbeddingClient",
    "JinaEmbeddingClient",
]
