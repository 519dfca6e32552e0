"""Retrieval components."""

from .service import filter_relevant_context, format_attribution, prepare_context
from .store import (
    AddResult,
    ChromaVectorGateway,
    InMemoryVectorGateway,
    VectorSearchGateway,
    create_vector_gateway,
)

__all__ = [
    "AddResult",
    "ChromaVectorGateway",
    "InMemoryVectorGateway",
    "VectorSearchGateway",
    "create_vector_gateway",
    "filter_relevant_context",
    "format_attribution",
    "prepare_context",
]
