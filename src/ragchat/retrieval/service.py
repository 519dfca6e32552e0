"""Relevance filtering and context assembly over retrieval candidates."""

from __future__ import annotations

from typing import Iterable, Sequence

from ragchat.models import ContextItem, RetrievalCandidate


def filter_relevant_context(candidates: Iterable[RetrievalCandidate], threshold: float) -> list[RetrievalCandidate]:
    """Drop candidates below ``threshold`` and rank the rest by descending similarity.

    The sort is stable, so candidates with equal similarity keep the index's
    native order.
    """

    relevant = [candidate for candidate in candidates if candidate.similarity >= threshold]
    relevant.sort(key=lambda candidate: candidate.similarity, reverse=True)
    return relevant


def format_attribution(metadata: dict | None) -> str:
    if not metadata:
        return ""
    parts = []
    if metadata.get("title"):
        parts.append(f"Title: {metadata['title']}")
    if metadata.get("source"):
        parts.append(f"Source: {metadata['source']}")
    if metadata.get("published"):
        parts.append(f"Published: {metadata['published']}")
    return f"[{' | '.join(parts)}]" if parts else ""


def prepare_context(relevant: Sequence[RetrievalCandidate], max_count: int) -> list[ContextItem]:
    """Take ranked candidates up to ``max_count`` with inline source attribution."""

    context: list[ContextItem] = []
    for candidate in relevant:
        if len(context) >= max_count:
            break
        metadata = dict(candidate.metadata or {})
        attribution = format_attribution(metadata)
        content = f"{candidate.content}\n\n{attribution}" if attribution else candidate.content
        context.append(
            ContextItem(id=candidate.id, content=content, similarity=candidate.similarity, metadata=metadata)
        )
    return context
