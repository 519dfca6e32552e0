"""Article ingestion pipeline."""

from .service import (
    Article,
    ArticleIngestor,
    IngestionConfig,
    IngestionError,
    IngestionSummary,
    remove_duplicates,
)

__all__ = [
    "Article",
    "ArticleIngestor",
    "IngestionConfig",
    "IngestionError",
    "IngestionSummary",
    "remove_duplicates",
]
