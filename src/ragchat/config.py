"""Runtime configuration for the ragchat services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragchat_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Session cache
    redis_url: str | None = None
    session_ttl_seconds: int = 86400
    max_session_messages: int = 50
    cache_max_consecutive_errors: int = 3
    cache_connect_timeout_seconds: float = 10.0

    # Embeddings
    embedding_provider: Literal["jina", "hash"] = "jina"
    jina_api_key: str | None = None
    jina_base_url: str = "https://api.jina.ai/v1/embeddings"
    embedding_model: str = "jina-embeddings-v2-base-en"
    embedding_max_tokens: int = 8192
    embedding_dim: int = 768  # hash backend only
    embedding_batch_size: int = 10
    embedding_batch_delay_seconds: float = 0.1
    embedding_max_concurrency: int = 1
    embedding_timeout_seconds: float = 30.0
    embedding_batch_timeout_seconds: float = 60.0

    # Generation
    generator_provider: Literal["gemini", "template"] = "gemini"
    gemini_api_key: str | None = None
    generator_model: str = "gemini-1.5-flash"
    generator_max_output_tokens: int = 8192
    generator_temperature: float = 0.7
    generator_top_p: float = 0.9
    generation_timeout_seconds: float = 60.0

    # Vector index
    vector_store: Literal["chroma", "memory"] = "chroma"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False
    chroma_persist_dir: Path | None = None
    chroma_collection: str = "news_articles"
    vector_search_timeout_seconds: float = 10.0

    # RAG pipeline
    rag_top_k: int = 3
    similarity_threshold: float = 0.1
    max_context_chunks: int = 5
    max_query_length: int = 500
    fallback_word_delay_seconds: float = 0.1

    # Ingestion
    chunk_size: int = 1000
    chunk_overlap: int = 100
    min_chunk_length: int = 50
    min_article_length: int = 100
    max_articles_per_request: int = 50

    # CORS
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "PATCH", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    # Rate limiting
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 900

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def is_production(self) -> bool:
        return self.environment == "prod"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
