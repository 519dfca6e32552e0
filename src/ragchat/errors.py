"""Error taxonomy shared by the provider clients and the pipeline."""

from __future__ import annotations


class RagChatError(RuntimeError):
    """Base class for errors raised by ragchat components."""


class ServiceUnavailableError(RagChatError):
    """Raised when a backend is not configured or not reachable."""


class VectorStoreError(RagChatError):
    """Raised when the vector index rejects or fails an operation."""


class ProviderError(RagChatError):
    """Base class for failures reported by an external model provider."""

    category = "provider_error"


class InvalidApiKeyError(ProviderError):
    category = "invalid_api_key"


class RateLimitedError(ProviderError):
    category = "rate_limited"


class ProviderServerError(ProviderError):
    category = "server_error"


class ProviderNetworkError(ProviderError):
    category = "network_error"


class ProviderTimeoutError(ProviderNetworkError):
    category = "timeout"


class ContentBlockedError(ProviderError):
    category = "content_blocked"


class EmbeddingError(ProviderError):
    """Raised when the embedding provider response cannot be used."""


class GenerationError(ProviderError):
    """Raised when the generation provider response cannot be used."""


__all__ = [
    "ContentBlockedError",
    "EmbeddingError",
    "GenerationError",
    "InvalidApiKeyError",
    "ProviderError",
    "ProviderNetworkError",
    "ProviderServerError",
    "ProviderTimeoutError",
    "RagChatError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "VectorStoreError",
]
