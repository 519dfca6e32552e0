"""Service layer orchestrations for ragchat."""

from .chat import ChatReply, ChatService
from .generation import (
    GeminiBackend,
    GenerationBackend,
    GenerationClient,
    GenerationConfig,
    GenerationOptions,
    GenerationResult,
    TemplateBackend,
)
from .query import PipelineConfig, QueryOptions, RAGPipeline
from .streaming import ChannelHub, relay_chunks, sse_stream

__all__ = [
    "ChannelHub",
    "ChatReply",
    "ChatService",
    "GeminiBackend",
    "GenerationBackend",
    "GenerationClient",
    "GenerationConfig",
    "GenerationOptions",
    "GenerationResult",
    "PipelineConfig",
    "QueryOptions",
    "RAGPipeline",
    "TemplateBackend",
    "relay_chunks",
    "sse_stream",
]
