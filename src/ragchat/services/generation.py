"""Generation backends and the client that wraps them."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol, Sequence

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from ragchat.errors import (
    ContentBlockedError,
    GenerationError,
    InvalidApiKeyError,
    ProviderError,
    ProviderServerError,
    ProviderTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
)
from ragchat.models import ContextItem, StreamChunk

LOGGER = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], Awaitable[None]]

RAG_SYSTEM_MESSAGE = """You are a helpful AI assistant that answers questions based on the provided context. You should:

1. Answer questions accurately based on the given context
2. If the context doesn't contain enough information to answer the question, say so honestly
3. Keep your answers concise and relevant
4. Cite information from the context when appropriate
5. Be conversational and helpful in tone"""


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "gemini-1.5-flash"
    api_key: str | None = None
    max_output_tokens: int = 8192
    temperature: float = 0.7
    top_p: float = 0.9
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class GenerationOptions:
    """Per-call overrides; unset fields fall back to the client configuration."""

    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    system_message: str | None = None


@dataclass(frozen=True)
class GenerationResult:
    text: str
    model: str
    usage: Mapping[str, int] = field(default_factory=dict)
    chunks: int = 0


class GenerationBackend(Protocol):
    """Protocol describing a text generation provider."""

    name: str

    def is_available(self) -> bool:
        """Return True when the provider can serve requests."""

    async def complete(self, prompt: str, options: GenerationOptions) -> str:
        """Return the full completion for ``prompt``."""

    def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        """Yield text fragments of the completion in order."""


class TemplateBackend:
    """Deterministic generator used for tests and offline environments."""

    name = "template"

    def is_available(self) -> bool:
        return True

    async def complete(self, prompt: str, options: GenerationOptions) -> str:
        if "CONTEXT:" not in prompt:
            return "I don't have enough relevant information to answer that question."
        context = prompt.split("CONTEXT:", 1)[1].split("QUESTION:", 1)[0].strip()
        first_block = context.split("\n\n", 1)[0]
        if first_block.startswith("[1] "):
            first_block = first_block[4:]
        return f"Based on the provided articles: {first_block.strip()}"

    async def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        text = await self.complete(prompt, options)
        words = text.split(" ")
        for position, word in enumerate(words):
            yield word if position == len(words) - 1 else f"{word} "


class GeminiBackend:
    """Google Gemini models through ``google-generativeai``."""

    name = "gemini"

    def __init__(self, config: GenerationConfig) -> None:
        self._config = config
        self._model = None
        if config.api_key:
            genai.configure(api_key=config.api_key)
            self._model = genai.GenerativeModel(config.model)
        else:
            LOGGER.warning("Gemini API key not configured - LLM service disabled")

    def is_available(self) -> bool:
        return self._model is not None

    async def complete(self, prompt: str, options: GenerationOptions) -> str:
        model = self._require_model()
        try:
            response = await model.generate_content_async(
                self._contents(prompt),
                generation_config=self._generation_config(options),
            )
            return response.text
        except Exception as exc:
            raise map_gemini_error(exc) from exc

    async def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        model = self._require_model()
        try:
            response = await model.generate_content_async(
                self._contents(prompt),
                generation_config=self._generation_config(options),
                stream=True,
            )
            async for chunk in response:
                text = _chunk_text(chunk)
                if text:
                    yield text
        except Exception as exc:
            raise map_gemini_error(exc) from exc

    def _require_model(self):
        if self._model is None:
            raise ServiceUnavailableError("LLM service not available - missing API key")
        return self._model

    @staticmethod
    def _contents(prompt: str) -> list[dict[str, Any]]:
        return [{"role": "user", "parts": [prompt]}]

    def _generation_config(self, options: GenerationOptions) -> dict[str, Any]:
        return {
            "temperature": options.temperature if options.temperature is not None else self._config.temperature,
            "top_p": options.top_p if options.top_p is not None else self._config.top_p,
            "max_output_tokens": options.max_output_tokens or self._config.max_output_tokens,
        }


def _chunk_text(chunk: Any) -> str:
    # ``text`` raises ValueError when a chunk carries no parts.
    try:
        return chunk.text or ""
    except ValueError:
        return ""


def map_gemini_error(exc: Exception) -> ProviderError:
    """Translate a Gemini client exception into the provider error taxonomy."""

    if isinstance(exc, ProviderError):
        return exc
    message = str(exc)
    if isinstance(exc, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)) or (
        "API_KEY_INVALID" in message
    ):
        return InvalidApiKeyError("Invalid Gemini API key")
    if isinstance(exc, google_exceptions.ResourceExhausted) or "RATE_LIMIT" in message:
        return RateLimitedError("Gemini API rate limit exceeded")
    if isinstance(exc, google_exceptions.DeadlineExceeded):
        return ProviderTimeoutError("Timed out waiting for Gemini API")
    if isinstance(exc, google_exceptions.ServerError):
        return ProviderServerError("Gemini API server error")
    if "SAFETY" in message or "Blocked" in type(exc).__name__:
        return ContentBlockedError("Content blocked by safety filters")
    return GenerationError(f"LLM generation failed: {message}")


class GenerationClient:
    """Single-shot and incremental generation with prompt construction."""

    def __init__(self, backend: GenerationBackend, config: GenerationConfig | None = None) -> None:
        self._backend = backend
        self._config = config or GenerationConfig()

    @property
    def backend_name(self) -> str:
        return self._backend.name

    def is_available(self) -> bool:
        return self._backend.is_available()

    async def generate(self, prompt: str, options: GenerationOptions | None = None) -> GenerationResult:
        self._require_available()
        if not isinstance(prompt, str) or not prompt:
            raise ValueError("Prompt is required and must be a string")
        options = options or GenerationOptions()
        LOGGER.info("Generating response for prompt (%d chars)", len(prompt))
        try:
            text = await asyncio.wait_for(
                self._backend.complete(prompt, options),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError("Generation timed out") from exc
        except ProviderError:
            raise
        except Exception as exc:
            LOGGER.error("Generation backend %s failed: %s", self._backend.name, exc)
            raise GenerationError("Generation provider failed") from exc
        if not text or not text.strip():
            raise GenerationError("Empty response from generation provider")
        text = text.strip()
        return GenerationResult(text=text, model=self._config.model, usage=self._usage(prompt, text))

    async def generate_streaming(
        self,
        prompt: str,
        options: GenerationOptions | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> GenerationResult:
        """Relay fragments to ``on_chunk`` as they arrive.

        Each callback carries the fragment, the cumulative text and a 0-based
        index. A final callback with an empty fragment and ``is_complete`` set
        closes the sequence.
        """

        self._require_available()
        options = options or GenerationOptions()
        fragments = self._backend.stream(prompt, options).__aiter__()
        full_text = ""
        count = 0
        try:
            while True:
                try:
                    fragment = await asyncio.wait_for(fragments.__anext__(), timeout=self._config.timeout_seconds)
                except StopAsyncIteration:
                    break
                except (asyncio.TimeoutError, ProviderError):
                    raise
                except Exception as exc:
                    LOGGER.error("Generation backend %s failed mid-stream: %s", self._backend.name, exc)
                    raise GenerationError("Generation provider failed") from exc
                if not fragment:
                    continue
                full_text += fragment
                if on_chunk is not None:
                    await on_chunk(StreamChunk(chunk=fragment, full_text=full_text, index=count))
                count += 1
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError("Streaming generation timed out") from exc
        finally:
            closer = getattr(fragments, "aclose", None)
            if closer is not None:
                await closer()

        if on_chunk is not None:
            await on_chunk(StreamChunk(chunk="", full_text=full_text, index=count, is_complete=True))
        LOGGER.info("Streaming complete: %d chunks, %d chars", count, len(full_text))
        return GenerationResult(
            text=full_text.strip(),
            model=self._config.model,
            usage=self._usage(prompt, full_text),
            chunks=count,
        )

    def build_rag_prompt(
        self,
        query: str,
        context: Sequence[ContextItem | str],
        system_message: str | None = None,
    ) -> str:
        blocks = [
            f"[{index}] {item.content if isinstance(item, ContextItem) else item}"
            for index, item in enumerate(context, start=1)
        ]
        context_text = "\n\n".join(blocks)
        return f"{system_message or RAG_SYSTEM_MESSAGE}\n\nCONTEXT:\n{context_text}\n\nQUESTION: {query}\n\nANSWER:"

    async def generate_rag_response(
        self,
        query: str,
        context: Sequence[ContextItem | str],
        options: GenerationOptions | None = None,
    ) -> GenerationResult:
        options = options or GenerationOptions()
        prompt = self.build_rag_prompt(query, context, options.system_message)
        return await self.generate(prompt, options)

    async def generate_streaming_rag_response(
        self,
        query: str,
        context: Sequence[ContextItem | str],
        options: GenerationOptions | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> GenerationResult:
        options = options or GenerationOptions()
        prompt = self.build_rag_prompt(query, context, options.system_message)
        return await self.generate_streaming(prompt, options, on_chunk)

    @staticmethod
    def estimate_tokens(text: str | None) -> int:
        if not text or not isinstance(text, str):
            return 0
        return math.ceil(len(text) / 4)

    @staticmethod
    def validate_input(text: str, max_length: int = 30000) -> str:
        if not isinstance(text, str) or not text:
            raise ValueError("Input must be a non-empty string")
        clean = text.strip()
        if not clean:
            raise ValueError("Input cannot be empty")
        if len(clean) > max_length:
            LOGGER.warning("Input text truncated from %d to %d characters", len(clean), max_length)
            return clean[:max_length]
        return clean

    async def health_check(self) -> dict[str, object]:
        if not self.is_available():
            return {"status": "unavailable", "message": "API key not configured"}
        try:
            result = await self.generate(
                "Hello! This is a health check test.",
                GenerationOptions(max_output_tokens=50, temperature=0.1),
            )
        except ProviderError as exc:
            return {"status": "error", "message": str(exc)}
        return {"status": "ok", "model": result.model, "response_length": len(result.text), "usage": dict(result.usage)}

    def stats(self) -> dict[str, object]:
        return {
            "model": self._config.model,
            "backend": self._backend.name,
            "max_output_tokens": self._config.max_output_tokens,
            "temperature": self._config.temperature,
            "top_p": self._config.top_p,
            "available": self.is_available(),
        }

    def _require_available(self) -> None:
        if not self.is_available():
            raise ServiceUnavailableError("LLM service not available - missing API key")

    def _usage(self, prompt: str, text: str) -> dict[str, int]:
        return {
            "prompt_tokens": self.estimate_tokens(prompt),
            "completion_tokens": self.estimate_tokens(text),
            "total_tokens": self.estimate_tokens(prompt + text),
        }
