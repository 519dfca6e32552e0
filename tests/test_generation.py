from __future__ import annotations

import asyncio

import pytest
from google.api_core import exceptions as google_exceptions

from ragchat.errors import (
    ContentBlockedError,
    GenerationError,
    InvalidApiKeyError,
    ProviderServerError,
    ProviderTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
)
from ragchat.models import ContextItem
from ragchat.services.generation import (
    RAG_SYSTEM_MESSAGE,
    GenerationClient,
    GenerationConfig,
    TemplateBackend,
    map_gemini_error,
)


class ScriptedBackend:
    name = "scripted"

    def __init__(self, fragments=(), reply="scripted reply", delay: float = 0.0) -> None:
        self.fragments = list(fragments)
        self.reply = reply
        self.delay = delay
        self.prompts: list[str] = []
        self.closed = False

    def is_available(self) -> bool:
        return True

    async def complete(self, prompt, options):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.reply

    async def stream(self, prompt, options):
        self.prompts.append(prompt)
        try:
            for fragment in self.fragments:
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
        finally:
            self.closed = True


class OfflineBackend(ScriptedBackend):
    def is_available(self) -> bool:
        return False


def test_rag_prompt_numbers_context_blocks():
    client = GenerationClient(TemplateBackend())
    prompt = client.build_rag_prompt("What happened?", ["first block", "second block"])
    assert prompt.startswith(RAG_SYSTEM_MESSAGE)
    assert "CONTEXT:\n[1] first block\n\n[2] second block\n\nQUESTION: What happened?\n\nANSWER:" in prompt


def test_rag_prompt_accepts_context_items_and_custom_system_message():
    client = GenerationClient(TemplateBackend())
    item = ContextItem(id="c1", content="Rates rose.", similarity=0.9)
    prompt = client.build_rag_prompt("Why?", [item], system_message="Be brief.")
    assert prompt.startswith("Be brief.\n\nCONTEXT:\n[1] Rates rose.")


@pytest.mark.asyncio
async def test_generate_strips_text_and_reports_usage():
    client = GenerationClient(ScriptedBackend(reply="  answer  "))
    result = await client.generate("prompt text")
    assert result.text == "answer"
    assert result.usage["prompt_tokens"] == GenerationClient.estimate_tokens("prompt text")


@pytest.mark.asyncio
async def test_empty_generation_is_an_error():
    client = GenerationClient(ScriptedBackend(reply="   "))
    with pytest.raises(GenerationError):
        await client.generate("prompt")


@pytest.mark.asyncio
async def test_generation_times_out():
    client = GenerationClient(ScriptedBackend(delay=0.2), GenerationConfig(timeout_seconds=0.01))
    with pytest.raises(ProviderTimeoutError):
        await client.generate("prompt")


@pytest.mark.asyncio
async def test_unavailable_backend_raises_service_unavailable():
    client = GenerationClient(OfflineBackend())
    with pytest.raises(ServiceUnavailableError):
        await client.generate("prompt")
    assert (await client.health_check())["status"] == "unavailable"


@pytest.mark.asyncio
async def test_streaming_reports_cumulative_text_and_completion():
    backend = ScriptedBackend(fragments=["Hel", "", "lo", " world"])
    client = GenerationClient(backend)
    chunks = []

    async def on_chunk(chunk):
        chunks.append(chunk)

    result = await client.generate_streaming("prompt", on_chunk=on_chunk)
    assert [c.chunk for c in chunks] == ["Hel", "lo", " world", ""]
    assert [c.index for c in chunks] == [0, 1, 2, 3]
    assert [c.full_text for c in chunks] == ["Hel", "Hello", "Hello world", "Hello world"]
    assert [c.is_complete for c in chunks] == [False, False, False, True]
    assert result.text == "Hello world"
    assert result.chunks == 3
    assert backend.closed


@pytest.mark.asyncio
async def test_streaming_times_out_between_fragments():
    backend = ScriptedBackend(fragments=["slow"], delay=0.2)
    client = GenerationClient(backend, GenerationConfig(timeout_seconds=0.01))
    with pytest.raises(ProviderTimeoutError):
        await client.generate_streaming("prompt")


@pytest.mark.asyncio
async def test_template_backend_answers_from_first_context_block():
    client = GenerationClient(TemplateBackend())
    result = await client.generate_rag_response("Q?", ["Fact one.", "Fact two."])
    assert result.text == "Based on the provided articles: Fact one."


def test_validate_input_trims_and_truncates():
    assert GenerationClient.validate_input("  hi  ") == "hi"
    assert GenerationClient.validate_input("abcdef", max_length=3) == "abc"
    with pytest.raises(ValueError):
        GenerationClient.validate_input("   ")


def test_estimate_tokens():
    assert GenerationClient.estimate_tokens("") == 0
    assert GenerationClient.estimate_tokens("abcde") == 2


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (google_exceptions.Unauthenticated("bad key"), InvalidApiKeyError),
        (ValueError("API_KEY_INVALID"), InvalidApiKeyError),
        (google_exceptions.ResourceExhausted("quota"), RateLimitedError),
        (google_exceptions.InternalServerError("boom"), ProviderServerError),
        (google_exceptions.DeadlineExceeded("slow"), ProviderTimeoutError),
        (RuntimeError("finish reason SAFETY"), ContentBlockedError),
        (RuntimeError("other"), GenerationError),
    ],
)
def test_gemini_errors_map_to_taxonomy(exc, expected):
    assert isinstance(map_gemini_error(exc), expected)


class CrashingBackend(ScriptedBackend):
    async def complete(self, prompt, options):
        raise RuntimeError("socket reset by internal-host:443")

    async def stream(self, prompt, options):
        yield "partial "
        raise RuntimeError("socket reset by internal-host:443")


@pytest.mark.asyncio
async def test_unexpected_backend_errors_become_generation_errors():
    client = GenerationClient(CrashingBackend())
    with pytest.raises(GenerationError) as excinfo:
        await client.generate("prompt")
    assert "internal-host" not in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)

    with pytest.raises(GenerationError):
        await client.generate_streaming("prompt")
