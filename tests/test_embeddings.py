from __future__ import annotations

import json
import math

import httpx
import pytest

from ragchat.embeddings import EmbeddingConfig, HashEmbeddingClient, JinaEmbeddingClient
from ragchat.errors import (
    InvalidApiKeyError,
    ProviderNetworkError,
    ProviderServerError,
    RateLimitedError,
    ServiceUnavailableError,
)


def _jina(handler, **config) -> JinaEmbeddingClient:
    transport = httpx.MockTransport(handler)
    options = {"api_key": "test-key", "batch_delay_seconds": 0.0, **config}
    return JinaEmbeddingClient(EmbeddingConfig(**options), http_client=httpx.AsyncClient(transport=transport))


def _vectors_for(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    data = [{"embedding": [float(len(text)), 1.0, 0.0]} for text in body["input"]]
    return httpx.Response(200, json={"data": data, "model": body["model"], "usage": {"total_tokens": 3}})


@pytest.mark.asyncio
async def test_hash_embedding_dim_and_norm():
    client = HashEmbeddingClient(EmbeddingConfig(dim=64))
    result = await client.embed("hello world")
    assert result.dimensions == 64
    assert math.isclose(sum(v * v for v in result.vector), 1.0, rel_tol=1e-6)


@pytest.mark.asyncio
async def test_hash_embedding_is_deterministic():
    client = HashEmbeddingClient(EmbeddingConfig(dim=16))
    first = await client.embed("alpha")
    second = await client.embed("alpha")
    other = await client.embed("beta")
    assert first.vector == second.vector
    assert first.vector != other.vector


@pytest.mark.asyncio
async def test_empty_text_is_rejected():
    client = HashEmbeddingClient()
    with pytest.raises(ValueError):
        await client.embed("   ")


@pytest.mark.asyncio
async def test_jina_embed_sends_bearer_token_and_model():
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return _vectors_for(request)

    client = _jina(handler)
    result = await client.embed("  question  ")
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"] == {"input": ["question"], "model": "jina-embeddings-v2-base-en"}
    assert result.vector == (8.0, 1.0, 0.0)
    await client.aclose()


@pytest.mark.asyncio
async def test_long_input_is_truncated_to_token_limit():
    lengths: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        lengths.extend(len(text) for text in json.loads(request.content)["input"])
        return _vectors_for(request)

    client = _jina(handler, max_tokens=10)
    await client.embed("x" * 100)
    assert lengths == [40]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error"),
    [(401, InvalidApiKeyError), (429, RateLimitedError), (503, ProviderServerError)],
)
async def test_jina_status_codes_map_to_error_taxonomy(status, error):
    client = _jina(lambda request: httpx.Response(status, json={"detail": "nope"}))
    with pytest.raises(error):
        await client.embed("hello")


@pytest.mark.asyncio
async def test_jina_connection_failure_is_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _jina(handler)
    with pytest.raises(ProviderNetworkError):
        await client.embed("hello")


@pytest.mark.asyncio
async def test_missing_api_key_makes_client_unavailable():
    client = JinaEmbeddingClient(EmbeddingConfig(api_key=None))
    assert not client.is_available()
    with pytest.raises(ServiceUnavailableError):
        await client.embed("hello")
    await client.aclose()


@pytest.mark.asyncio
async def test_failed_batch_marks_only_its_items():
    def handler(request: httpx.Request) -> httpx.Response:
        texts = json.loads(request.content)["input"]
        if "bad" in texts:
            return httpx.Response(500, json={"detail": "boom"})
        return _vectors_for(request)

    client = _jina(handler, batch_size=2)
    result = await client.embed_batch(["a", "b", "bad", "c", "d"])
    assert result.total == 5
    assert [item.ok for item in result.items] == [True, True, False, False, True]
    assert result.failed == 2
    assert [item.index for item in result.items] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_batch_records_invalid_items_without_calling_provider():
    calls: list[list[str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content)["input"])
        return _vectors_for(request)

    client = _jina(handler)
    result = await client.embed_batch(["ok", "  "])
    assert calls == [["ok"]]
    assert result.items[1].error
    assert result.successful == 1


def test_client_without_batch_hook_cannot_be_built():
    from ragchat.embeddings.service import BaseEmbeddingClient

    class Incomplete(BaseEmbeddingClient):
        pass

    with pytest.raises(TypeError):
        Incomplete(EmbeddingConfig())
