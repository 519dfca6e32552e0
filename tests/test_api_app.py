"""Tests for the FastAPI application."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from ragchat.api import app as app_module
from ragchat.api.app import RateLimiter, create_app
from ragchat.config import Settings

ARTICLE_TEXT = (
    "The central bank raised interest rates by a quarter point on Tuesday. "
    "Officials said inflation remained above target for the sixth straight month. "
    "Markets had largely expected the move and reacted calmly."
)


def _settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "vector_store": "memory",
        "embedding_provider": "hash",
        "embedding_dim": 16,
        "generator_provider": "template",
        "fallback_word_delay_seconds": 0.0,
        "embedding_batch_delay_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def client():
    with TestClient(create_app(settings=_settings())) as test_client:
        yield test_client


def _ingest(client: TestClient) -> dict:
    response = client.post(
        "/api/ingest/articles",
        json={
            "articles": [
                {
                    "title": "Bank raises rates",
                    "content": ARTICLE_TEXT,
                    "url": "https://news.example/rates",
                    "source": "Wire",
                    "published": "2024-05-01",
                }
            ]
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: ") :]) for line in body.split("\n\n") if line.startswith("data: ")]


def test_root_and_health(client: TestClient) -> None:
    assert client.get("/").json()["status"] == "running"

    health = client.get("/api/health", headers={"X-Request-ID": "req-1"})
    assert health.status_code == 200
    assert health.headers["X-Correlation-ID"] == "req-1"
    services = health.json()["services"]
    assert services["cache"] == {"backend": "memory", "degraded": True}
    assert services["vector_db"]["storage"] == "in-memory"

    assert client.get("/api/health/live").json() == {"status": "alive"}
    ready = client.get("/api/health/ready")
    assert ready.status_code == 200
    assert ready.json()["status"] == "ready"
    assert client.get("/api/health/pipeline").json()["status"] == "ok"


def test_readiness_fails_without_generation_key() -> None:
    settings = _settings(generator_provider="gemini", gemini_api_key=None)
    with TestClient(create_app(settings=settings)) as client:
        ready = client.get("/api/health/ready")
        assert ready.status_code == 503
        reply = client.post("/api/chat", json={"message": "hello"})
        assert reply.status_code == 200
        assert reply.json()["source"] == "unavailable"


def test_session_lifecycle(client: TestClient) -> None:
    created = client.post("/api/sessions", json={"sessionId": "abc-1"})
    assert created.status_code == 201
    assert created.json() == {"success": True, "sessionId": "abc-1"}

    session = client.get("/api/sessions/abc-1").json()
    assert session["id"] == "abc-1"
    assert session["messageCount"] == 0

    client.post("/api/chat", json={"message": "Anything new?", "sessionId": "abc-1"})
    history = client.get("/api/sessions/abc-1/history").json()
    assert history["totalMessages"] == 2
    assert [m["role"] for m in history["messages"]] == ["user", "assistant"]

    stats = client.get("/api/sessions/stats").json()
    assert stats["totalSessions"] == 1
    assert stats["totalMessages"] == 2

    assert client.post("/api/sessions/abc-1/clear").status_code == 200
    assert client.get("/api/sessions/abc-1/history").json()["totalMessages"] == 0
    assert client.delete("/api/sessions/abc-1").status_code == 204
    assert client.get("/api/sessions/abc-1").status_code == 404
    assert client.delete("/api/sessions/abc-1").status_code == 404


def test_create_session_without_body_generates_id(client: TestClient) -> None:
    created = client.post("/api/sessions")
    assert created.status_code == 201
    session_id = created.json()["sessionId"]
    assert client.get(f"/api/sessions/{session_id}").status_code == 200


def test_invalid_session_id_is_rejected(client: TestClient) -> None:
    assert client.get("/api/sessions/bad id!").status_code == 422
    assert client.post("/api/chat", json={"message": "hi", "sessionId": "no spaces"}).status_code == 422


def test_chat_without_documents_returns_fallback(client: TestClient) -> None:
    response = client.post("/api/chat", json={"message": "What did the bank do?"})
    assert response.status_code == 200, response.text
    payload = response.json()
    assert payload["source"] == "fallback"
    assert payload["context"] == []
    assert payload["botResponse"]
    assert payload["sessionId"]


def test_chat_with_documents_uses_context(client: TestClient) -> None:
    summary = _ingest(client)
    assert summary["processedChunks"] >= 1

    response = client.post("/api/chat", json={"message": "What did the bank do?"})
    payload = response.json()
    assert payload["source"] == "rag_pipeline"
    assert payload["context"]
    assert "Source: Wire" in payload["context"][0]["content"]
    assert payload["botResponse"].startswith("Based on the provided articles:")


def test_chat_rejects_empty_and_oversized_messages(client: TestClient) -> None:
    assert client.post("/api/chat", json={"message": ""}).status_code == 422
    assert client.post("/api/chat", json={"message": "x" * 501}).status_code == 422


def test_streaming_chat_emits_sse_sequence(client: TestClient) -> None:
    _ingest(client)
    response = client.post("/api/chat/stream", json={"message": "What did the bank do?", "sessionId": "sse-1"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    types = [event["type"] for event in events]
    assert types[0] == "start"
    assert types[-1] == "end"
    assert types.count("end") + types.count("error") == 1
    assert set(types[1:-1]) == {"chunk"}
    assert events[-1]["sessionId"] == "sse-1"
    assert events[-1]["fullResponse"] == events[-2]["fullText"]
    assert client.get("/api/sessions/sse-1/history").json()["totalMessages"] == 2


def test_websocket_channel_streams_reply(client: TestClient) -> None:
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"event": "send_message", "data": {"sessionId": "ws-1", "message": "Hello there"}})
        frames = []
        while True:
            frame = websocket.receive_json()
            frames.append(frame)
            if frame["event"] in ("message_complete", "error"):
                break
        events = [frame["event"] for frame in frames]
        assert events[0] == "typing"
        assert events[-1] == "message_complete"
        indices = [frame["data"]["index"] for frame in frames if frame["event"] == "message_chunk"]
        assert indices == sorted(indices)

        websocket.send_json({"event": "dance", "data": {}})
        assert websocket.receive_json()["event"] == "error"
        websocket.send_text("not json")
        assert websocket.receive_json()["data"]["message"] == "Invalid message format"

    assert client.get("/api/sessions/ws-1/history").json()["totalMessages"] == 2


def test_ingest_search_and_documents(client: TestClient) -> None:
    _ingest(client)
    found = client.get("/api/ingest/search", params={"q": "interest rates", "mode": "text"}).json()
    assert found["results"]
    document_id = found["results"][0]["id"]

    semantic = client.get("/api/ingest/search", params={"q": "interest rates"}).json()
    assert semantic["results"][0]["id"] == document_id

    document = client.get(f"/api/ingest/documents/{document_id}")
    assert document.status_code == 200
    assert document.json()["metadata"]["source"] == "Wire"

    assert client.get("/api/ingest/stats").json()["vector_database"]["count"] >= 1
    assert client.delete(f"/api/ingest/documents/{document_id}").status_code == 204
    assert client.get(f"/api/ingest/documents/{document_id}").status_code == 404
    assert client.delete("/api/ingest/documents").status_code == 204


def test_pipeline_config_round_trip(client: TestClient) -> None:
    assert client.get("/api/pipeline/config").json() == {
        "topK": 3,
        "similarityThreshold": 0.1,
        "maxContextChunks": 5,
    }
    updated = client.patch("/api/pipeline/config", json={"topK": 50, "similarityThreshold": 0.4}).json()
    assert updated["topK"] == 20
    assert updated["similarityThreshold"] == 0.4
    assert client.get("/api/pipeline/stats").json()["configuration"]["top_k"] == 20


def test_metrics_endpoint(client: TestClient) -> None:
    client.post("/api/chat", json={"message": "hello"})
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "ragchat_stage_duration_seconds" in response.text


def test_chat_rate_limit() -> None:
    with TestClient(create_app(settings=_settings(rate_limit_requests=2))) as client:
        for _ in range(2):
            assert client.post("/api/chat", json={"message": "hi"}).status_code == 200
        limited = client.post("/api/chat", json={"message": "hi"})
        assert limited.status_code == 429


def _limited_request(client_ip: str, path: str = "/api/chat") -> Request:
    return Request(
        {
            "type": "http",
            "method": "POST",
            "scheme": "http",
            "server": ("testserver", 80),
            "path": path,
            "root_path": "",
            "query_string": b"",
            "headers": [],
            "client": (client_ip, 50000),
        }
    )


def test_rate_limiter_forgets_idle_clients(monkeypatch) -> None:
    clock = {"now": 0.0}
    monkeypatch.setattr(app_module, "time", SimpleNamespace(monotonic=lambda: clock["now"]))
    limiter = RateLimiter(requests=5, window_seconds=60)

    for number in range(50):
        limiter(_limited_request(f"10.0.0.{number}"))
    assert len(limiter) == 50

    clock["now"] = 120.0
    limiter(_limited_request("10.0.1.1"))
    assert len(limiter) == 1
