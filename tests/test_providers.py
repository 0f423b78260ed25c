import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import json

import httpx
import pytest

from core import prompts
from core.errors import EmbeddingProviderError, GenerationProviderError, ProviderTimeout
from core.services.providers import CircuitBreaker, OpenAIChatClient, OpenAIEmbeddingClient


def _client(handler) -> httpx.Client:
    return httpx.Client(base_url="https://api.test/v1", transport=httpx.MockTransport(handler))


def _embedding_client(handler, **kwargs) -> OpenAIEmbeddingClient:
    kwargs.setdefault("retry_max", 2)
    kwargs.setdefault("backoff_seconds", 0.0)
    kwargs.setdefault("jitter_seconds", 0.0)
    return OpenAIEmbeddingClient(_client(handler), model="test-embed", **kwargs)


def test_embeddings_sorted_by_index():
    def handler(request):
        body = json.loads(request.content)
        assert request.url.path == "/v1/embeddings"
        assert body == {"model": "test-embed", "input": ["a", "b"]}
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    client = _embedding_client(handler)
    assert client.embed_texts(["a", "b"]) == [[1.0, 0.0], [0.0, 1.0]]


def test_retries_transient_status_then_succeeds():
    attempts = []

    def handler(request):
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})

    client = _embedding_client(handler)
    assert client.embed_texts(["a"]) == [[1.0]]
    assert len(attempts) == 3
    assert client.breaker.status()["consecutive_failures"] == 0


def test_retries_exhausted_raises_provider_error():
    attempts = []

    def handler(request):
        attempts.append(1)
        return httpx.Response(429)

    client = _embedding_client(handler)
    with pytest.raises(EmbeddingProviderError):
        client.embed_texts(["a"])
    assert len(attempts) == 3


def test_client_error_is_not_retried():
    attempts = []

    def handler(request):
        attempts.append(1)
        return httpx.Response(401, json={"error": "bad key"})

    client = _embedding_client(handler)
    with pytest.raises(EmbeddingProviderError):
        client.embed_texts(["a"])
    assert len(attempts) == 1


def test_timeout_maps_to_provider_timeout():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    client = _embedding_client(handler, retry_max=1)
    with pytest.raises(ProviderTimeout):
        client.embed_texts(["a"])


def test_circuit_breaker_opens_after_failures():
    attempts = []

    def handler(request):
        attempts.append(1)
        return httpx.Response(500)

    breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=60)
    client = _embedding_client(handler, retry_max=0, breaker=breaker)
    with pytest.raises(EmbeddingProviderError):
        client.embed_texts(["a"])
    assert breaker.is_open()

    with pytest.raises(EmbeddingProviderError) as exc:
        client.embed_texts(["a"])
    assert "circuit breaker open" in str(exc.value)
    assert len(attempts) == 1


def test_chat_client_uses_template_temperature():
    seen = {}

    def handler(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"message": {"content": "  a reply  "}}]})

    client = OpenAIChatClient(
        _client(handler),
        model="test-chat",
        temperature=0.3,
        retry_max=0,
        backoff_seconds=0.0,
        jitter_seconds=0.0,
    )
    reply = client.generate(
        prompts.PURCHASE_INTENT,
        {"thread_summary": "needs a CRM", "recent_messages": "user: pricing?"},
    )
    assert reply == "a reply"
    assert seen["model"] == "test-chat"
    assert seen["temperature"] == prompts.PURCHASE_INTENT.temperature
    assert seen["messages"][-1]["role"] == "user"
    assert "needs a CRM" in seen["messages"][-1]["content"]


def test_chat_client_bad_payload():
    client = OpenAIChatClient(
        _client(lambda request: httpx.Response(200, json={"unexpected": True})),
        retry_max=0,
        backoff_seconds=0.0,
        jitter_seconds=0.0,
    )
    with pytest.raises(GenerationProviderError):
        client.generate(
            prompts.USER_CONTEXT_NARRATIVE,
            {"current_context": "none", "thread_summary": "summary"},
        )
