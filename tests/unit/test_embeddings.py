from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

from memindex import embeddings
from memindex.config import DEFAULT_LOCAL_MODEL, MemorySettings
from memindex.errors import EmbeddingError, EmbeddingTimeoutError


def _fake(provider_id: str, model: str, **extra):
    return SimpleNamespace(
        id=provider_id,
        model=model,
        embed_query=lambda text: np.ones(3),
        embed_batch=lambda texts: np.ones((len(texts), 3)),
        **extra,
    )


def test_create_embedding_provider_uses_requested_provider():
    calls = []

    def factory(provider_id, *, settings, model):
        calls.append((provider_id, model))
        return _fake(provider_id, model)

    result = embeddings.create_embedding_provider(MemorySettings(), factory=factory)

    assert result.provider.id == "openai"
    assert result.requested_provider == "openai"
    assert result.fallback_from is None
    assert calls == [("openai", "text-embedding-3-small")]


def test_create_embedding_provider_falls_back_once():
    def factory(provider_id, *, settings, model):
        if provider_id == "openai":
            raise EmbeddingError("missing key sk-abcdefghijklmnop")
        return _fake(provider_id, model)

    settings = MemorySettings(fallback="local")

    result = embeddings.create_embedding_provider(settings, factory=factory)

    assert result.provider.id == "local"
    assert result.provider.model == DEFAULT_LOCAL_MODEL
    assert result.fallback_from == "openai"
    assert "sk-abcdefghijklmnop" not in result.fallback_reason


def test_create_embedding_provider_without_fallback_raises():
    def factory(provider_id, *, settings, model):
        raise EmbeddingError("boom")

    with pytest.raises(EmbeddingError, match="boom"):
        embeddings.create_embedding_provider(MemorySettings(), factory=factory)


def test_build_provider_rejects_unknown_id():
    with pytest.raises(ValueError, match="Unsupported embedding provider"):
        embeddings.build_provider("cohere", settings=MemorySettings(), model="m")


def test_compute_provider_key_ignores_secret_headers():
    base = _fake("openai", "m", base_url="https://api.example.com", headers={"X-Team": "a"})
    with_auth = _fake(
        "openai",
        "m",
        base_url="https://api.example.com",
        headers={"X-Team": "a", "Authorization": "Bearer secret"},
    )
    other_url = _fake("openai", "m", base_url="https://proxy.example.com", headers={"X-Team": "a"})

    assert embeddings.compute_provider_key(base) == embeddings.compute_provider_key(with_auth)
    assert embeddings.compute_provider_key(base) != embeddings.compute_provider_key(other_url)
    assert embeddings.compute_provider_key(_fake("local", "m")) != embeddings.compute_provider_key(
        _fake("local", "n")
    )


def test_is_retryable_embedding_error():
    assert embeddings.is_retryable_embedding_error(EmbeddingError("x", status_code=429))
    assert embeddings.is_retryable_embedding_error(RuntimeError("Rate limit reached"))
    assert embeddings.is_retryable_embedding_error(RuntimeError("upstream 503 from cloudflare"))
    assert embeddings.is_retryable_embedding_error(
        EmbeddingTimeoutError("memory embeddings batch timed out after 120s")
    )
    assert embeddings.is_retryable_embedding_error(EmbeddingError("server overloaded"))
    assert embeddings.is_retryable_embedding_error(RuntimeError("Resource exhausted"))
    assert not embeddings.is_retryable_embedding_error(EmbeddingError("bad input", status_code=400))


def test_should_fallback_on_error():
    assert embeddings.should_fallback_on_error("OpenAI embedding request failed: quota")
    assert embeddings.should_fallback_on_error("batch job failed")
    assert not embeddings.should_fallback_on_error("disk full")


def test_backoff_delay_grows_and_caps():
    first = embeddings.backoff_delay(0)
    later = embeddings.backoff_delay(10)

    assert embeddings.RETRY_BASE_DELAY <= first <= embeddings.RETRY_BASE_DELAY * 1.2
    assert later == pytest.approx(embeddings.RETRY_MAX_DELAY)


def test_supports_batch_detects_batch_runner():
    assert embeddings.supports_batch(_fake("openai", "m", batch_runner=lambda: None))
    assert not embeddings.supports_batch(_fake("gemini", "m"))


def test_as_matrix_promotes_vectors():
    assert embeddings.as_matrix([1.0, 2.0]).shape == (1, 2)
    assert embeddings.as_matrix([[1.0], [2.0]]).dtype == np.float32
