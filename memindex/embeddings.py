"""Embedding provider contracts, factory and error classification."""

from __future__ import annotations

import hashlib
import json
import random
import re
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol, Sequence, runtime_checkable

import numpy as np
from loguru import logger

from .config import (
    DEFAULT_GEMINI_MODEL,
    DEFAULT_LOCAL_MODEL,
    DEFAULT_MODEL,
    SUPPORTED_PROVIDERS,
    MemorySettings,
    resolve_api_key,
    resolve_default_model,
)
from .errors import EmbeddingError, EmbeddingTimeoutError
from .text import Messages
from .utils import redact_secrets

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.5
RETRY_MAX_DELAY = 8.0
RETRY_JITTER = 0.2

_RETRYABLE_MESSAGE_RE = re.compile(
    r"rate[_ ]limit|too many requests|429|resource (?:has been )?exhausted|5\d\d|cloudflare"
    r"|timed out|timeout|overloaded",
    re.IGNORECASE,
)
_FALLBACK_MESSAGE_RE = re.compile(r"embedding|embeddings|batch", re.IGNORECASE)
_SECRET_HEADERS = {
    "openai": {"authorization"},
    "gemini": {"authorization", "x-goog-api-key"},
}


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Produces dense vectors for queries and document chunks."""

    id: str
    model: str

    def embed_query(self, text: str) -> np.ndarray: ...

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray: ...


@dataclass(slots=True)
class BatchRequest:
    custom_id: str
    text: str


@dataclass(slots=True)
class BatchOptions:
    wait: bool
    concurrency: int
    poll_interval_ms: int
    timeout_ms: int


class BatchRunner(Protocol):
    """Runs embedding requests through an asynchronous provider batch job."""

    def run(
        self,
        requests: Sequence[BatchRequest],
        options: BatchOptions,
    ) -> dict[str, np.ndarray]: ...


@runtime_checkable
class BatchCapable(Protocol):
    """Providers that expose an asynchronous batch embedding API."""

    def batch_runner(self) -> BatchRunner: ...


@dataclass(slots=True)
class ProviderResult:
    provider: EmbeddingProvider
    requested_provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


def supports_batch(provider: object) -> bool:
    return isinstance(provider, BatchCapable)


def is_remote_provider(provider: EmbeddingProvider) -> bool:
    return provider.id != "local"


def build_provider(
    provider_id: str,
    *,
    settings: MemorySettings,
    model: str,
) -> EmbeddingProvider:
    """Instantiate the concrete provider for *provider_id*."""

    remote = settings.remote
    if provider_id == "openai":
        from .providers.openai import OpenAIEmbeddingProvider

        return OpenAIEmbeddingProvider(
            model_name=model,
            api_key=resolve_api_key(remote.api_key, "openai"),
            base_url=remote.base_url,
            headers=remote.headers,
        )
    if provider_id == "gemini":
        from .providers.gemini import GeminiEmbeddingProvider

        return GeminiEmbeddingProvider(
            model_name=model,
            api_key=resolve_api_key(remote.api_key, "gemini"),
            base_url=remote.base_url,
            headers=remote.headers,
        )
    if provider_id == "local":
        from .providers.local import LocalEmbeddingProvider

        return LocalEmbeddingProvider(
            model_name=settings.local.model_path or model,
            cache_dir=settings.local.cache_dir,
            cuda=settings.local.cuda,
        )
    raise ValueError(
        Messages.ERROR_PROVIDER_INVALID.format(
            value=provider_id, allowed=", ".join(SUPPORTED_PROVIDERS)
        )
    )


def default_model_for(provider_id: str, configured_model: str) -> str:
    if provider_id == "gemini":
        return DEFAULT_GEMINI_MODEL
    if provider_id == "openai":
        return DEFAULT_MODEL
    if provider_id == "local":
        return DEFAULT_LOCAL_MODEL
    return configured_model


ProviderFactory = Callable[..., EmbeddingProvider]


def create_embedding_provider(
    settings: MemorySettings,
    *,
    provider_id: str | None = None,
    model: str | None = None,
    fallback: str | None = None,
    factory: ProviderFactory | None = None,
) -> ProviderResult:
    """Create the configured provider, trying the fallback once on failure."""

    build = factory or build_provider
    requested = (provider_id or settings.provider).lower()
    resolved_model = resolve_default_model(requested, model or settings.model)
    fallback_id = (fallback if fallback is not None else settings.fallback).lower()
    try:
        provider = build(requested, settings=settings, model=resolved_model)
        return ProviderResult(provider=provider, requested_provider=requested)
    except Exception as exc:
        if not fallback_id or fallback_id in {"none", requested}:
            raise
        reason = redact_secrets(str(exc))
        logger.warning(
            f"memory embeddings: {requested} unavailable, using fallback {fallback_id}: {reason}"
        )
        provider = build(
            fallback_id,
            settings=settings,
            model=default_model_for(fallback_id, resolved_model),
        )
        return ProviderResult(
            provider=provider,
            requested_provider=requested,
            fallback_from=requested,
            fallback_reason=reason,
        )


def compute_provider_key(provider: EmbeddingProvider) -> str:
    """Fingerprint the non-secret configuration of *provider*."""

    secret_headers = _SECRET_HEADERS.get(provider.id)
    if secret_headers is None:
        payload: dict[str, object] = {"provider": provider.id, "model": provider.model}
    else:
        headers: Mapping[str, str] = getattr(provider, "headers", None) or {}
        payload = {
            "provider": provider.id,
            "baseUrl": getattr(provider, "base_url", None) or "",
            "model": provider.model,
            "headers": sorted(
                [key, value]
                for key, value in headers.items()
                if key.lower() not in secret_headers
            ),
        }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def extract_status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "status", "http_status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def is_retryable_embedding_error(exc: BaseException) -> bool:
    """Return True for rate limits, timeouts, 5xx responses and proxy failures."""

    if isinstance(exc, EmbeddingTimeoutError):
        return True
    if extract_status_code(exc) in RETRYABLE_STATUS_CODES:
        return True
    return bool(_RETRYABLE_MESSAGE_RE.search(str(exc)))


def should_fallback_on_error(message: str) -> bool:
    return bool(_FALLBACK_MESSAGE_RE.search(message))


def backoff_delay(attempt: int) -> float:
    base = min(RETRY_MAX_DELAY, RETRY_BASE_DELAY * (2**attempt))
    return min(RETRY_MAX_DELAY, base * (1 + random.random() * RETRY_JITTER))


def as_matrix(vectors: object) -> np.ndarray:
    """Return *vectors* as a 2-D float32 array."""
    matrix = np.asarray(vectors, dtype=np.float32)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    return matrix


def wrap_provider_error(prefix: str, exc: BaseException) -> EmbeddingError:
    message = getattr(exc, "message", None) or str(exc)
    return EmbeddingError(
        redact_secrets(f"{prefix}{message}"),
        status_code=extract_status_code(exc),
    )
