"""Chunk embedding: cache lookup, direct batches with retry, provider batch jobs."""

from __future__ import annotations

import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Sequence, TypeVar

import numpy as np
from loguru import logger

from ..chunking import MemoryChunk
from ..config import MemorySettings
from ..embeddings import (
    RETRY_MAX_ATTEMPTS,
    BatchOptions,
    BatchRequest,
    EmbeddingProvider,
    as_matrix,
    backoff_delay,
    is_remote_provider,
    is_retryable_embedding_error,
    supports_batch,
)
from ..errors import BatchUnavailableError, EmbeddingError, EmbeddingTimeoutError
from ..store import IndexStore
from ..text import Messages
from ..utils import call_with_timeout, hash_text, redact_secrets

T = TypeVar("T")

EMBEDDING_BATCH_MAX_TOKENS = 8000
EMBEDDING_APPROX_CHARS_PER_TOKEN = 1
EMBEDDING_INDEX_CONCURRENCY = 4
QUERY_WORKERS = 2
QUERY_TIMEOUT_REMOTE = 60.0
QUERY_TIMEOUT_LOCAL = 300.0
BATCH_TIMEOUT_REMOTE = 120.0
BATCH_TIMEOUT_LOCAL = 600.0
BATCH_FAILURE_LIMIT = 2

_TIMEOUT_RE = re.compile(r"timed out|timeout", re.IGNORECASE)


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


@dataclass(slots=True)
class BatchConfig:
    enabled: bool
    wait: bool
    concurrency: int
    poll_interval_ms: int
    timeout_ms: int

    def options(self) -> BatchOptions:
        return BatchOptions(
            wait=self.wait,
            concurrency=self.concurrency,
            poll_interval_ms=self.poll_interval_ms,
            timeout_ms=self.timeout_ms,
        )


def resolve_batch_config(settings: MemorySettings, provider: EmbeddingProvider) -> BatchConfig:
    batch = settings.remote.batch
    return BatchConfig(
        enabled=bool(batch.enabled and supports_batch(provider)),
        wait=batch.wait,
        concurrency=max(1, batch.concurrency),
        poll_interval_ms=batch.poll_interval_ms,
        timeout_ms=batch.timeout_minutes * 60 * 1000,
    )


@dataclass(slots=True)
class BatchFailure:
    disabled: bool
    count: int


class BatchCircuitBreaker:
    """Counts batch failures and turns batch mode off at the limit.

    Once open the breaker stays open; only a fallback provider switch
    installs a fresh config.
    """

    def __init__(self, config: BatchConfig, *, limit: int = BATCH_FAILURE_LIMIT) -> None:
        self.config = config
        self.limit = limit
        self.failures = 0
        self.last_error: str | None = None
        self.last_provider: str | None = None
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def record_failure(
        self,
        *,
        provider: str,
        message: str,
        attempts: int = 1,
        force: bool = False,
    ) -> BatchFailure:
        with self._lock:
            if not self.config.enabled:
                return BatchFailure(disabled=True, count=self.failures)
            self.failures += self.limit if force else max(1, attempts)
            self.last_error = message
            self.last_provider = provider
            disabled = force or self.failures >= self.limit
            if disabled:
                self.config.enabled = False
            return BatchFailure(disabled=disabled, count=self.failures)

    def reset(self) -> None:
        with self._lock:
            if self.failures > 0:
                logger.debug("memory embeddings: batch recovered; resetting failure count")
            self.failures = 0
            self.last_error = None
            self.last_provider = None


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return -(-len(text) // EMBEDDING_APPROX_CHARS_PER_TOKEN)


def build_embedding_batches(
    chunks: Sequence[MemoryChunk], max_tokens: int = EMBEDDING_BATCH_MAX_TOKENS
) -> list[list[MemoryChunk]]:
    """Group *chunks* so each group stays under *max_tokens* estimated tokens.

    A chunk that alone exceeds the budget forms its own group.
    """

    batches: list[list[MemoryChunk]] = []
    current: list[MemoryChunk] = []
    current_tokens = 0
    for chunk in chunks:
        estimate = estimate_tokens(chunk.text)
        if current and current_tokens + estimate > max_tokens:
            batches.append(current)
            current = []
            current_tokens = 0
        if not current and estimate > max_tokens:
            batches.append([chunk])
            continue
        current.append(chunk)
        current_tokens += estimate
    if current:
        batches.append(current)
    return batches


def batch_custom_id(source: str, path: str, chunk: MemoryChunk, index: int) -> str:
    return hash_text(
        f"{source}:{path}:{chunk.start_line}:{chunk.end_line}:{chunk.hash}:{index}"
    )


class EmbeddingPipeline:
    """Embeds chunks for one provider, consulting the store's cache first."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        provider_key: str,
        batch: BatchConfig,
        cache_enabled: bool = True,
    ) -> None:
        self.provider = provider
        self.provider_key = provider_key
        self.cache_enabled = cache_enabled
        self.breaker = BatchCircuitBreaker(batch)
        self._executor = ThreadPoolExecutor(
            max_workers=EMBEDDING_INDEX_CONCURRENCY, thread_name_prefix="memindex-embed"
        )
        # Queries never wait behind chunk batches from a running sync.
        self._query_executor = ThreadPoolExecutor(
            max_workers=QUERY_WORKERS, thread_name_prefix="memindex-query"
        )

    @property
    def batch(self) -> BatchConfig:
        return self.breaker.config

    def configure(
        self, provider: EmbeddingProvider, *, provider_key: str, batch: BatchConfig
    ) -> None:
        """Switch to *provider*; the failure count carries over."""
        self.provider = provider
        self.provider_key = provider_key
        self.breaker.config = batch

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._query_executor.shutdown(wait=False, cancel_futures=True)

    def index_concurrency(self) -> int:
        return self.batch.concurrency if self.batch.enabled else EMBEDDING_INDEX_CONCURRENCY

    def query_timeout(self) -> float:
        return QUERY_TIMEOUT_REMOTE if is_remote_provider(self.provider) else QUERY_TIMEOUT_LOCAL

    def batch_timeout(self) -> float:
        return BATCH_TIMEOUT_REMOTE if is_remote_provider(self.provider) else BATCH_TIMEOUT_LOCAL

    # Query

    def embed_query(self, text: str) -> np.ndarray:
        timeout = self.query_timeout()
        logger.debug(f"memory embeddings: query start ({self.provider.id}, {timeout:.0f}s)")
        provider = self.provider
        try:
            vector = call_with_timeout(
                self._query_executor,
                lambda: provider.embed_query(text),
                timeout,
                lambda: EmbeddingTimeoutError(
                    Messages.ERROR_QUERY_TIMEOUT.format(seconds=round(timeout))
                ),
            )
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(redact_secrets(str(exc))) from exc
        return np.asarray(vector, dtype=np.float32).reshape(-1)

    # Chunks

    def embed_chunks(
        self,
        store: IndexStore,
        chunks: Sequence[MemoryChunk],
        *,
        path: str,
        source: str,
    ) -> list[np.ndarray]:
        if self.batch.enabled:
            return self._embed_with_batch(store, chunks, path=path, source=source)
        return self.embed_direct(store, chunks)

    def embed_direct(self, store: IndexStore, chunks: Sequence[MemoryChunk]) -> list[np.ndarray]:
        """Embed *chunks* through ``embed_batch``, one request per unique hash."""

        if not chunks:
            return []
        embeddings, missing = self._split_cached(store, chunks)
        if not missing:
            return embeddings
        unique: dict[str, MemoryChunk] = {}
        for _, chunk in missing:
            unique.setdefault(chunk.hash, chunk)
        fresh: dict[str, np.ndarray] = {}
        for group in build_embedding_batches(list(unique.values())):
            vectors = self.embed_batch_with_retry([chunk.text for chunk in group])
            for chunk, vector in zip(group, vectors):
                fresh[chunk.hash] = vector
        for index, chunk in missing:
            embeddings[index] = fresh.get(chunk.hash, np.empty(0, dtype=np.float32))
        self._store_cache(store, fresh)
        return embeddings

    def embed_batch_with_retry(self, texts: Sequence[str]) -> list[np.ndarray]:
        """Call ``embed_batch`` with a timeout, retrying retryable failures."""

        if not texts:
            return []
        attempt = 0
        provider = self.provider
        while True:
            timeout = self.batch_timeout()
            logger.debug(
                f"memory embeddings: batch start ({provider.id}, {len(texts)} items, {timeout:.0f}s)"
            )
            try:
                matrix = call_with_timeout(
                    self._executor,
                    lambda: provider.embed_batch(list(texts)),
                    timeout,
                    lambda: EmbeddingTimeoutError(
                        Messages.ERROR_BATCH_TIMEOUT.format(seconds=round(timeout))
                    ),
                )
            except Exception as exc:
                if not is_retryable_embedding_error(exc) or attempt >= RETRY_MAX_ATTEMPTS:
                    raise
                delay = backoff_delay(attempt)
                logger.warning(
                    f"memory embeddings: retryable failure ({redact_secrets(str(exc))}); "
                    f"retrying in {delay:.2f}s"
                )
                _sleep(delay)
                attempt += 1
                continue
            return list(as_matrix(matrix))

    def _embed_with_batch(
        self,
        store: IndexStore,
        chunks: Sequence[MemoryChunk],
        *,
        path: str,
        source: str,
    ) -> list[np.ndarray]:
        if not chunks:
            return []
        embeddings, missing = self._split_cached(store, chunks)
        if not missing:
            return embeddings
        provider = self.provider
        requests: list[BatchRequest] = []
        mapping: dict[str, tuple[int, str]] = {}
        for index, chunk in missing:
            custom_id = batch_custom_id(source, path, chunk, index)
            mapping[custom_id] = (index, chunk.hash)
            requests.append(BatchRequest(custom_id=custom_id, text=chunk.text))

        def run() -> list[np.ndarray]:
            if not supports_batch(provider):
                raise BatchUnavailableError(
                    Messages.ERROR_BATCH_NOT_AVAILABLE.format(provider=provider.id)
                )
            logger.debug(
                f"memory embeddings: {provider.id} batch job for {path} ({len(requests)} requests)"
            )
            results = provider.batch_runner().run(requests, self.batch.options())
            fresh: dict[str, np.ndarray] = {}
            for custom_id, (index, text_hash) in mapping.items():
                vector = np.asarray(
                    results.get(custom_id, np.empty(0, dtype=np.float32)), dtype=np.float32
                )
                embeddings[index] = vector
                fresh[text_hash] = vector
            self._store_cache(store, fresh)
            return embeddings

        return self.run_batch_with_fallback(
            run, lambda: self.embed_direct(store, chunks), provider=provider.id
        )

    def run_batch_with_fallback(
        self,
        run: Callable[[], T],
        fallback: Callable[[], T],
        *,
        provider: str,
    ) -> T:
        """Run a batch job; on failure feed the breaker and use *fallback*."""

        if not self.batch.enabled:
            return fallback()
        try:
            result = self._run_batch_with_timeout_retry(run, provider=provider)
        except Exception as exc:
            message = redact_secrets(str(exc))
            attempts = getattr(exc, "attempts", None) or 1
            failure = self.breaker.record_failure(
                provider=provider,
                message=message,
                attempts=attempts,
                force=isinstance(exc, BatchUnavailableError),
            )
            suffix = "disabling batch" if failure.disabled else "keeping batch enabled"
            logger.warning(
                f"memory embeddings: {provider} batch failed ({failure.count}/{self.breaker.limit}); "
                f"{suffix}; falling back to non-batch embeddings: {message}"
            )
            return fallback()
        self.breaker.reset()
        return result

    def _run_batch_with_timeout_retry(self, run: Callable[[], T], *, provider: str) -> T:
        try:
            return run()
        except Exception as exc:
            if not _TIMEOUT_RE.search(str(exc)):
                raise
            logger.warning(f"memory embeddings: {provider} batch timed out; retrying once")
            try:
                return run()
            except Exception as retry_exc:
                retry_exc.attempts = 2
                raise

    # Cache

    def _split_cached(
        self, store: IndexStore, chunks: Sequence[MemoryChunk]
    ) -> tuple[list[np.ndarray], list[tuple[int, MemoryChunk]]]:
        cached: dict[str, np.ndarray] = {}
        if self.cache_enabled:
            cached = store.load_cached_embeddings(
                provider=self.provider.id,
                model=self.provider.model,
                provider_key=self.provider_key,
                hashes=[chunk.hash for chunk in chunks],
            )
        embeddings: list[np.ndarray] = [np.empty(0, dtype=np.float32)] * len(chunks)
        missing: list[tuple[int, MemoryChunk]] = []
        for index, chunk in enumerate(chunks):
            hit = cached.get(chunk.hash)
            if hit is not None and hit.size:
                embeddings[index] = hit
            else:
                missing.append((index, chunk))
        return embeddings, missing

    def _store_cache(self, store: IndexStore, fresh: dict[str, np.ndarray]) -> None:
        if not self.cache_enabled or not fresh:
            return
        store.store_cached_embeddings(
            provider=self.provider.id,
            model=self.provider.model,
            provider_key=self.provider_key,
            embeddings=fresh,
        )
