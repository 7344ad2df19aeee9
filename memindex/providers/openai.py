"""OpenAI-backed embedding provider and batch runner for memindex."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
import json
import time
from typing import Iterator, Mapping, Sequence

import numpy as np
from dotenv import load_dotenv
from loguru import logger
from openai import OpenAI

from ..embeddings import BatchOptions, BatchRequest, as_matrix, wrap_provider_error
from ..errors import BatchUnavailableError, EmbeddingError, EmbeddingTimeoutError
from ..text import Messages
from ..utils import run_with_concurrency

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENAI_BATCH_ENDPOINT = "/v1/embeddings"
OPENAI_BATCH_COMPLETION_WINDOW = "24h"
OPENAI_BATCH_MAX_REQUESTS = 50_000
_TERMINAL_BATCH_STATES = {"completed", "failed", "expired", "cancelled"}


class OpenAIEmbeddingProvider:
    """Embedding provider that calls OpenAI's embeddings API."""

    id = "openai"

    def __init__(
        self,
        *,
        model_name: str,
        api_key: str | None,
        base_url: str | None = None,
        headers: Mapping[str, str] | None = None,
        chunk_size: int | None = None,
        concurrency: int = 1,
    ) -> None:
        load_dotenv()
        self.model = model_name
        self.chunk_size = chunk_size if chunk_size and chunk_size > 0 else None
        self.concurrency = max(int(concurrency or 1), 1)
        self.api_key = api_key
        if not self.api_key:
            raise EmbeddingError(Messages.ERROR_API_KEY_MISSING)
        self.base_url = (base_url or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        self.headers = dict(headers or {})
        client_kwargs: dict[str, object] = {
            "api_key": self.api_key,
            "base_url": self.base_url,
        }
        if self.headers:
            client_kwargs["default_headers"] = self.headers
        self._client = OpenAI(**client_kwargs)
        self._executor: ThreadPoolExecutor | None = None

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        batches = list(_chunk(texts, self.chunk_size))
        if self.concurrency > 1 and len(batches) > 1:
            vectors_by_batch: list[list[np.ndarray] | None] = [None] * len(batches)
            executor = self._executor
            if executor is None:
                executor = ThreadPoolExecutor(max_workers=self.concurrency)
                self._executor = executor
            future_map = {
                executor.submit(self._embed_batch, batch): idx
                for idx, batch in enumerate(batches)
            }
            for future in as_completed(future_map):
                vectors_by_batch[future_map[future]] = future.result()
            vectors = [vec for batch in vectors_by_batch if batch for vec in batch]
        else:
            vectors = []
            for batch in batches:
                vectors.extend(self._embed_batch(batch))
        if len(vectors) != len(texts):
            raise EmbeddingError(
                Messages.ERROR_EMBEDDING_COUNT.format(got=len(vectors), expected=len(texts))
            )
        return np.vstack(vectors)

    def batch_runner(self) -> "OpenAIBatchRunner":
        return OpenAIBatchRunner(self._client, model=self.model)

    def _embed_batch(self, batch: Sequence[str]) -> list[np.ndarray]:
        try:
            response = self._client.embeddings.create(
                model=self.model,
                input=list(batch),
            )
        except Exception as exc:  # pragma: no cover - API client variations
            raise wrap_provider_error(Messages.ERROR_OPENAI_PREFIX, exc) from exc
        data = getattr(response, "data", None) or []
        if not data:
            raise EmbeddingError(Messages.ERROR_NO_EMBEDDINGS)
        ordered = sorted(data, key=lambda item: getattr(item, "index", 0) or 0)
        return [
            np.asarray(getattr(item, "embedding", None) or [], dtype=np.float32)
            for item in ordered
        ]


class OpenAIBatchRunner:
    """Submits embedding requests through the OpenAI Batch API."""

    def __init__(self, client: OpenAI, *, model: str) -> None:
        self._client = client
        self.model = model

    def run(
        self,
        requests: Sequence[BatchRequest],
        options: BatchOptions,
    ) -> dict[str, np.ndarray]:
        if not requests:
            return {}
        groups = [
            list(requests[idx : idx + OPENAI_BATCH_MAX_REQUESTS])
            for idx in range(0, len(requests), OPENAI_BATCH_MAX_REQUESTS)
        ]
        results: dict[str, np.ndarray] = {}
        tasks = [lambda group=group: self._run_group(group, options) for group in groups]
        for group_result in run_with_concurrency(tasks, options.concurrency):
            results.update(group_result or {})
        return results

    def _run_group(
        self,
        group: Sequence[BatchRequest],
        options: BatchOptions,
    ) -> dict[str, np.ndarray]:
        lines = [
            json.dumps(
                {
                    "custom_id": request.custom_id,
                    "method": "POST",
                    "url": OPENAI_BATCH_ENDPOINT,
                    "body": {"model": self.model, "input": request.text},
                },
                ensure_ascii=False,
            )
            for request in group
        ]
        payload = ("\n".join(lines) + "\n").encode("utf-8")
        try:
            upload = self._client.files.create(
                file=("memindex-embeddings.jsonl", payload),
                purpose="batch",
            )
            batch = self._client.batches.create(
                input_file_id=upload.id,
                endpoint=OPENAI_BATCH_ENDPOINT,
                completion_window=OPENAI_BATCH_COMPLETION_WINDOW,
                metadata={"source": "memindex"},
            )
        except Exception as exc:  # pragma: no cover - API client variations
            error = wrap_provider_error(Messages.ERROR_OPENAI_PREFIX, exc)
            if error.status_code == 404:
                raise BatchUnavailableError(
                    Messages.ERROR_BATCH_NOT_AVAILABLE.format(provider="openai"),
                    status_code=404,
                ) from exc
            raise error from exc
        logger.debug(f"memory embeddings: openai batch {batch.id} created ({len(group)} requests)")
        batch = self._wait_for_batch(batch, options)
        return self._read_output(batch, group)

    def _wait_for_batch(self, batch, options: BatchOptions):
        deadline = time.monotonic() + options.timeout_ms / 1000
        while batch.status not in _TERMINAL_BATCH_STATES:
            if not options.wait:
                raise EmbeddingError(
                    Messages.ERROR_BATCH_PENDING.format(batch_id=batch.id, status=batch.status)
                )
            if time.monotonic() >= deadline:
                raise EmbeddingTimeoutError(
                    Messages.ERROR_BATCH_TIMEOUT.format(seconds=round(options.timeout_ms / 1000))
                )
            time.sleep(max(options.poll_interval_ms, 0) / 1000)
            try:
                batch = self._client.batches.retrieve(batch.id)
            except Exception as exc:  # pragma: no cover - API client variations
                raise wrap_provider_error(Messages.ERROR_OPENAI_PREFIX, exc) from exc
        if batch.status != "completed" or not batch.output_file_id:
            raise EmbeddingError(
                Messages.ERROR_BATCH_FAILED.format(batch_id=batch.id, status=batch.status)
            )
        return batch

    def _read_output(self, batch, group: Sequence[BatchRequest]) -> dict[str, np.ndarray]:
        expected = {request.custom_id for request in group}
        try:
            content = self._client.files.content(batch.output_file_id).text
        except Exception as exc:  # pragma: no cover - API client variations
            raise wrap_provider_error(Messages.ERROR_OPENAI_PREFIX, exc) from exc
        results: dict[str, np.ndarray] = {}
        for line in content.splitlines():
            if not line.strip():
                continue
            record = json.loads(line)
            custom_id = record.get("custom_id")
            if custom_id not in expected:
                continue
            error = record.get("error")
            response = record.get("response") or {}
            status_code = response.get("status_code")
            if error or (status_code is not None and status_code >= 400):
                reason = (error or {}).get("message") or f"status {status_code}"
                raise EmbeddingError(
                    Messages.ERROR_BATCH_ITEM.format(custom_id=custom_id, reason=reason),
                    status_code=status_code,
                )
            data = (response.get("body") or {}).get("data") or []
            if not data:
                continue
            results[custom_id] = as_matrix(data[0].get("embedding") or [])[0]
        missing = expected.difference(results)
        if missing:
            raise EmbeddingError(
                Messages.ERROR_BATCH_ITEM.format(
                    custom_id=sorted(missing)[0], reason="missing from batch output"
                )
            )
        return results


def _chunk(items: Sequence[str], size: int | None) -> Iterator[Sequence[str]]:
    if size is None or size <= 0:
        yield items
        return
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]
