"""Gemini-backed embedding provider for memindex."""

from __future__ import annotations

from typing import Iterator, Mapping, Sequence

import numpy as np
from dotenv import load_dotenv
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from ..config import DEFAULT_GEMINI_MODEL
from ..embeddings import wrap_provider_error
from ..errors import EmbeddingError
from ..text import Messages

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
# Gemini's embed_content accepts at most 100 inputs per request.
_GEMINI_MAX_INPUTS = 100


class GeminiEmbeddingProvider:
    """Embedding provider that calls the Gemini API via google-genai."""

    id = "gemini"

    def __init__(
        self,
        *,
        model_name: str = DEFAULT_GEMINI_MODEL,
        api_key: str | None = None,
        base_url: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        load_dotenv()
        self.model = model_name
        self.api_key = api_key
        if not self.api_key or self.api_key.strip().lower() == "your_api_key_here":
            raise EmbeddingError(Messages.ERROR_API_KEY_MISSING)
        self.base_url = (base_url or DEFAULT_GEMINI_BASE_URL).rstrip("/")
        self.headers = dict(headers or {})
        client_kwargs: dict[str, object] = {"api_key": self.api_key}
        if base_url or self.headers:
            client_kwargs["http_options"] = genai_types.HttpOptions(
                base_url=base_url or None,
                headers=self.headers or None,
            )
        self._client = genai.Client(**client_kwargs)

    def embed_query(self, text: str) -> np.ndarray:
        return self._embed([text], task_type="RETRIEVAL_QUERY")[0]

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        vectors: list[np.ndarray] = []
        for batch in _chunk(texts, _GEMINI_MAX_INPUTS):
            vectors.extend(self._embed(list(batch), task_type="RETRIEVAL_DOCUMENT"))
        if len(vectors) != len(texts):
            raise EmbeddingError(
                Messages.ERROR_EMBEDDING_COUNT.format(got=len(vectors), expected=len(texts))
            )
        return np.vstack(vectors)

    def _embed(self, batch: list[str], *, task_type: str) -> list[np.ndarray]:
        try:
            response = self._client.models.embed_content(
                model=self.model,
                contents=batch,
                config=genai_types.EmbedContentConfig(task_type=task_type),
            )
        except genai_errors.APIError as exc:
            raise _format_genai_error(exc) from exc
        embeddings = getattr(response, "embeddings", None)
        if not embeddings:
            raise EmbeddingError(Messages.ERROR_NO_EMBEDDINGS)
        vectors: list[np.ndarray] = []
        for embedding in embeddings:
            values = getattr(embedding, "values", None) or getattr(embedding, "value", None)
            vectors.append(np.asarray(values or [], dtype=np.float32))
        return vectors


def _chunk(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


def _format_genai_error(exc: genai_errors.APIError) -> EmbeddingError:
    message = getattr(exc, "message", None) or str(exc)
    if "API key" in message:
        return EmbeddingError(
            f"{Messages.ERROR_GENAI_PREFIX}{Messages.ERROR_API_KEY_INVALID}",
            status_code=getattr(exc, "code", None),
        )
    return wrap_provider_error(Messages.ERROR_GENAI_PREFIX, exc)
