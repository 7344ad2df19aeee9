"""Local embedding provider for memindex."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import numpy as np

from ..config import local_model_dir
from ..errors import EmbeddingError
from ..text import Messages


def _load_fastembed():
    try:
        from fastembed import TextEmbedding
    except ImportError as exc:
        raise EmbeddingError(Messages.ERROR_LOCAL_DEP_MISSING) from exc
    return TextEmbedding


def resolve_fastembed_cache_dir(cache_dir: str | None = None, *, create: bool = True) -> Path:
    """Return the cache directory used for local models."""
    resolved = Path(cache_dir).expanduser() if cache_dir else local_model_dir()
    if create:
        resolved.mkdir(parents=True, exist_ok=True)
    return resolved


_CUSTOM_TEXT_MODELS: dict[str, dict[str, object]] = {
    "intfloat/multilingual-e5-small": {
        "model": "intfloat/multilingual-e5-small",
        "pooling": "MEAN",
        "normalization": True,
        "hf": "intfloat/multilingual-e5-small",
        "dim": 384,
        "model_file": "onnx/model.onnx",
        "description": "Multilingual E5 model for cross-lingual retrieval",
        "license": "MIT",
        "size_in_gb": 0.12,
    },
}


def _is_unsupported_model_error(exc: Exception) -> bool:
    return isinstance(exc, ValueError) and "not supported in TextEmbedding" in str(exc)


def _register_custom_model(text_embedding_cls, model_name: str) -> bool:
    spec = _CUSTOM_TEXT_MODELS.get(model_name.strip().lower())
    if not spec:
        return False
    from fastembed.common.model_description import ModelSource, PoolingType

    try:
        text_embedding_cls.add_custom_model(
            model=spec["model"],
            pooling=getattr(PoolingType, str(spec["pooling"])),
            normalization=bool(spec["normalization"]),
            sources=ModelSource(hf=str(spec["hf"])),
            dim=int(spec["dim"]),
            model_file=str(spec["model_file"]),
            description=str(spec["description"]),
            license=str(spec["license"]),
            size_in_gb=float(spec["size_in_gb"]),
        )
    except ValueError as exc:
        if "already registered" not in str(exc).lower():
            raise
    return True


class LocalEmbeddingProvider:
    """Embedding provider that runs a lightweight local model via fastembed."""

    id = "local"

    def __init__(
        self,
        *,
        model_name: str,
        cache_dir: str | None = None,
        cuda: bool = False,
    ) -> None:
        self.model = model_name
        self.cuda = bool(cuda)
        TextEmbedding = _load_fastembed()
        resolved_cache = str(resolve_fastembed_cache_dir(cache_dir))
        try:
            self._model = TextEmbedding(
                model_name=model_name,
                cache_dir=resolved_cache,
                cuda=self.cuda,
            )
        except Exception as exc:
            if not (
                _is_unsupported_model_error(exc)
                and _register_custom_model(TextEmbedding, model_name)
            ):
                raise EmbeddingError(
                    Messages.ERROR_LOCAL_MODEL_LOAD.format(model=model_name, reason=str(exc))
                ) from exc
            try:
                self._model = TextEmbedding(
                    model_name=model_name,
                    cache_dir=resolved_cache,
                    cuda=self.cuda,
                )
            except Exception as retry_exc:
                raise EmbeddingError(
                    Messages.ERROR_LOCAL_MODEL_LOAD.format(
                        model=model_name, reason=str(retry_exc)
                    )
                ) from retry_exc

    def embed_query(self, text: str) -> np.ndarray:
        try:
            embedding = next(iter(self._model.query_embed([text])))
        except Exception as exc:
            raise EmbeddingError(
                Messages.ERROR_LOCAL_MODEL_EMBED.format(reason=str(exc))
            ) from exc
        return _normalize(np.asarray(embedding, dtype=np.float32))

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, 0), dtype=np.float32)
        try:
            vectors = [
                _normalize(np.asarray(embedding, dtype=np.float32))
                for embedding in self._model.embed(list(texts))
            ]
        except Exception as exc:
            raise EmbeddingError(
                Messages.ERROR_LOCAL_MODEL_EMBED.format(reason=str(exc))
            ) from exc
        if not vectors:
            raise EmbeddingError(Messages.ERROR_NO_EMBEDDINGS)
        return np.vstack(vectors)


def _normalize(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm <= 0 or not np.isfinite(norm):
        return vector
    return vector / norm
