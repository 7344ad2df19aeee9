"""Exception types raised by memindex."""

from __future__ import annotations


class MemoryIndexError(RuntimeError):
    """Base error for memory index failures."""


class EmbeddingError(MemoryIndexError):
    """Raised when an embedding provider or batch job fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class EmbeddingTimeoutError(EmbeddingError):
    """Raised when an embedding call exceeds its time budget."""


class BatchUnavailableError(EmbeddingError):
    """Raised when a provider has no usable batch embedding API."""


class PathNotAllowedError(ValueError):
    """Raised when a read targets a path outside the memory area."""
