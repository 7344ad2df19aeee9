"""Index rows (files, chunks, FTS, vectors, meta) over one SQLite handle."""

from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Mapping, Sequence

import numpy as np
from loguru import logger

from . import cache as cache_store
from .cache import FTS_TABLE, META_KEY, FtsState
from .chunking import MemoryChunk
from .utils import hash_text
from .vector import (
    VECTOR_TABLE,
    VectorHit,
    VectorState,
    drop_vector_table,
    ensure_vector_ready,
    search_vector_brute_force,
    search_vector_native,
    source_filter,
)


@dataclass(slots=True)
class IndexMeta:
    provider: str
    model: str
    provider_key: str
    chunk_tokens: int
    chunk_overlap: int
    vector_dims: int | None = None

    @classmethod
    def from_json(cls, raw: str | None) -> "IndexMeta | None":
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return cls(
                provider=str(data["provider"]),
                model=str(data["model"]),
                provider_key=str(data["providerKey"]),
                chunk_tokens=int(data["chunkTokens"]),
                chunk_overlap=int(data["chunkOverlap"]),
                vector_dims=int(data["vectorDims"]) if data.get("vectorDims") else None,
            )
        except (ValueError, KeyError, TypeError):
            return None

    def to_json(self) -> str:
        data: dict[str, object] = {
            "provider": self.provider,
            "model": self.model,
            "providerKey": self.provider_key,
            "chunkTokens": self.chunk_tokens,
            "chunkOverlap": self.chunk_overlap,
        }
        if self.vector_dims:
            data["vectorDims"] = self.vector_dims
        return json.dumps(data)


@dataclass(slots=True)
class FileRecord:
    path: str
    source: str
    hash: str
    mtime: float
    size: int


def chunk_id(source: str, path: str, chunk: MemoryChunk, model: str) -> str:
    """Deterministic row id so reindexing identical content is an upsert."""
    return hash_text(
        f"{source}:{path}:{chunk.start_line}:{chunk.end_line}:{chunk.hash}:{model}"
    )


class IndexStore:
    """Owns the SQLite connection for one index file.

    Every statement runs under a re-entrant lock so indexing workers on
    different threads can share the handle.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        fts_enabled: bool,
        vector_enabled: bool,
        extension_path: str | None = None,
    ) -> None:
        self.db_path = db_path
        self.lock = RLock()
        self.fts = FtsState(enabled=fts_enabled)
        self.vector = VectorState(enabled=vector_enabled, extension_path=extension_path)
        self.conn = cache_store.connect(db_path)
        self.closed = False
        with self.lock:
            cache_store.ensure_schema(self.conn, self.fts)
        meta = self.read_meta()
        if meta is not None and meta.vector_dims:
            self.vector.dims = meta.vector_dims

    def close(self) -> None:
        with self.lock:
            if self.closed:
                return
            self.closed = True
            self.conn.close()

    def ensure_vector_ready(self, dims: int | None = None) -> bool:
        with self.lock:
            return ensure_vector_ready(self.conn, self.vector, dims)

    # Meta

    def read_meta(self) -> IndexMeta | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT value FROM meta WHERE key = ?", (META_KEY,)
            ).fetchone()
        return IndexMeta.from_json(row["value"] if row else None)

    def write_meta(self, meta: IndexMeta) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (META_KEY, meta.to_json()),
            )

    # Files and chunks

    def file_hash(self, path: str, source: str) -> str | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT hash FROM files WHERE path = ? AND source = ?", (path, source)
            ).fetchone()
        return row["hash"] if row else None

    def file_paths(self, source: str) -> list[str]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT path FROM files WHERE source = ?", (source,)
            ).fetchall()
        return [row["path"] for row in rows]

    def replace_file(
        self,
        record: FileRecord,
        chunks: Sequence[MemoryChunk],
        embeddings: Sequence[np.ndarray],
        *,
        model: str,
        vector_ready: bool,
    ) -> None:
        """Swap every row of one file for *chunks* in a single transaction."""

        now = int(time.time() * 1000)
        source = record.source
        with self.lock, self.conn:
            self._delete_file_rows(record.path, source, model, vector_ready=vector_ready)
            seen: set[str] = set()
            for chunk, embedding in zip(chunks, embeddings):
                row_id = chunk_id(source, record.path, chunk, model)
                if row_id in seen:
                    continue
                seen.add(row_id)
                vector = np.asarray(embedding, dtype=np.float32)
                self.conn.execute(
                    """
                    INSERT INTO chunks (
                        id, path, source, start_line, end_line, hash, model, text,
                        embedding, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        hash = excluded.hash,
                        model = excluded.model,
                        text = excluded.text,
                        embedding = excluded.embedding,
                        updated_at = excluded.updated_at
                    """,
                    (
                        row_id,
                        record.path,
                        source,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.hash,
                        model,
                        chunk.text,
                        vector.tobytes() if vector.size else None,
                        now,
                    ),
                )
                if vector_ready and vector.size:
                    self.conn.execute(f"DELETE FROM {VECTOR_TABLE} WHERE id = ?", (row_id,))
                    self.conn.execute(
                        f"INSERT INTO {VECTOR_TABLE} (id, embedding) VALUES (?, ?)",
                        (row_id, vector.tobytes()),
                    )
                if self.fts.available:
                    self.conn.execute(
                        f"""
                        INSERT INTO {FTS_TABLE} (
                            text, id, path, source, model, start_line, end_line
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            chunk.text,
                            row_id,
                            record.path,
                            source,
                            model,
                            chunk.start_line,
                            chunk.end_line,
                        ),
                    )
            self.conn.execute(
                """
                INSERT INTO files (path, source, hash, mtime, size) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(path, source) DO UPDATE SET
                    hash = excluded.hash,
                    mtime = excluded.mtime,
                    size = excluded.size
                """,
                (record.path, source, record.hash, record.mtime, record.size),
            )

    def delete_file(self, path: str, source: str, model: str) -> None:
        with self.lock, self.conn:
            self.conn.execute("DELETE FROM files WHERE path = ? AND source = ?", (path, source))
            self._delete_file_rows(path, source, model, vector_ready=self.vector.available is True)

    def _delete_file_rows(
        self, path: str, source: str, model: str, *, vector_ready: bool
    ) -> None:
        if vector_ready:
            try:
                self.conn.execute(
                    f"""
                    DELETE FROM {VECTOR_TABLE}
                    WHERE id IN (SELECT id FROM chunks WHERE path = ? AND source = ?)
                    """,
                    (path, source),
                )
            except sqlite3.OperationalError as exc:
                logger.debug(f"memory index: vector rows not removed for {path}: {exc}")
        if self.fts.available:
            self.conn.execute(
                f"DELETE FROM {FTS_TABLE} WHERE path = ? AND source = ? AND model = ?",
                (path, source, model),
            )
        self.conn.execute("DELETE FROM chunks WHERE path = ? AND source = ?", (path, source))

    def reset(self) -> None:
        """Drop every indexed row and the vector table; the cache survives."""

        with self.lock, self.conn:
            self.conn.execute("DELETE FROM files")
            self.conn.execute("DELETE FROM chunks")
            if self.fts.available:
                self.conn.execute(f"DELETE FROM {FTS_TABLE}")
            drop_vector_table(self.conn)
        self.vector.dims = None

    def chunk_rows(self, path: str, source: str) -> list[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(
                """
                SELECT id, start_line, end_line, hash, model, text
                FROM chunks WHERE path = ? AND source = ?
                ORDER BY start_line, id
                """,
                (path, source),
            ).fetchall()

    # Counts

    def counts(self, sources: Sequence[str]) -> tuple[int, int]:
        clause, params = source_filter(sources)
        with self.lock:
            files = self.conn.execute(
                f"SELECT COUNT(*) AS c FROM files WHERE 1=1{clause}", params
            ).fetchone()["c"]
            chunks = self.conn.execute(
                f"SELECT COUNT(*) AS c FROM chunks WHERE 1=1{clause}", params
            ).fetchone()["c"]
        return int(files), int(chunks)

    def source_counts(self, sources: Sequence[str]) -> list[dict[str, object]]:
        clause, params = source_filter(sources)
        with self.lock:
            file_rows = self.conn.execute(
                f"SELECT source, COUNT(*) AS c FROM files WHERE 1=1{clause} GROUP BY source",
                params,
            ).fetchall()
            chunk_rows = self.conn.execute(
                f"SELECT source, COUNT(*) AS c FROM chunks WHERE 1=1{clause} GROUP BY source",
                params,
            ).fetchall()
        files = {row["source"]: int(row["c"]) for row in file_rows}
        chunks = {row["source"]: int(row["c"]) for row in chunk_rows}
        return [
            {"source": source, "files": files.get(source, 0), "chunks": chunks.get(source, 0)}
            for source in sources
        ]

    # Embedding cache

    def load_cached_embeddings(
        self, *, provider: str, model: str, provider_key: str, hashes: Sequence[str]
    ) -> dict[str, np.ndarray]:
        with self.lock:
            return cache_store.load_embedding_cache(
                self.conn,
                provider=provider,
                model=model,
                provider_key=provider_key,
                hashes=hashes,
            )

    def store_cached_embeddings(
        self,
        *,
        provider: str,
        model: str,
        provider_key: str,
        embeddings: Mapping[str, np.ndarray],
    ) -> None:
        with self.lock:
            cache_store.store_embedding_cache(
                self.conn,
                provider=provider,
                model=model,
                provider_key=provider_key,
                embeddings=embeddings,
            )

    def cache_entries(self) -> int:
        with self.lock:
            return cache_store.count_embedding_cache(self.conn)

    def prune_cache(self, max_entries: int | None) -> int:
        with self.lock:
            return cache_store.prune_embedding_cache(self.conn, max_entries)

    def seed_cache_from(self, other: "IndexStore") -> int:
        with self.lock, other.lock:
            return cache_store.seed_embedding_cache(self.conn, other.conn)

    # Search

    def search_vector(
        self,
        query_vector: np.ndarray,
        *,
        model: str,
        sources: Sequence[str],
        limit: int,
    ) -> list[VectorHit]:
        with self.lock:
            ready = self.ensure_vector_ready()
            if ready and self.vector.dims:
                return search_vector_native(
                    self.conn, query_vector, model=model, sources=sources, limit=limit
                )
            return search_vector_brute_force(
                self.conn, query_vector, model=model, sources=sources, limit=limit
            )

    def execute(self, sql: str, params: Sequence[object] = ()) -> list[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(sql, tuple(params)).fetchall()
