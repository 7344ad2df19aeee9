"""SQLite connection, schema and embedding cache helpers for memindex."""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import numpy as np
from loguru import logger

META_KEY = "memory_index_meta_v1"
FTS_TABLE = "chunks_fts"
EMBEDDING_CACHE_TABLE = "embedding_cache"
CACHE_LOOKUP_BATCH = 400


@dataclass(slots=True)
class FtsState:
    enabled: bool
    available: bool = False
    error: str | None = None


def _chunk_values(values: Sequence[object], size: int) -> Iterable[Sequence[object]]:
    for idx in range(0, len(values), size):
        yield values[idx : idx + size]


def connect(db_path: Path) -> sqlite3.Connection:
    """Open *db_path* for shared use across indexing threads."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA temp_store = MEMORY;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE name = ?",
        (table,),
    ).fetchone()
    return row is not None


def ensure_schema(conn: sqlite3.Connection, fts: FtsState) -> None:
    """Create the index tables; FTS5 availability is recorded in *fts*."""

    conn.executescript(
        f"""
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS files (
            path TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'memory',
            hash TEXT NOT NULL,
            mtime REAL NOT NULL,
            size INTEGER NOT NULL,
            PRIMARY KEY (path, source)
        );

        CREATE TABLE IF NOT EXISTS chunks (
            id TEXT PRIMARY KEY,
            path TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'memory',
            start_line INTEGER NOT NULL,
            end_line INTEGER NOT NULL,
            hash TEXT NOT NULL,
            model TEXT NOT NULL,
            text TEXT NOT NULL,
            embedding BLOB,
            updated_at INTEGER NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_path_source ON chunks(path, source);
        CREATE INDEX IF NOT EXISTS idx_chunks_model ON chunks(model);

        CREATE TABLE IF NOT EXISTS {EMBEDDING_CACHE_TABLE} (
            provider TEXT NOT NULL,
            model TEXT NOT NULL,
            provider_key TEXT NOT NULL,
            hash TEXT NOT NULL,
            embedding BLOB NOT NULL,
            dims INTEGER,
            updated_at INTEGER NOT NULL,
            PRIMARY KEY (provider, model, provider_key, hash)
        );

        CREATE INDEX IF NOT EXISTS idx_embedding_cache_updated_at
            ON {EMBEDDING_CACHE_TABLE}(updated_at);
        """
    )
    if not fts.enabled:
        return
    try:
        conn.execute(
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5(
                text,
                id UNINDEXED,
                path UNINDEXED,
                source UNINDEXED,
                model UNINDEXED,
                start_line UNINDEXED,
                end_line UNINDEXED
            )
            """
        )
        fts.available = True
        fts.error = None
    except sqlite3.Error as exc:
        fts.available = False
        fts.error = str(exc)
        logger.warning(f"memory index: full-text search unavailable: {exc}")
    conn.commit()


def vector_to_blob(vector: Sequence[float] | np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def blob_to_vector(blob: bytes | None) -> np.ndarray:
    if not blob:
        return np.empty(0, dtype=np.float32)
    return np.frombuffer(blob, dtype=np.float32)


def load_embedding_cache(
    conn: sqlite3.Connection,
    *,
    provider: str,
    model: str,
    provider_key: str,
    hashes: Sequence[str],
) -> dict[str, np.ndarray]:
    """Load cached embeddings keyed by content hash."""

    unique_hashes = list(dict.fromkeys(value for value in hashes if value))
    if not unique_hashes:
        return {}
    results: dict[str, np.ndarray] = {}
    for chunk in _chunk_values(unique_hashes, CACHE_LOOKUP_BATCH):
        placeholders = ", ".join("?" for _ in chunk)
        rows = conn.execute(
            f"""
            SELECT hash, embedding
            FROM {EMBEDDING_CACHE_TABLE}
            WHERE provider = ? AND model = ? AND provider_key = ?
              AND hash IN ({placeholders})
            """,
            (provider, model, provider_key, *chunk),
        ).fetchall()
        for row in rows:
            vector = blob_to_vector(row["embedding"])
            if vector.size:
                results[row["hash"]] = vector
    return results


def store_embedding_cache(
    conn: sqlite3.Connection,
    *,
    provider: str,
    model: str,
    provider_key: str,
    embeddings: Mapping[str, np.ndarray],
) -> None:
    """Upsert embedding vectors keyed by content hash."""

    rows = []
    updated_at = int(time.time() * 1000)
    for text_hash, vector in embeddings.items():
        array = np.asarray(vector, dtype=np.float32)
        if not text_hash or array.size == 0:
            continue
        rows.append(
            (provider, model, provider_key, text_hash, array.tobytes(), int(array.size), updated_at)
        )
    if not rows:
        return
    with conn:
        conn.executemany(
            f"""
            INSERT INTO {EMBEDDING_CACHE_TABLE} (
                provider, model, provider_key, hash, embedding, dims, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(provider, model, provider_key, hash) DO UPDATE SET
                embedding = excluded.embedding,
                dims = excluded.dims,
                updated_at = excluded.updated_at
            """,
            rows,
        )


def count_embedding_cache(conn: sqlite3.Connection) -> int:
    row = conn.execute(f"SELECT COUNT(*) AS total FROM {EMBEDDING_CACHE_TABLE}").fetchone()
    return int(row["total"] if row is not None else 0)


def prune_embedding_cache(conn: sqlite3.Connection, max_entries: int | None) -> int:
    """Delete the oldest entries beyond *max_entries*; returns rows removed."""

    if not max_entries or max_entries <= 0:
        return 0
    overflow = count_embedding_cache(conn) - max_entries
    if overflow <= 0:
        return 0
    with conn:
        conn.execute(
            f"""
            DELETE FROM {EMBEDDING_CACHE_TABLE}
            WHERE rowid IN (
                SELECT rowid FROM {EMBEDDING_CACHE_TABLE}
                ORDER BY updated_at ASC
                LIMIT ?
            )
            """,
            (overflow,),
        )
    return overflow


def seed_embedding_cache(target: sqlite3.Connection, source: sqlite3.Connection) -> int:
    """Copy every cache entry from *source* into *target*."""

    rows = source.execute(
        f"""
        SELECT provider, model, provider_key, hash, embedding, dims, updated_at
        FROM {EMBEDDING_CACHE_TABLE}
        """
    ).fetchall()
    if not rows:
        return 0
    with target:
        target.executemany(
            f"""
            INSERT INTO {EMBEDDING_CACHE_TABLE} (
                provider, model, provider_key, hash, embedding, dims, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(provider, model, provider_key, hash) DO UPDATE SET
                embedding = excluded.embedding,
                dims = excluded.dims,
                updated_at = excluded.updated_at
            """,
            [tuple(row) for row in rows],
        )
    return len(rows)
