"""Vector index over sqlite-vec with a brute-force cosine fallback."""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from loguru import logger
from sklearn.metrics.pairwise import cosine_similarity

from .cache import blob_to_vector, vector_to_blob
from .errors import MemoryIndexError
from .text import Messages
from .utils import call_with_timeout

VECTOR_TABLE = "chunks_vec"
VECTOR_LOAD_TIMEOUT = 30.0


@dataclass(slots=True)
class VectorState:
    """Per-manager availability of the native vector index."""

    enabled: bool
    extension_path: str | None = None
    available: bool | None = None
    load_error: str | None = None
    dims: int | None = None


@dataclass(slots=True)
class VectorHit:
    id: str
    path: str
    source: str
    start_line: int
    end_line: int
    text: str
    score: float


def load_vector_extension(conn: sqlite3.Connection, extension_path: str | None) -> None:
    """Load sqlite-vec into *conn*, from *extension_path* when given."""

    conn.enable_load_extension(True)
    try:
        if extension_path:
            conn.load_extension(extension_path)
        else:
            import sqlite_vec

            sqlite_vec.load(conn)
    finally:
        conn.enable_load_extension(False)


def ensure_vector_ready(
    conn: sqlite3.Connection,
    state: VectorState,
    dims: int | None = None,
    *,
    timeout: float = VECTOR_LOAD_TIMEOUT,
) -> bool:
    """Load the extension once per state and size the table to *dims*.

    A failed or timed-out load leaves ``state.available`` False for good.
    """

    if not state.enabled:
        return False
    if state.available is None:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="memindex-vec")
        try:
            call_with_timeout(
                executor,
                lambda: load_vector_extension(conn, state.extension_path),
                timeout,
                lambda: MemoryIndexError(
                    Messages.ERROR_VECTOR_TIMEOUT.format(seconds=round(timeout))
                ),
            )
            state.available = True
            state.load_error = None
        except Exception as exc:
            state.available = False
            state.load_error = str(exc) or Messages.ERROR_VECTOR_UNKNOWN
            logger.warning(f"memory index: sqlite-vec unavailable: {state.load_error}")
        finally:
            executor.shutdown(wait=False)
    if not state.available:
        return False
    if dims:
        ensure_vector_table(conn, state, dims)
    return True


def ensure_vector_table(conn: sqlite3.Connection, state: VectorState, dims: int) -> None:
    if state.dims == dims:
        return
    if state.dims is not None:
        drop_vector_table(conn)
    conn.execute(
        f"""
        CREATE VIRTUAL TABLE IF NOT EXISTS {VECTOR_TABLE} USING vec0(
            id TEXT PRIMARY KEY,
            embedding FLOAT[{dims}]
        )
        """
    )
    state.dims = dims


def drop_vector_table(conn: sqlite3.Connection) -> None:
    try:
        conn.execute(f"DROP TABLE IF EXISTS {VECTOR_TABLE}")
    except sqlite3.Error as exc:
        logger.debug(f"memory index: failed to drop vector table: {exc}")


def source_filter(sources: Sequence[str], alias: str | None = None) -> tuple[str, list[str]]:
    if not sources:
        return "", []
    column = f"{alias}.source" if alias else "source"
    placeholders = ", ".join("?" for _ in sources)
    return f" AND {column} IN ({placeholders})", list(sources)


def search_vector_native(
    conn: sqlite3.Connection,
    query_vector: np.ndarray,
    *,
    model: str,
    sources: Sequence[str],
    limit: int,
) -> list[VectorHit]:
    if limit <= 0:
        return []
    clause, params = source_filter(sources, "c")
    rows = conn.execute(
        f"""
        SELECT c.id, c.path, c.source, c.start_line, c.end_line, c.text,
               vec_distance_cosine(v.embedding, ?) AS dist
        FROM {VECTOR_TABLE} v
        JOIN chunks c ON c.id = v.id
        WHERE c.model = ?{clause}
        ORDER BY dist ASC
        LIMIT ?
        """,
        (vector_to_blob(query_vector), model, *params, limit),
    ).fetchall()
    hits: list[VectorHit] = []
    for row in rows:
        score = 1.0 - float(row["dist"])
        if not np.isfinite(score):
            continue
        hits.append(
            VectorHit(
                id=row["id"],
                path=row["path"],
                source=row["source"],
                start_line=int(row["start_line"]),
                end_line=int(row["end_line"]),
                text=row["text"],
                score=score,
            )
        )
    return hits


def search_vector_brute_force(
    conn: sqlite3.Connection,
    query_vector: np.ndarray,
    *,
    model: str,
    sources: Sequence[str],
    limit: int,
) -> list[VectorHit]:
    """Scan every chunk of *model* and rank by cosine similarity."""

    if limit <= 0:
        return []
    query = np.asarray(query_vector, dtype=np.float32).reshape(1, -1)
    if not np.any(query):
        return []
    clause, params = source_filter(sources)
    rows = conn.execute(
        f"""
        SELECT id, path, source, start_line, end_line, text, embedding
        FROM chunks
        WHERE model = ?{clause}
        """,
        (model, *params),
    ).fetchall()
    candidates = []
    vectors = []
    for row in rows:
        vector = blob_to_vector(row["embedding"])
        if vector.size != query.shape[1] or not np.any(vector):
            continue
        candidates.append(row)
        vectors.append(vector)
    if not candidates:
        return []
    scores = cosine_similarity(query, np.vstack(vectors))[0]
    hits = [
        VectorHit(
            id=row["id"],
            path=row["path"],
            source=row["source"],
            start_line=int(row["start_line"]),
            end_line=int(row["end_line"]),
            text=row["text"],
            score=float(score),
        )
        for row, score in zip(candidates, scores)
        if np.isfinite(score)
    ]
    hits.sort(key=lambda hit: hit.score, reverse=True)
    return hits[:limit]
