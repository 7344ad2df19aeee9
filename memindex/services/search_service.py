"""Keyword search and hybrid score fusion for memory queries."""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from typing import Sequence

from loguru import logger

from ..cache import FTS_TABLE
from ..store import IndexStore
from ..vector import VectorHit, source_filter

SNIPPET_MAX_CHARS = 700
MAX_CANDIDATES = 200

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


@dataclass(slots=True)
class SearchResult:
    id: str
    path: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    source: str
    vector_score: float = 0.0
    text_score: float = 0.0


def truncate_snippet(text: str, max_chars: int = SNIPPET_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def candidate_limit(max_results: int, multiplier: float) -> int:
    return min(MAX_CANDIDATES, max(1, int(max_results * multiplier)))


def build_fts_query(raw: str) -> str | None:
    """Quote every word token and AND them together."""

    tokens = _TOKEN_RE.findall(raw)
    if not tokens:
        return None
    return " AND ".join('"' + token.replace('"', "") + '"' for token in tokens)


def bm25_rank_to_score(rank: float | None) -> float:
    """Map an FTS5 ``bm25()`` rank onto ``[0, 1)``.

    FTS5 ranks are negative with better matches lower, so the relevance
    ``-rank`` is squashed by ``r / (1 + r)``.
    """

    if rank is None or rank != rank:
        return 0.0
    relevance = max(0.0, -float(rank))
    return relevance / (1.0 + relevance)


def search_keyword(
    store: IndexStore,
    query: str,
    *,
    model: str,
    sources: Sequence[str],
    limit: int,
) -> list[SearchResult]:
    if limit <= 0 or not store.fts.enabled or not store.fts.available:
        return []
    fts_query = build_fts_query(query)
    if fts_query is None:
        return []
    clause, params = source_filter(sources)
    try:
        rows = store.execute(
            f"""
            SELECT id, path, source, start_line, end_line, text,
                   bm25({FTS_TABLE}) AS rank
            FROM {FTS_TABLE}
            WHERE {FTS_TABLE} MATCH ? AND model = ?{clause}
            ORDER BY rank ASC
            LIMIT ?
            """,
            (fts_query, model, *params, limit),
        )
    except sqlite3.Error as exc:
        logger.debug(f"memory search: keyword query failed: {exc}")
        return []
    results: list[SearchResult] = []
    for row in rows:
        score = bm25_rank_to_score(row["rank"])
        results.append(
            SearchResult(
                id=row["id"],
                path=row["path"],
                start_line=int(row["start_line"]),
                end_line=int(row["end_line"]),
                score=score,
                snippet=truncate_snippet(row["text"]),
                source=row["source"],
                text_score=score,
            )
        )
    return results


def vector_hits_to_results(hits: Sequence[VectorHit]) -> list[SearchResult]:
    return [
        SearchResult(
            id=hit.id,
            path=hit.path,
            start_line=hit.start_line,
            end_line=hit.end_line,
            score=hit.score,
            snippet=truncate_snippet(hit.text),
            source=hit.source,
            vector_score=hit.score,
        )
        for hit in hits
    ]


def merge_hybrid_results(
    vector: Sequence[SearchResult],
    keyword: Sequence[SearchResult],
    *,
    vector_weight: float,
    text_weight: float,
) -> list[SearchResult]:
    """Fuse both lists by chunk id into one list sorted by weighted score.

    An id found on only one side scores zero on the other. Ties keep vector
    order first, then keyword order.
    """

    by_id: dict[str, SearchResult] = {}
    for item in vector:
        by_id[item.id] = SearchResult(
            id=item.id,
            path=item.path,
            start_line=item.start_line,
            end_line=item.end_line,
            score=0.0,
            snippet=item.snippet,
            source=item.source,
            vector_score=item.vector_score,
        )
    for item in keyword:
        existing = by_id.get(item.id)
        if existing is not None:
            existing.text_score = item.text_score
            if item.snippet:
                existing.snippet = item.snippet
            continue
        by_id[item.id] = SearchResult(
            id=item.id,
            path=item.path,
            start_line=item.start_line,
            end_line=item.end_line,
            score=0.0,
            snippet=item.snippet,
            source=item.source,
            text_score=item.text_score,
        )
    merged = list(by_id.values())
    for entry in merged:
        entry.score = vector_weight * entry.vector_score + text_weight * entry.text_score
    merged.sort(key=lambda entry: entry.score, reverse=True)
    return merged


def filter_results(
    results: Sequence[SearchResult], *, min_score: float, max_results: int
) -> list[SearchResult]:
    return [entry for entry in results if entry.score >= min_score][:max_results]
