from __future__ import annotations

import numpy as np
import pytest

from memindex.chunking import MemoryChunk
from memindex.services import search_service
from memindex.services.search_service import SearchResult
from memindex.store import FileRecord, IndexStore
from memindex.utils import hash_text


def _result(result_id: str, *, vector: float = 0.0, text: float = 0.0) -> SearchResult:
    return SearchResult(
        id=result_id,
        path=f"memory/{result_id}.md",
        start_line=1,
        end_line=2,
        score=max(vector, text),
        snippet=f"snippet {result_id}",
        source="memory",
        vector_score=vector,
        text_score=text,
    )


def test_build_fts_query_quotes_and_ands_tokens():
    assert search_service.build_fts_query('deploy "key" rotation!') == '"deploy" AND "key" AND "rotation"'
    assert search_service.build_fts_query("  ?? ") is None


def test_bm25_rank_to_score_is_monotone():
    strong = search_service.bm25_rank_to_score(-4.0)
    weak = search_service.bm25_rank_to_score(-0.5)

    assert 0.0 < weak < strong < 1.0
    assert search_service.bm25_rank_to_score(None) == 0.0
    assert search_service.bm25_rank_to_score(float("nan")) == 0.0
    assert search_service.bm25_rank_to_score(2.0) == 0.0


def test_candidate_limit_caps_and_floors():
    assert search_service.candidate_limit(6, 4) == 24
    assert search_service.candidate_limit(100, 20) == search_service.MAX_CANDIDATES
    assert search_service.candidate_limit(0, 4) == 1


def test_truncate_snippet():
    assert search_service.truncate_snippet("short") == "short"
    assert len(search_service.truncate_snippet("x" * 900)) == search_service.SNIPPET_MAX_CHARS


def test_merge_vector_weight_only_orders_by_vector_score():
    vector = [_result("a", vector=0.9), _result("b", vector=0.4)]
    keyword = [_result("b", text=0.99), _result("c", text=0.8)]

    merged = search_service.merge_hybrid_results(
        vector, keyword, vector_weight=1.0, text_weight=0.0
    )

    assert [entry.id for entry in merged] == ["a", "b", "c"]
    assert merged[0].score == pytest.approx(0.9)
    assert merged[1].text_score == pytest.approx(0.99)
    assert merged[2].score == 0.0


def test_merge_text_weight_only_orders_by_text_score():
    vector = [_result("a", vector=0.9), _result("b", vector=0.4)]
    keyword = [_result("b", text=0.5), _result("c", text=0.8)]

    merged = search_service.merge_hybrid_results(
        vector, keyword, vector_weight=0.0, text_weight=1.0
    )

    assert [entry.id for entry in merged] == ["c", "b", "a"]


def test_merge_blends_scores_and_prefers_keyword_snippet():
    vector = [_result("a", vector=0.8)]
    keyword = [
        SearchResult(
            id="a",
            path="memory/a.md",
            start_line=1,
            end_line=2,
            score=0.5,
            snippet="keyword snippet",
            source="memory",
            text_score=0.5,
        )
    ]

    merged = search_service.merge_hybrid_results(
        vector, keyword, vector_weight=0.7, text_weight=0.3
    )

    assert len(merged) == 1
    assert merged[0].score == pytest.approx(0.7 * 0.8 + 0.3 * 0.5)
    assert merged[0].snippet == "keyword snippet"


def test_filter_results_applies_threshold_then_limit():
    results = [_result("a", vector=0.9), _result("b", vector=0.5), _result("c", vector=0.2)]

    filtered = search_service.filter_results(results, min_score=0.3, max_results=1)
    everything = search_service.filter_results(results, min_score=0.0, max_results=10)

    assert [entry.id for entry in filtered] == ["a"]
    assert len(everything) == 3


def _seed_store(tmp_path) -> IndexStore:
    store = IndexStore(tmp_path / "index.sqlite", fts_enabled=True, vector_enabled=False)
    texts = [
        "The deployment key rotates every 90 days.",
        "Database backups run nightly.",
        "Rotate the key after each incident review.",
    ]
    chunks = [
        MemoryChunk(text=text, start_line=idx + 1, end_line=idx + 1, hash=hash_text(text))
        for idx, text in enumerate(texts)
    ]
    store.replace_file(
        FileRecord(path="MEMORY.md", source="memory", hash="h", mtime=1.0, size=1),
        chunks,
        [np.ones(2)] * len(chunks),
        model="m",
        vector_ready=False,
    )
    return store


def test_search_keyword_matches_all_tokens(tmp_path):
    store = _seed_store(tmp_path)

    results = search_service.search_keyword(
        store, "key rotates", model="m", sources=["memory"], limit=5
    )
    broad = search_service.search_keyword(store, "key", model="m", sources=["memory"], limit=5)

    assert [entry.start_line for entry in results] == [1]
    assert 0.0 < results[0].score < 1.0
    assert results[0].text_score == results[0].score
    assert {entry.start_line for entry in broad} == {1, 3}
    store.close()


def test_search_keyword_respects_model_and_source(tmp_path):
    store = _seed_store(tmp_path)

    assert search_service.search_keyword(store, "key", model="other", sources=[], limit=5) == []
    assert search_service.search_keyword(store, "key", model="m", sources=["sessions"], limit=5) == []
    store.close()


def test_search_keyword_without_fts_returns_empty(tmp_path):
    store = IndexStore(tmp_path / "index.sqlite", fts_enabled=False, vector_enabled=False)

    assert search_service.search_keyword(store, "key", model="m", sources=[], limit=5) == []
    store.close()
