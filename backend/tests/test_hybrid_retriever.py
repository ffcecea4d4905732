import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

"""
Tests for the hybrid retriever orchestrator.

Branches are stubbed so each scenario controls exactly what the vector and
keyword methods return, how long they take and whether they fail.
"""

import logging
import threading
from typing import List, Optional

import pytest

from knowledge.retrieval.errors import EmbeddingDimensionError, RetrievalUnavailableError
from knowledge.retrieval.hybrid_retriever import HybridRetriever, RetrievalOptions
from knowledge.retrieval.lexical_index import LexicalDocument, LexicalIndexManager
from knowledge.retrieval.rank_fusion import fuse
from knowledge.retrieval.tokenizer import Tokenizer
from knowledge.retrieval.types import KEYWORD, VECTOR, RankedList, RankedResult, SearchOutcome


class StubBranch:
    """Branch returning canned results, optionally failing or synchronizing."""

    def __init__(
        self,
        results: Optional[List[RankedResult]] = None,
        error: Optional[Exception] = None,
        raises: Optional[Exception] = None,
        barrier: Optional[threading.Barrier] = None,
    ):
        self.results = results or []
        self.error = error
        self.raises = raises
        self.barrier = barrier
        self.calls = []

    def run(self, tenant_id, query, limit, min_similarity=None):
        self.calls.append({"tenant_id": tenant_id, "query": query, "limit": limit,
                           "min_similarity": min_similarity})
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        if self.raises is not None:
            raise self.raises
        if self.error is not None:
            return SearchOutcome.failed(self.error)
        return SearchOutcome(results=list(self.results[:limit]))


def hit(doc_id: str, score: float, rank: int, **fields) -> RankedResult:
    return RankedResult(id=doc_id, content=f"content {doc_id}", score=score, rank=rank, **fields)


@pytest.fixture
def make_retriever():
    created = []

    def factory(vector, keyword, **kwargs):
        retriever = HybridRetriever(vector, keyword, **kwargs)
        created.append(retriever)
        return retriever

    yield factory
    for retriever in created:
        retriever.close()


class TestFusionScenarios:
    """End-to-end ordering scenarios."""

    def test_pure_vector_results(self, make_retriever):
        vector = StubBranch([hit("A", 0.9, 1), hit("B", 0.4, 2)])
        retriever = make_retriever(vector, StubBranch())

        results = retriever.retrieve("t1", "query")

        assert [r.id for r in results] == ["A", "B"]
        assert results[0].hybrid_score == pytest.approx(0.7 / 61)
        assert results[1].hybrid_score == pytest.approx(0.7 / 62)
        assert results[0].vector_score == 0.9
        assert results[0].keyword_score is None

    def test_document_in_both_lists_wins(self, make_retriever):
        vector = StubBranch([hit("A", 0.9, 1), hit("B", 0.8, 2)])
        keyword = StubBranch([hit("B", 3.0, 1)])
        results = make_retriever(vector, keyword).retrieve("t1", "query")

        assert [r.id for r in results] == ["B", "A"]
        assert results[0].hybrid_score == pytest.approx(0.7 / 62 + 0.3 / 61)
        assert results[0].keyword_score == 3.0

    def test_equal_weights_tie_broken_by_id(self, make_retriever):
        retriever = make_retriever(
            StubBranch([hit("b", 0.9, 1)]),
            StubBranch([hit("a", 2.0, 1)]),
            options=RetrievalOptions(vector_weight=0.5, keyword_weight=0.5),
        )
        assert [r.id for r in retriever.retrieve("t1", "query")] == ["a", "b"]

    def test_limit_applied_after_overfetch(self, make_retriever):
        vector = StubBranch([hit(f"v{i}", 1.0 - i / 100, i + 1) for i in range(10)])
        keyword = StubBranch([hit(f"k{i}", 5.0, i + 1) for i in range(10)])
        results = make_retriever(vector, keyword).retrieve("t1", "query", limit=3)

        assert len(results) == 3
        assert vector.calls[0]["limit"] == 6
        assert keyword.calls[0]["limit"] == 6

    def test_min_similarity_forwarded_to_vector_branch(self, make_retriever):
        vector = StubBranch()
        make_retriever(vector, StubBranch()).retrieve("t1", "query", min_similarity=0.55)
        assert vector.calls[0]["min_similarity"] == 0.55

    def test_deterministic(self, make_retriever):
        retriever = make_retriever(
            StubBranch([hit("A", 0.9, 1), hit("B", 0.8, 2), hit("C", 0.7, 3)]),
            StubBranch([hit("C", 2.0, 1), hit("D", 1.0, 2)]),
        )
        assert retriever.retrieve("t1", "q") == retriever.retrieve("t1", "q")

    def test_descriptive_fields_carried(self, make_retriever):
        keyword = StubBranch([hit("A", 1.0, 1, file_name="paper.pdf", preview="pre", size=10, type="pdf")])
        result = make_retriever(StubBranch(), keyword).retrieve("t1", "q")[0]
        assert (result.file_name, result.preview, result.size, result.type) == ("paper.pdf", "pre", 10, "pdf")


class TestDegradation:
    """Branch failures."""

    def test_vector_failure_equals_keyword_only_fusion(self, make_retriever):
        keyword_results = [hit("K1", 3.0, 1), hit("K2", 1.0, 2)]
        retriever = make_retriever(
            StubBranch(error=RuntimeError("vector store down")),
            StubBranch(keyword_results),
        )

        trace = retriever.retrieve_with_trace("t1", "query")

        expected = fuse(
            [RankedList(VECTOR, []), RankedList(KEYWORD, keyword_results)],
            [0.7, 0.3],
            limit=5,
        )
        assert trace.results == expected
        assert trace.degraded is True
        assert "vector store down" in trace.vector_error
        assert trace.keyword_error is None

    def test_raising_branch_treated_as_empty(self, make_retriever):
        retriever = make_retriever(
            StubBranch([hit("A", 0.9, 1)]),
            StubBranch(raises=RuntimeError("boom")),
        )
        trace = retriever.retrieve_with_trace("t1", "query")
        assert [r.id for r in trace.results] == ["A"]
        assert "boom" in trace.keyword_error

    def test_both_failing_raises(self, make_retriever, caplog):
        retriever = make_retriever(
            StubBranch(error=RuntimeError("vector down")),
            StubBranch(raises=RuntimeError("sql down")),
        )
        with caplog.at_level(logging.ERROR):
            with pytest.raises(RetrievalUnavailableError) as excinfo:
                retriever.retrieve("t1", "query")

        assert excinfo.value.tenant_id == "t1"
        assert set(excinfo.value.errors) == {VECTOR, KEYWORD}
        assert "both branches unavailable" in caplog.text

    def test_both_empty_is_not_an_error(self, make_retriever):
        assert make_retriever(StubBranch(), StubBranch()).retrieve("t1", "query") == []

    def test_configuration_error_propagates(self, make_retriever):
        retriever = make_retriever(
            StubBranch(raises=EmbeddingDimensionError(1536, 3)),
            StubBranch([hit("A", 1.0, 1)]),
        )
        with pytest.raises(EmbeddingDimensionError):
            retriever.retrieve("t1", "query")


class TestConcurrency:
    """Both branches must be in flight at the same time."""

    def test_branches_run_concurrently(self, make_retriever):
        barrier = threading.Barrier(2)
        vector = StubBranch([hit("A", 0.9, 1)], barrier=barrier)
        keyword = StubBranch([hit("B", 1.0, 1)], barrier=barrier)

        results = make_retriever(vector, keyword).retrieve("t1", "query")

        assert {r.id for r in results} == {"A", "B"}
        assert not barrier.broken

    def test_concurrent_callers(self, make_retriever):
        retriever = make_retriever(
            StubBranch([hit("A", 0.9, 1), hit("B", 0.8, 2)]),
            StubBranch([hit("B", 1.0, 1)]),
        )
        expected = retriever.retrieve("t1", "query")
        outputs = []

        def call():
            outputs.append(retriever.retrieve("t1", "query"))

        threads = [threading.Thread(target=call) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outputs == [expected] * 8


class TestRerankStage:
    """Optional BM25 rerank."""

    @pytest.fixture
    def lexical_index(self):
        manager = LexicalIndexManager(tokenizer=Tokenizer(segmenter="ngram"), auto_start=False)
        manager.build_index("t1", [
            LexicalDocument(id="A", content="fee market design"),
            LexicalDocument(id="B", content="merkle tree merkle proof"),
        ])
        yield manager
        manager.close()

    def test_rerank_reorders(self, make_retriever, lexical_index):
        retriever = make_retriever(
            StubBranch([hit("A", 0.9, 1), hit("B", 0.8, 2)]),
            StubBranch(),
            lexical_index=lexical_index,
            options=RetrievalOptions(use_bm25_rerank=True, bm25_weight=0.9),
        )
        trace = retriever.retrieve_with_trace("t1", "merkle")

        assert trace.reranked is True
        assert [r.id for r in trace.results] == ["B", "A"]
        assert all(0.0 <= r.hybrid_score <= 1.0 for r in trace.results)
        assert trace.results[0].bm25_score > 0
        assert "rerank" in trace.timings_ms

    def test_rerank_disabled_by_default(self, make_retriever, lexical_index):
        retriever = make_retriever(
            StubBranch([hit("A", 0.9, 1), hit("B", 0.8, 2)]),
            StubBranch(),
            lexical_index=lexical_index,
        )
        trace = retriever.retrieve_with_trace("t1", "merkle")
        assert trace.reranked is False
        assert [r.id for r in trace.results] == ["A", "B"]
        assert trace.results[0].bm25_score is None

    def test_rerank_skipped_without_tenant_index(self, make_retriever, lexical_index):
        retriever = make_retriever(
            StubBranch([hit("A", 0.9, 1), hit("B", 0.8, 2)]),
            StubBranch(),
            lexical_index=lexical_index,
        )
        results = retriever.retrieve("t2", "merkle", use_bm25_rerank=True)
        assert [r.id for r in results] == ["A", "B"]
        assert results[0].hybrid_score == pytest.approx(0.7 / 61)


class TestObservability:
    def test_trace_timings(self, make_retriever):
        trace = make_retriever(StubBranch([hit("A", 0.9, 1)]), StubBranch()).retrieve_with_trace("t1", "q")
        assert {"vector", "keyword", "fusion", "total"} <= set(trace.timings_ms)
        assert trace.degraded is False

    def test_slow_query_warning(self, make_retriever, caplog):
        retriever = make_retriever(StubBranch(), StubBranch(), slow_query_threshold_ms=-1)
        with caplog.at_level(logging.WARNING):
            retriever.retrieve("t1", "q")
        assert "exceeded latency threshold" in caplog.text


class TestOptionsAndPassages:
    def test_invalid_options_rejected(self):
        with pytest.raises(ValueError):
            RetrievalOptions(limit=0)
        with pytest.raises(ValueError):
            RetrievalOptions(rrf_k=0)
        with pytest.raises(ValueError):
            RetrievalOptions(vector_weight=1.5)
        with pytest.raises(ValueError):
            RetrievalOptions(min_similarity=-0.1)

    def test_invalid_override_rejected(self, make_retriever):
        retriever = make_retriever(StubBranch(), StubBranch())
        with pytest.raises(ValueError):
            retriever.retrieve("t1", "q", keyword_weight=2.0)

    def test_none_overrides_ignored(self):
        options = RetrievalOptions(limit=7)
        assert options.merged(limit=None) is options

    def test_get_relevant_documents(self, make_retriever):
        retriever = make_retriever(
            StubBranch([hit("A", 0.9, 1, file_name="a.md", metadata={"page": 3})]),
            StubBranch(),
        )
        passages = retriever.get_relevant_documents("t1", "q")

        assert passages[0].page_content == "content A"
        assert passages[0].metadata["id"] == "A"
        assert passages[0].metadata["file_name"] == "a.md"
        assert passages[0].metadata["page"] == 3
        assert passages[0].metadata["vector_score"] == 0.9
        assert passages[0].metadata["hybrid_score"] == pytest.approx(0.7 / 61)
