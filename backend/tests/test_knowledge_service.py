import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

"""
End-to-end retrieval through KnowledgeService with SQLite, an in-memory
vector store and the stub embedder.
"""

import pytest

from conftest import InMemoryVectorStore, StubEmbedder
from knowledge.core.config import Settings
from knowledge.retrieval.lexical_index import LexicalIndexManager
from knowledge.retrieval.tokenizer import Tokenizer
from knowledge.services.indexer import ChunkInput, IndexDocumentRequest
from knowledge.services.knowledge_service import KnowledgeService
from knowledge.stores.sql_store import SqlChunkStore


@pytest.fixture
def service(session_factory):
    settings = Settings(use_bm25_rerank=False, min_similarity=0.1, tokenizer_segmenter="ngram")
    service = KnowledgeService(
        settings=settings,
        session_factory=session_factory,
        vector_store=InMemoryVectorStore(),
        embedder=StubEmbedder(),
        lexical_index=LexicalIndexManager(
            tokenizer=Tokenizer(segmenter="ngram"),
            auto_start=False,
            loader=SqlChunkStore(session_factory).load_lexical_documents,
        ),
    )
    service.index(IndexDocumentRequest(tenant_id="t1", chunks=[
        ChunkInput(id="c1", content="Bitcoin proof of work mining", file_name="btc.pdf"),
        ChunkInput(id="c2", content="Ethereum proof of stake validators"),
        ChunkInput(id="c3", content="Merkle trees summarize transactions"),
    ]))
    service.index(IndexDocumentRequest(tenant_id="t2", chunks=[
        ChunkInput(id="x1", content="Bitcoin mining on another tenant"),
    ]))
    yield service
    service.close()


def test_retrieve_hybrid(service):
    results = service.retrieve("t1", "proof of work mining")
    assert results[0].id == "c1"
    assert results[0].vector_score is not None
    assert results[0].keyword_score == 3.0
    assert results[0].file_name == "btc.pdf"


def test_tenants_isolated(service):
    ids = {r.id for r in service.retrieve("t1", "bitcoin mining")}
    assert "x1" not in ids


def test_rerank_override(service):
    trace = service.retrieve_with_trace("t1", "merkle transactions", use_bm25_rerank=True)
    assert trace.reranked is True
    assert trace.results[0].id == "c3"
    assert trace.results[0].bm25_score > 0


def test_rerank_rebuilds_evicted_index(service):
    service.lexical_index.clear_index("t1")
    trace = service.retrieve_with_trace("t1", "merkle transactions", use_bm25_rerank=True)
    assert trace.results[0].bm25_score > 0
    assert service.lexical_index.has_index("t1")


def test_get_relevant_documents(service):
    passages = service.get_relevant_documents("t1", "validators stake", limit=1)
    assert len(passages) == 1
    assert passages[0].metadata["id"] == "c2"


def test_delete(service):
    service.delete("t1", ["c1"])
    assert "c1" not in {r.id for r in service.retrieve("t1", "proof of work mining")}
    assert service.indexer.check_consistency("t1")["consistent"] is True


def test_upload_after_eviction_keeps_rerank_scores(service):
    service.lexical_index.clear_index("t1")
    service.index(IndexDocumentRequest(tenant_id="t1", chunks=[
        ChunkInput(id="c4", content="Lightning channels settle mining fees"),
    ]))

    assert service.lexical_index.get_document_count("t1") == 4
    assert service.indexer.check_consistency("t1")["consistent"] is True
    trace = service.retrieve_with_trace("t1", "proof mining", use_bm25_rerank=True)
    scores = {r.id: r.bm25_score for r in trace.results}
    assert scores["c1"] > 0
    assert scores["c2"] > 0
    assert scores["c1"] > (scores.get("c3") or 0.0)
