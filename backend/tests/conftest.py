import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import math
from typing import Any, Dict, Generator, List, Sequence

import pytest
from sqlalchemy.orm import sessionmaker

from knowledge.core.config import Settings
from knowledge.core.database import create_db_engine, create_session_factory, init_db
from knowledge.retrieval.protocols import VectorHit
from knowledge.retrieval.tokenizer import Tokenizer


class StubEmbedder:
    """Deterministic bag-of-letters embedder."""

    def __init__(self, dimension: int = 26, fail: bool = False):
        self.dimension = dimension
        self.fail = fail
        self.calls: List[str] = []

    def embed_query(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding provider unavailable")
        return self._embed(text)

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        if self.fail:
            raise RuntimeError("embedding provider unavailable")
        return [self._embed(t) for t in texts]

    def _embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        for char in text.lower():
            if "a" <= char <= "z":
                vector[(ord(char) - ord("a")) % self.dimension] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector


class InMemoryVectorStore:
    """Cosine-similarity vector store keyed by tenant."""

    def __init__(self, fail_on_add: bool = False, fail_on_search: bool = False):
        self.rows: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.fail_on_add = fail_on_add
        self.fail_on_search = fail_on_search
        self.deleted: List[str] = []

    def add(self, tenant_id, ids, contents, embeddings, metadatas) -> None:
        if self.fail_on_add:
            raise RuntimeError("Simulated vector store add failure")
        tenant = self.rows.setdefault(tenant_id, {})
        for chunk_id, content, embedding, metadata in zip(ids, contents, embeddings, metadatas):
            tenant[chunk_id] = {"content": content, "embedding": list(embedding), "metadata": dict(metadata)}

    def similarity_search(self, tenant_id, embedding, limit, min_similarity) -> List[VectorHit]:
        if self.fail_on_search:
            raise RuntimeError("Simulated vector store outage")
        hits = []
        for chunk_id, row in self.rows.get(tenant_id, {}).items():
            similarity = _cosine(embedding, row["embedding"])
            if similarity >= min_similarity:
                hits.append(VectorHit(chunk_id, row["content"], similarity, dict(row["metadata"])))
        hits.sort(key=lambda h: (-h.similarity, h.id))
        return hits[:limit]

    def delete(self, tenant_id, ids) -> None:
        tenant = self.rows.get(tenant_id, {})
        for chunk_id in ids:
            if tenant.pop(chunk_id, None) is not None:
                self.deleted.append(chunk_id)

    def count(self, tenant_id) -> int:
        return len(self.rows.get(tenant_id, {}))


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    engine = create_db_engine("sqlite://", settings=Settings())
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture(scope="session")
def ngram_tokenizer() -> Tokenizer:
    return Tokenizer(segmenter="ngram")


@pytest.fixture
def embedder() -> StubEmbedder:
    return StubEmbedder()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()
