"""
Vector similarity search adapter.

Embeds the query through the embedding collaborator and asks the vector store
for the tenant's most similar chunks. Any embedding or store error degrades
to an empty result so the hybrid query can continue keyword-only; only
configuration errors (wrong embedding dimension) propagate.
"""

import logging
import time
from typing import List, Optional

from .errors import ConfigurationError, EmbeddingDimensionError
from .protocols import Embedder, VectorStoreProtocol
from .types import RankedResult, SearchOutcome


logger = logging.getLogger(__name__)

DEFAULT_MIN_SIMILARITY = 0.3


class VectorSearch:
    """
    Semantic retrieval branch.

    Example:
        >>> search = VectorSearch(embedder, vector_store)
        >>> results = search.search("tenant-1", "consensus", limit=10)
        >>> results[0].score  # cosine similarity in [0, 1]
    """

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStoreProtocol,
        expected_dimension: Optional[int] = None,
        default_min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> None:
        """
        Args:
            embedder: Embedding collaborator
            store: Vector store queried by tenant and similarity floor
            expected_dimension: If set, query vectors of any other length raise
            default_min_similarity: Similarity floor when the caller gives none
        """
        self._embedder = embedder
        self._store = store
        self._expected_dimension = expected_dimension
        self._default_min_similarity = default_min_similarity

    def search(
        self,
        tenant_id: str,
        query: str,
        limit: int,
        min_similarity: Optional[float] = None,
    ) -> List[RankedResult]:
        """Ranked hits, or an empty list if the branch failed."""
        return self.run(tenant_id, query, limit, min_similarity).results

    def run(
        self,
        tenant_id: str,
        query: str,
        limit: int,
        min_similarity: Optional[float] = None,
    ) -> SearchOutcome:
        if limit <= 0 or not query or not query.strip():
            return SearchOutcome()
        floor = self._default_min_similarity if min_similarity is None else min_similarity
        start = time.perf_counter()

        try:
            embedding = self._embedder.embed_query(query)
            self._check_dimension(embedding)
            hits = self._store.similarity_search(
                tenant_id=tenant_id,
                embedding=embedding,
                limit=limit,
                min_similarity=floor,
            )
        except ConfigurationError:
            raise
        except Exception as e:
            logger.warning(
                "Vector search failed, returning empty results",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
            return SearchOutcome.failed(e)

        hits = [h for h in hits if h.similarity >= floor]
        hits.sort(key=lambda h: (-h.similarity, h.id))

        results = [
            RankedResult(
                id=hit.id,
                content=hit.content,
                score=hit.similarity,
                rank=rank,
                file_name=str(hit.metadata.get("file_name", "")),
                preview=str(hit.metadata.get("preview", "")),
                size=int(hit.metadata.get("size", 0) or 0),
                type=str(hit.metadata.get("type", "")),
                metadata=dict(hit.metadata),
            )
            for rank, hit in enumerate(hits[:limit], start=1)
        ]
        logger.debug(
            "Vector search completed",
            extra={
                "tenant_id": tenant_id,
                "result_count": len(results),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return SearchOutcome(results=results)

    def _check_dimension(self, embedding: List[float]) -> None:
        if self._expected_dimension is not None and len(embedding) != self._expected_dimension:
            raise EmbeddingDimensionError(self._expected_dimension, len(embedding))
