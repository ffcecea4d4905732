"""
BM25 rerank stage.

Rescores the fused candidate set against the tenant's lexical index instead
of searching again: the set of candidates stays fixed and only their order
changes. Both scores are normalized to [0, 1] before blending, since raw BM25
is unbounded:

    final = rrf / max(rrf) * (1 - w) + bm25 / max(bm25) * w

with each maximum floored at 0.001.
"""

import logging
from dataclasses import replace
from typing import List, Optional

from .lexical_index import LexicalIndexManager
from .types import FusedResult


logger = logging.getLogger(__name__)

DEFAULT_BM25_WEIGHT = 0.3
SCORE_FLOOR = 0.001


class BM25Reranker:
    """Blend fused RRF scores with BM25 scores from the lexical index."""

    def __init__(
        self,
        lexical_index: LexicalIndexManager,
        bm25_weight: float = DEFAULT_BM25_WEIGHT,
    ) -> None:
        if not 0.0 <= bm25_weight <= 1.0:
            raise ValueError("bm25_weight must be between 0.0 and 1.0")
        self._lexical_index = lexical_index
        self._bm25_weight = bm25_weight

    @property
    def bm25_weight(self) -> float:
        return self._bm25_weight

    def rerank(
        self,
        tenant_id: str,
        query: str,
        results: List[FusedResult],
        bm25_weight: Optional[float] = None,
    ) -> List[FusedResult]:
        """
        Reorder ``results`` by the blended score.

        Never raises: with no index for the tenant, or on any error, the
        input is returned unchanged.
        """
        if not results:
            return results
        weight = self._bm25_weight if bm25_weight is None else bm25_weight

        try:
            if not self._lexical_index.ensure_index(tenant_id):
                logger.debug(
                    "No lexical index for tenant, skipping rerank",
                    extra={"tenant_id": tenant_id},
                )
                return results

            bm25_scores = self._lexical_index.get_scores_for_documents(
                tenant_id, query, [r.id for r in results]
            )
            return blend_scores(results, bm25_scores, weight)
        except Exception as e:
            logger.warning(
                "BM25 rerank failed, returning fused results",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
            return results


def blend_scores(
    results: List[FusedResult],
    bm25_scores: dict,
    bm25_weight: float,
) -> List[FusedResult]:
    """Pure blending step; ids missing from ``bm25_scores`` score 0."""
    max_rrf = max([r.hybrid_score for r in results] + [SCORE_FLOOR])
    max_bm25 = max(list(bm25_scores.values()) + [SCORE_FLOOR])
    rrf_weight = 1.0 - bm25_weight

    reranked = []
    for result in results:
        bm25 = max(bm25_scores.get(result.id, 0.0), 0.0)
        final = (result.hybrid_score / max_rrf) * rrf_weight + (bm25 / max_bm25) * bm25_weight
        final = min(max(final, 0.0), 1.0)
        reranked.append(replace(result, hybrid_score=final, bm25_score=bm25))

    reranked.sort(key=lambda r: (-r.hybrid_score, r.id))
    return reranked
