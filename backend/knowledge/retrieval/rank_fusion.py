"""
Weighted Reciprocal Rank Fusion (RRF).

The RRF formula is:
    RRF(d) = sum(w_i * (1 / (k + rank_i(d)))) over every list i containing d

Only ranks matter, so heterogeneous scores (cosine similarity, raw keyword
match counts) can be combined without normalizing their scales. A document
missing from a list simply receives no contribution from it.
"""

from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from .types import FusedResult, RankedList, RankedResult

# Default RRF constant - controls impact of lower-ranked documents
DEFAULT_RRF_K = 60
DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_KEYWORD_WEIGHT = 0.3


def rrf_contribution(weight: float, rank: int, k: int = DEFAULT_RRF_K) -> float:
    return weight * (1.0 / (k + rank))


def _merge(existing: FusedResult, source: str, result: RankedResult, contribution: float) -> FusedResult:
    scores = dict(existing.scores)
    scores.setdefault(source, result.score)
    metadata = dict(result.metadata)
    metadata.update(existing.metadata)
    return replace(
        existing,
        hybrid_score=existing.hybrid_score + contribution,
        scores=scores,
        content=existing.content or result.content,
        file_name=existing.file_name or result.file_name,
        preview=existing.preview or result.preview,
        size=existing.size or result.size,
        type=existing.type or result.type,
        metadata=metadata,
    )


def fuse(
    ranked_lists: Sequence[RankedList],
    weights: Sequence[float],
    k: int = DEFAULT_RRF_K,
    limit: Optional[int] = None,
) -> List[FusedResult]:
    """
    Merge ranked lists into one list ordered by weighted RRF score.

    Args:
        ranked_lists: One list per retrieval method, each already in rank order
        weights: Weight per list, same length as ``ranked_lists``
        k: RRF constant (default 60)
        limit: Truncate the fused list to this many results

    Returns:
        Results deduplicated by id, ordered by descending ``hybrid_score``
        with ties broken by ascending id. Each result keeps the raw score of
        every method that returned it.

    Raises:
        ValueError: If weights and lists differ in length or k < 1
    """
    if len(ranked_lists) != len(weights):
        raise ValueError("ranked_lists and weights must have the same length")
    if k < 1:
        raise ValueError("k must be at least 1")

    fused: Dict[str, FusedResult] = {}

    for ranked, weight in zip(ranked_lists, weights):
        seen = set()
        for position, result in enumerate(ranked.results, start=1):
            if result.id in seen:
                continue
            seen.add(result.id)
            rank = result.rank if result.rank >= 1 else position
            contribution = rrf_contribution(weight, rank, k)

            existing = fused.get(result.id)
            if existing is None:
                fused[result.id] = FusedResult(
                    id=result.id,
                    content=result.content,
                    hybrid_score=contribution,
                    scores={ranked.source: result.score},
                    file_name=result.file_name,
                    preview=result.preview,
                    size=result.size,
                    type=result.type,
                    metadata=dict(result.metadata),
                )
            else:
                fused[result.id] = _merge(existing, ranked.source, result, contribution)

    ordered = sorted(fused.values(), key=lambda r: (-r.hybrid_score, r.id))
    if limit is not None:
        ordered = ordered[:max(limit, 0)]
    return ordered
