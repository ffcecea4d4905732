"""
Hybrid Retriever combining vector search and keyword search.

This module implements hybrid retrieval using:
- Vector-based semantic search through the embedding collaborator and vector store
- Keyword-based search through substring matching in the chunk store
- Reciprocal Rank Fusion (RRF) for result combination
- An optional BM25 rerank of the fused candidates against the lexical index

Both branches run concurrently in a thread pool. A failing branch contributes
an empty list; only when both fail is ``RetrievalUnavailableError`` raised.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from prometheus_client import Histogram

from .errors import ConfigurationError, RetrievalUnavailableError
from .lexical_index import LexicalIndexManager
from .protocols import SearchBranch
from .rank_fusion import DEFAULT_KEYWORD_WEIGHT, DEFAULT_RRF_K, DEFAULT_VECTOR_WEIGHT, fuse
from .rerank import DEFAULT_BM25_WEIGHT, BM25Reranker
from .types import KEYWORD, VECTOR, FusedResult, RankedList, RetrievedPassage, SearchOutcome


logger = logging.getLogger(__name__)

RETRIEVAL_STAGE_SECONDS = Histogram(
    "knowledge_retrieval_stage_seconds",
    "Latency of each hybrid retrieval stage",
    ["stage"],
)

DEFAULT_SLOW_QUERY_MS = 500.0

# Each branch is asked for this many times the final limit before fusion
OVERFETCH_FACTOR = 2


@dataclass(frozen=True)
class RetrievalOptions:
    """Per-call retrieval configuration."""
    limit: int = 5
    min_similarity: float = 0.3
    rrf_k: int = DEFAULT_RRF_K
    vector_weight: float = DEFAULT_VECTOR_WEIGHT
    keyword_weight: float = DEFAULT_KEYWORD_WEIGHT
    use_bm25_rerank: bool = False
    bm25_weight: float = DEFAULT_BM25_WEIGHT

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be at least 1")
        if self.rrf_k < 1:
            raise ValueError("rrf_k must be at least 1")
        for name in ("min_similarity", "vector_weight", "keyword_weight", "bm25_weight"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0.0 and 1.0")

    @classmethod
    def from_settings(cls, settings) -> "RetrievalOptions":
        return cls(
            limit=settings.retrieval_limit,
            min_similarity=settings.min_similarity,
            rrf_k=settings.rrf_k,
            vector_weight=settings.vector_weight,
            keyword_weight=settings.keyword_weight,
            use_bm25_rerank=settings.use_bm25_rerank,
            bm25_weight=settings.bm25_weight,
        )

    def merged(self, **overrides: Any) -> "RetrievalOptions":
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **overrides) if overrides else self


@dataclass(frozen=True)
class RetrievalTrace:
    """Results of one ``retrieve`` call plus per-stage observability data."""
    results: List[FusedResult]
    timings_ms: Dict[str, float] = field(default_factory=dict)
    vector_error: Optional[str] = None
    keyword_error: Optional[str] = None
    reranked: bool = False

    @property
    def degraded(self) -> bool:
        return self.vector_error is not None or self.keyword_error is not None


class HybridRetriever:
    """
    Hybrid retriever combining vector search and keyword search.

    Collaborators are injected so any of them can be replaced by a stub.

    Example:
        >>> retriever = HybridRetriever(vector_search, keyword_search, lexical_index)
        >>> results = retriever.retrieve("tenant-1", "What is proof of work?")
        >>> for r in results:
        ...     print(f"{r.id}: {r.hybrid_score:.4f}")
    """

    def __init__(
        self,
        vector_search: SearchBranch,
        keyword_search: SearchBranch,
        lexical_index: Optional[LexicalIndexManager] = None,
        options: Optional[RetrievalOptions] = None,
        max_workers: int = 4,
        slow_query_threshold_ms: float = DEFAULT_SLOW_QUERY_MS,
    ) -> None:
        """
        Args:
            vector_search: Semantic branch
            keyword_search: Keyword branch
            lexical_index: Tenant BM25 indexes, required for the rerank stage
            options: Defaults applied to every call
            max_workers: Size of the pool running the branches
            slow_query_threshold_ms: Total latency above which a warning is logged
        """
        self._vector = vector_search
        self._keyword = keyword_search
        self._lexical_index = lexical_index
        self._options = options or RetrievalOptions()
        self._slow_query_threshold_ms = slow_query_threshold_ms
        self._reranker = (
            BM25Reranker(lexical_index, self._options.bm25_weight)
            if lexical_index is not None else None
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max(2, max_workers),
            thread_name_prefix="hybrid-retriever",
        )

        if self._options.use_bm25_rerank and lexical_index is None:
            logger.warning("BM25 reranking enabled but no lexical index provided")

    @property
    def options(self) -> RetrievalOptions:
        return self._options

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "HybridRetriever":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def retrieve(
        self,
        tenant_id: str,
        query: str,
        options: Optional[RetrievalOptions] = None,
        **overrides: Any,
    ) -> List[FusedResult]:
        """
        Return the fused (and optionally reranked) results for a query.

        Args:
            tenant_id: Tenant whose corpus is searched
            query: The search query string
            options: Replaces the retriever defaults for this call
            **overrides: Individual option overrides, e.g. ``limit=10``

        Raises:
            RetrievalUnavailableError: If both branches failed
            ConfigurationError: If a collaborator is misconfigured
        """
        return self.retrieve_with_trace(tenant_id, query, options, **overrides).results

    def retrieve_with_trace(
        self,
        tenant_id: str,
        query: str,
        options: Optional[RetrievalOptions] = None,
        **overrides: Any,
    ) -> RetrievalTrace:
        opts = (options or self._options).merged(**overrides)
        start = time.perf_counter()
        fetch_limit = opts.limit * OVERFETCH_FACTOR
        timings: Dict[str, float] = {}

        vector_future = self._executor.submit(
            self._timed, self._vector.run, tenant_id, query, fetch_limit, opts.min_similarity
        )
        keyword_future = self._executor.submit(
            self._timed, self._keyword.run, tenant_id, query, fetch_limit
        )
        # Join both before inspecting either so one failure never abandons the other
        wait([vector_future, keyword_future])
        vector_outcome, timings[VECTOR] = self._collect(VECTOR, vector_future, tenant_id)
        keyword_outcome, timings[KEYWORD] = self._collect(KEYWORD, keyword_future, tenant_id)

        if not vector_outcome.ok and not keyword_outcome.ok:
            logger.error(
                "Hybrid search failed: both branches unavailable",
                extra={
                    "tenant_id": tenant_id,
                    "vector_error": vector_outcome.error,
                    "keyword_error": keyword_outcome.error,
                },
            )
            raise RetrievalUnavailableError(
                tenant_id,
                {VECTOR: vector_outcome.error, KEYWORD: keyword_outcome.error},
            )

        stage_start = time.perf_counter()
        results = fuse(
            [
                RankedList(source=VECTOR, results=vector_outcome.results),
                RankedList(source=KEYWORD, results=keyword_outcome.results),
            ],
            weights=[opts.vector_weight, opts.keyword_weight],
            k=opts.rrf_k,
            limit=opts.limit,
        )
        timings["fusion"] = _elapsed_ms(stage_start)

        reranked = False
        if opts.use_bm25_rerank and self._reranker is not None:
            stage_start = time.perf_counter()
            results = self._reranker.rerank(tenant_id, query, results, bm25_weight=opts.bm25_weight)
            timings["rerank"] = _elapsed_ms(stage_start)
            reranked = True

        timings["total"] = _elapsed_ms(start)
        for stage, elapsed in timings.items():
            RETRIEVAL_STAGE_SECONDS.labels(stage=stage).observe(elapsed / 1000.0)

        logger.info(
            "Hybrid search completed",
            extra={
                "tenant_id": tenant_id,
                "result_count": len(results),
                "vector_count": len(vector_outcome.results),
                "keyword_count": len(keyword_outcome.results),
                "reranked": reranked,
                "timings_ms": timings,
            },
        )
        if timings["total"] > self._slow_query_threshold_ms:
            logger.warning(
                "Hybrid search exceeded latency threshold",
                extra={
                    "tenant_id": tenant_id,
                    "duration_ms": timings["total"],
                    "threshold_ms": self._slow_query_threshold_ms,
                },
            )

        return RetrievalTrace(
            results=results,
            timings_ms=timings,
            vector_error=vector_outcome.error,
            keyword_error=keyword_outcome.error,
            reranked=reranked,
        )

    def get_relevant_documents(
        self,
        tenant_id: str,
        query: str,
        **overrides: Any,
    ) -> List[RetrievedPassage]:
        """Retrieve and convert results to passages for prompt assembly."""
        return [to_passage(r) for r in self.retrieve(tenant_id, query, **overrides)]

    @staticmethod
    def _timed(fn: Callable[..., SearchOutcome], *args: Any) -> Tuple[SearchOutcome, float]:
        start = time.perf_counter()
        outcome = fn(*args)
        return outcome, _elapsed_ms(start)

    @staticmethod
    def _collect(branch: str, future: Future, tenant_id: str) -> Tuple[SearchOutcome, float]:
        try:
            return future.result()
        except ConfigurationError:
            raise
        except Exception as e:
            logger.warning(
                "Retrieval branch raised, treating as empty",
                extra={"tenant_id": tenant_id, "branch": branch, "error": str(e)},
            )
            return SearchOutcome.failed(e), 0.0


def to_passage(result: FusedResult) -> RetrievedPassage:
    metadata = dict(result.metadata)
    metadata.update(
        id=result.id,
        file_name=result.file_name,
        vector_score=result.vector_score,
        keyword_score=result.keyword_score,
        bm25_score=result.bm25_score,
        hybrid_score=result.hybrid_score,
    )
    return RetrievedPassage(page_content=result.content, metadata=metadata)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
