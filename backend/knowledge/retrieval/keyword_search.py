"""
Keyword search adapter.

Extracts the query's most frequent keywords and asks the chunk store for
chunks containing any of them. Score is the number of distinct keywords a
chunk contains. Escaping of pattern-match syntax is the store's job; see
``SqlChunkStore.keyword_search``.
"""

import logging
import time
from typing import List, Optional

from .protocols import KeywordStoreProtocol
from .tokenizer import DEFAULT_MAX_KEYWORDS, Tokenizer, get_tokenizer
from .types import RankedResult, SearchOutcome


logger = logging.getLogger(__name__)


class KeywordSearch:
    """Lexical retrieval branch backed by substring matching in the chunk store."""

    def __init__(
        self,
        store: KeywordStoreProtocol,
        tokenizer: Optional[Tokenizer] = None,
        max_keywords: int = DEFAULT_MAX_KEYWORDS,
    ) -> None:
        self._store = store
        self._tokenizer = tokenizer or get_tokenizer()
        self._max_keywords = max_keywords

    def extract_keywords(self, query: str) -> List[str]:
        return self._tokenizer.extract_keywords(query, self._max_keywords)

    def search(self, tenant_id: str, query: str, limit: int) -> List[RankedResult]:
        """Ranked hits, or an empty list if nothing matched or the store failed."""
        return self.run(tenant_id, query, limit).results

    def run(
        self,
        tenant_id: str,
        query: str,
        limit: int,
        min_similarity: Optional[float] = None,
    ) -> SearchOutcome:
        if limit <= 0:
            return SearchOutcome()
        keywords = self.extract_keywords(query)
        if not keywords:
            logger.debug("No keywords extracted from query", extra={"tenant_id": tenant_id})
            return SearchOutcome()

        start = time.perf_counter()
        try:
            hits = self._store.keyword_search(tenant_id=tenant_id, keywords=keywords, limit=limit)
        except Exception as e:
            logger.warning(
                "Keyword search failed, returning empty results",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
            return SearchOutcome.failed(e)

        hits = sorted(hits, key=lambda h: (-h.match_count, h.id))[:limit]
        results = [
            RankedResult(
                id=hit.id,
                content=hit.content,
                score=float(hit.match_count),
                rank=rank,
                file_name=hit.file_name,
                preview=hit.preview,
                size=hit.size,
                type=hit.type,
                metadata=dict(hit.metadata),
            )
            for rank, hit in enumerate(hits, start=1)
        ]
        logger.debug(
            "Keyword search completed",
            extra={
                "tenant_id": tenant_id,
                "keywords": keywords,
                "result_count": len(results),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return SearchOutcome(results=results)
