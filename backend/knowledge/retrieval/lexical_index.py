"""
Per-tenant in-memory BM25 index.

Each tenant owns an independent index (documents, forward index, inverted
index, BM25 parameters) guarded by its own lock, so tenants never contend
with each other. The index is a rebuildable cache, not a source of truth:
idle tenants are evicted by a background sweep and rebuilt on demand.

Scoring uses rank_bm25's BM25Plus with ``delta=0``: the Okapi term-frequency
saturation with an idf of ``log((N + 1) / df)`` that stays positive even in a
one-document corpus, where Okapi's idf goes negative.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from rank_bm25 import BM25Plus

from .tokenizer import INDEX_TOKENIZER_OPTIONS, Tokenizer, get_tokenizer
from .types import RankedResult


logger = logging.getLogger(__name__)

DEFAULT_BM25_K1 = 1.2
DEFAULT_BM25_B = 0.75
DEFAULT_IDLE_TIMEOUT = 30 * 60.0
DEFAULT_SWEEP_INTERVAL = 5 * 60.0


@dataclass(frozen=True)
class LexicalDocument:
    """Unit of the lexical index. Replacing a document means remove + add."""
    id: str
    content: str
    file_name: str = ""
    preview: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)


class _TenantIndex:
    """
    Index state for one tenant. Callers must hold ``lock``.

    ``evicted`` is set once the index has been detached from the manager, so a
    caller that looked the index up just before eviction sees it as missing.
    """

    def __init__(self, k1: float, b: float, now: float) -> None:
        self.lock = threading.RLock()
        self.k1 = k1
        self.b = b
        self.last_accessed = now
        self.evicted = False
        self.documents: Dict[str, LexicalDocument] = {}
        self.forward: Dict[str, List[str]] = {}
        self.inverted: Dict[str, Dict[str, int]] = {}
        self._scorer: Optional[BM25Plus] = None
        self._order: List[str] = []
        self._positions: Dict[str, int] = {}

    @property
    def document_count(self) -> int:
        return len(self.documents)

    def add(self, document: LexicalDocument, terms: List[str]) -> None:
        if document.id in self.documents:
            self.remove(document.id)
        self.documents[document.id] = document
        self.forward[document.id] = terms
        for term in terms:
            postings = self.inverted.setdefault(term, {})
            postings[document.id] = postings.get(document.id, 0) + 1
        self._scorer = None

    def remove(self, document_id: str) -> bool:
        if document_id not in self.documents:
            return False
        del self.documents[document_id]
        for term in set(self.forward.pop(document_id, [])):
            postings = self.inverted.get(term)
            if postings is None:
                continue
            postings.pop(document_id, None)
            if not postings:
                del self.inverted[term]
        self._scorer = None
        return True

    def candidates(self, query_terms: Sequence[str]) -> List[str]:
        """Ids of documents containing at least one query term."""
        matched = set()
        for term in query_terms:
            matched.update(self.inverted.get(term, ()))
        return sorted(matched)

    def score(self, query_terms: List[str], document_ids: Iterable[str]) -> Dict[str, float]:
        document_ids = [d for d in document_ids if d in self.documents]
        if not document_ids or not query_terms:
            return {}
        scorer = self._ensure_scorer()
        positions = [self._positions[d] for d in document_ids]
        scores = scorer.get_batch_scores(query_terms, positions)
        return {d: float(s) for d, s in zip(document_ids, scores)}

    def _ensure_scorer(self) -> BM25Plus:
        if self._scorer is None:
            self._order = list(self.documents)
            self._positions = {d: i for i, d in enumerate(self._order)}
            corpus = [self.forward[d] for d in self._order]
            self._scorer = BM25Plus(corpus, k1=self.k1, b=self.b, delta=0.0)
        return self._scorer


class LexicalIndexManager:
    """
    Owns one BM25 index per tenant.

    A missing index is never an error: ``search`` and
    ``get_scores_for_documents`` return empty results so callers can degrade
    (for example by skipping the rerank stage).

    The idle-eviction loop is started on construction and stopped by
    ``close()``; use the manager as a context manager to tie it to a scope.

    Example:
        >>> manager = LexicalIndexManager(auto_start=False)
        >>> manager.build_index("tenant-1", [
        ...     LexicalDocument(id="1", content="Bitcoin proof of work"),
        ...     LexicalDocument(id="2", content="Ethereum proof of stake"),
        ... ])
        >>> [r.id for r in manager.search("tenant-1", "work", limit=5)]
        ['1']
    """

    def __init__(
        self,
        tokenizer: Optional[Tokenizer] = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        k1: float = DEFAULT_BM25_K1,
        b: float = DEFAULT_BM25_B,
        loader: Optional[Callable[[str], Iterable[LexicalDocument]]] = None,
        clock: Callable[[], float] = time.monotonic,
        auto_start: bool = True,
    ) -> None:
        """
        Args:
            tokenizer: Tokenizer shared by index build and query
            idle_timeout: Seconds without access after which an index is evicted
            sweep_interval: Seconds between eviction sweeps
            k1: Default BM25 term-frequency saturation
            b: Default BM25 length normalization
            loader: Returns a tenant's documents from persistent storage,
                    used by ``ensure_index`` to rebuild evicted indexes
            clock: Monotonic time source, injectable for tests
            auto_start: Start the eviction loop immediately
        """
        self._tokenizer = tokenizer or get_tokenizer()
        self._idle_timeout = idle_timeout
        self._sweep_interval = sweep_interval
        self._k1 = k1
        self._b = b
        self._loader = loader
        self._clock = clock

        # Guards the tenant map only; index contents use per-tenant locks
        self._lock = threading.Lock()
        self._indexes: Dict[str, _TenantIndex] = {}

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if auto_start:
            self.start()

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "LexicalIndexManager":
        params = dict(
            idle_timeout=settings.lexical_idle_timeout_seconds,
            sweep_interval=settings.lexical_sweep_interval_seconds,
            k1=settings.bm25_k1,
            b=settings.bm25_b,
        )
        params.update(kwargs)
        return cls(**params)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the background eviction loop if it is not running."""
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_eviction_loop,
                name="lexical-index-eviction",
                daemon=True,
            )
            self._thread.start()

    def stop(self) -> None:
        """Stop the eviction loop and wait for it to exit."""
        self._stop_event.set()
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join(timeout=5.0)

    def close(self) -> None:
        """Stop the eviction loop and drop every tenant index."""
        self.stop()
        with self._lock:
            indexes = list(self._indexes.values())
            self._indexes.clear()
        for entry in indexes:
            with entry.lock:
                entry.evicted = True

    @property
    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def __enter__(self) -> "LexicalIndexManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _run_eviction_loop(self) -> None:
        while not self._stop_event.wait(self._sweep_interval):
            try:
                self.sweep_idle_indexes()
            except Exception:
                logger.exception("Lexical index eviction sweep failed")

    def sweep_idle_indexes(self) -> List[str]:
        """
        Evict every tenant index idle for longer than the timeout.

        Each candidate is re-checked under its own lock, so an index that a
        concurrent query is reading is never dropped mid-iteration.

        Returns:
            Tenant ids whose indexes were evicted
        """
        with self._lock:
            snapshot = list(self._indexes.items())

        evicted: List[str] = []
        for tenant_id, entry in snapshot:
            with entry.lock:
                if self._clock() - entry.last_accessed <= self._idle_timeout:
                    continue
                with self._lock:
                    if self._indexes.get(tenant_id) is entry:
                        del self._indexes[tenant_id]
                entry.evicted = True
            evicted.append(tenant_id)
            logger.info("Evicted idle lexical index", extra={"tenant_id": tenant_id})
        return evicted

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def build_index(
        self,
        tenant_id: str,
        documents: Iterable[LexicalDocument],
        k1: Optional[float] = None,
        b: Optional[float] = None,
    ) -> None:
        """
        Build a fresh index for a tenant, replacing any existing one.

        The swap happens under the replaced index's lock, so a concurrent
        ``add_document`` either lands before the swap or retries on the new
        index. Documents added to the replaced index after the caller took
        its snapshot of ``documents`` are not carried over; build from the
        persistent store, which already holds them.

        Args:
            tenant_id: Tenant owning the documents
            documents: Documents to index
            k1: BM25 k1 for this index (default 1.2)
            b: BM25 b for this index (default 0.75)
        """
        start = time.perf_counter()
        k1 = self._k1 if k1 is None else k1
        b = self._b if b is None else b

        entry = _TenantIndex(k1=k1, b=b, now=self._clock())
        for document in documents:
            entry.add(document, self._terms(document.content))

        while not self._swap_in(tenant_id, entry):
            pass

        logger.info(
            "Built lexical index",
            extra={
                "tenant_id": tenant_id,
                "document_count": entry.document_count,
                "k1": k1,
                "b": b,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )

    def add_document(self, tenant_id: str, document: LexicalDocument) -> None:
        """
        Insert a document into a tenant's index.

        A missing index is first rebuilt through the loader, so documents
        added after an eviction never end up in a partial index. Without a
        loader an empty index is created.
        """
        terms = self._terms(document.content)
        if self._loader is not None:
            self.ensure_index(tenant_id)
        while True:
            entry = self._get(tenant_id)
            if entry is None:
                entry = self._create_if_missing(tenant_id)
            with entry.lock:
                if entry.evicted:
                    continue
                entry.add(document, terms)
                entry.last_accessed = self._clock()
                break
        logger.debug(
            "Added document to lexical index",
            extra={"tenant_id": tenant_id, "document_id": document.id},
        )

    def remove_document(self, tenant_id: str, document_id: str) -> bool:
        """
        Remove a document by id.

        Returns:
            True if the document was indexed; False if it or the index was absent
        """
        entry = self._get(tenant_id)
        if entry is None:
            return False
        with entry.lock:
            if entry.evicted:
                return False
            removed = entry.remove(document_id)
            entry.last_accessed = self._clock()
        if removed:
            logger.debug(
                "Removed document from lexical index",
                extra={"tenant_id": tenant_id, "document_id": document_id},
            )
        return removed

    def clear_index(self, tenant_id: str) -> None:
        with self._lock:
            entry = self._indexes.pop(tenant_id, None)
        if entry is not None:
            with entry.lock:
                entry.evicted = True
            logger.info("Cleared lexical index", extra={"tenant_id": tenant_id})

    def ensure_index(self, tenant_id: str) -> bool:
        """
        Rebuild a missing tenant index through the configured loader.

        Returns:
            True if the tenant has an index afterwards
        """
        if self.has_index(tenant_id):
            return True
        if self._loader is None:
            return False
        documents = list(self._loader(tenant_id))
        with self._lock:
            if tenant_id in self._indexes:
                return True
        self.build_index(tenant_id, documents)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def search(self, tenant_id: str, query: str, limit: int = 10) -> List[RankedResult]:
        """
        BM25 search over a tenant's index.

        Returns:
            Up to ``limit`` results ordered by descending score, ties by id
        """
        query_terms = self._query_terms(query)
        entry = self._get(tenant_id)
        if entry is None:
            logger.debug("No lexical index for tenant", extra={"tenant_id": tenant_id})
            return []

        with entry.lock:
            if entry.evicted:
                return []
            entry.last_accessed = self._clock()
            if not query_terms:
                return []
            scores = entry.score(query_terms, entry.candidates(query_terms))
            ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))[:limit]
            documents = [entry.documents[doc_id] for doc_id, _ in ranked]

        return [
            RankedResult(
                id=document.id,
                content=document.content,
                score=score,
                rank=rank,
                file_name=document.file_name,
                preview=document.preview,
                metadata=dict(document.metadata),
            )
            for rank, (document, (_, score)) in enumerate(zip(documents, ranked), start=1)
        ]

    def get_scores_for_documents(
        self,
        tenant_id: str,
        query: str,
        document_ids: Iterable[str],
    ) -> Dict[str, float]:
        """
        BM25 scores for exactly the given documents.

        Scores are identical to those ``search`` would assign. Ids that match
        no query term, or are not indexed, are absent and count as 0.
        """
        query_terms = self._query_terms(query)
        entry = self._get(tenant_id)
        if entry is None:
            return {}

        with entry.lock:
            if entry.evicted:
                return {}
            entry.last_accessed = self._clock()
            if not query_terms:
                return {}
            wanted = set(document_ids)
            matching = [d for d in entry.candidates(query_terms) if d in wanted]
            return entry.score(query_terms, matching)

    def has_index(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._indexes

    def get_document_count(self, tenant_id: str) -> int:
        entry = self._get(tenant_id)
        if entry is None:
            return 0
        with entry.lock:
            return 0 if entry.evicted else entry.document_count

    def tenants(self) -> List[str]:
        with self._lock:
            return sorted(self._indexes)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get(self, tenant_id: str) -> Optional[_TenantIndex]:
        with self._lock:
            return self._indexes.get(tenant_id)

    def _swap_in(self, tenant_id: str, entry: _TenantIndex) -> bool:
        previous = self._get(tenant_id)
        if previous is None:
            with self._lock:
                if tenant_id in self._indexes:
                    return False
                self._indexes[tenant_id] = entry
            return True
        with previous.lock:
            with self._lock:
                if self._indexes.get(tenant_id) is not previous:
                    return False
                self._indexes[tenant_id] = entry
            previous.evicted = True
        return True

    def _create_if_missing(self, tenant_id: str) -> _TenantIndex:
        with self._lock:
            entry = self._indexes.get(tenant_id)
            if entry is None:
                entry = _TenantIndex(k1=self._k1, b=self._b, now=self._clock())
                self._indexes[tenant_id] = entry
                logger.info("Created lexical index", extra={"tenant_id": tenant_id})
            return entry

    def _terms(self, text: str) -> List[str]:
        return self._tokenizer.tokenize(text, INDEX_TOKENIZER_OPTIONS)

    def _query_terms(self, query: str) -> List[str]:
        # Repeated query terms would be counted twice by the scorer
        return list(dict.fromkeys(self._terms(query)))
