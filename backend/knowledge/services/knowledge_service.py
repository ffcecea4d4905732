"""
Composition root wiring stores, embedder, lexical index and retriever from settings.
"""

import logging
from typing import Any, List, Optional

from sqlalchemy.orm import sessionmaker

from ..core.config import Settings, get_settings
from ..core.database import create_db_engine, create_session_factory, init_db
from ..logging_utils import bind_tenant_context
from ..retrieval.hybrid_retriever import HybridRetriever, RetrievalOptions, RetrievalTrace
from ..retrieval.keyword_search import KeywordSearch
from ..retrieval.lexical_index import LexicalIndexManager
from ..retrieval.protocols import Embedder
from ..retrieval.tokenizer import Tokenizer
from ..retrieval.types import FusedResult, RetrievedPassage
from ..retrieval.vector_search import VectorSearch
from ..stores.chroma_store import ChromaVectorStore
from ..stores.sql_store import SqlChunkStore
from .embedding_service import OpenAIEmbedder
from .indexer import DeleteResult, IndexDocumentRequest, IndexResult, KnowledgeIndexer


logger = logging.getLogger(__name__)


class KnowledgeService:
    """
    Hybrid retrieval over tenant knowledge bases.

    Every collaborator can be injected; anything omitted is built from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[sessionmaker] = None,
        vector_store: Optional[ChromaVectorStore] = None,
        embedder: Optional[Embedder] = None,
        lexical_index: Optional[LexicalIndexManager] = None,
    ) -> None:
        self._settings = settings or get_settings()
        settings = self._settings

        if session_factory is None:
            engine = create_db_engine(settings=settings)
            init_db(engine)
            session_factory = create_session_factory(engine)
        self._chunk_store = SqlChunkStore(session_factory)
        self._vector_store = vector_store or ChromaVectorStore(settings=settings)
        self._embedder = embedder or OpenAIEmbedder(settings=settings)
        tokenizer = Tokenizer(segmenter=settings.tokenizer_segmenter)
        self._lexical_index = lexical_index or LexicalIndexManager.from_settings(
            settings, tokenizer=tokenizer, loader=self._chunk_store.load_lexical_documents,
        )

        self._retriever = HybridRetriever(
            vector_search=VectorSearch(
                self._embedder,
                self._vector_store,
                expected_dimension=settings.embedding_dimension,
                default_min_similarity=settings.min_similarity,
            ),
            keyword_search=KeywordSearch(self._chunk_store, tokenizer, settings.max_keywords),
            lexical_index=self._lexical_index,
            options=RetrievalOptions.from_settings(settings),
            max_workers=settings.retrieval_max_workers,
            slow_query_threshold_ms=settings.slow_query_threshold_ms,
        )
        self._indexer = KnowledgeIndexer(
            self._chunk_store,
            self._vector_store,
            self._embedder,
            self._lexical_index,
            expected_dimension=settings.embedding_dimension,
        )

        logger.info(
            "KnowledgeService initialized",
            extra={
                "segmenter": tokenizer.segmenter,
                "vector_weight": settings.vector_weight,
                "keyword_weight": settings.keyword_weight,
                "use_bm25_rerank": settings.use_bm25_rerank,
            },
        )

    @property
    def retriever(self) -> HybridRetriever:
        return self._retriever

    @property
    def indexer(self) -> KnowledgeIndexer:
        return self._indexer

    @property
    def lexical_index(self) -> LexicalIndexManager:
        return self._lexical_index

    @property
    def chunk_store(self) -> SqlChunkStore:
        return self._chunk_store

    def retrieve(self, tenant_id: str, query: str, **overrides: Any) -> List[FusedResult]:
        bind_tenant_context(tenant_id)
        return self._retriever.retrieve(tenant_id, query, **overrides)

    def retrieve_with_trace(self, tenant_id: str, query: str, **overrides: Any) -> RetrievalTrace:
        bind_tenant_context(tenant_id)
        return self._retriever.retrieve_with_trace(tenant_id, query, **overrides)

    def get_relevant_documents(self, tenant_id: str, query: str, **overrides: Any) -> List[RetrievedPassage]:
        bind_tenant_context(tenant_id)
        return self._retriever.get_relevant_documents(tenant_id, query, **overrides)

    def index(self, request: IndexDocumentRequest) -> IndexResult:
        bind_tenant_context(request.tenant_id)
        return self._indexer.index_chunks(request)

    def delete(self, tenant_id: str, chunk_ids: List[str]) -> DeleteResult:
        bind_tenant_context(tenant_id)
        return self._indexer.delete_chunks(tenant_id, chunk_ids)

    def close(self) -> None:
        self._retriever.close()
        self._lexical_index.close()

    def __enter__(self) -> "KnowledgeService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
