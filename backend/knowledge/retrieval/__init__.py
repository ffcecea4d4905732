"""
Retrieval module for hybrid search.

Contains:
- Unified tokenizer for lexical indexing, querying and keyword extraction
- Per-tenant in-memory BM25 index with idle eviction
- Vector and keyword search branches
- RRF (Reciprocal Rank Fusion) algorithm
- Optional BM25 rerank of fused results
- Hybrid retriever running both branches concurrently
"""

from .errors import (
    ConfigurationError,
    EmbeddingDimensionError,
    RetrievalError,
    RetrievalUnavailableError,
)
from .tokenizer import (
    INDEX_TOKENIZER_OPTIONS,
    KEYWORD_TOKENIZER_OPTIONS,
    Tokenizer,
    TokenizerOptions,
    get_tokenizer,
    is_chinese_text,
    tokenize,
)
from .types import (
    FusedResult,
    RankedList,
    RankedResult,
    RetrievedPassage,
    SearchOutcome,
)
from .lexical_index import (
    LexicalDocument,
    LexicalIndexManager,
)
from .protocols import (
    Embedder,
    KeywordHit,
    KeywordStoreProtocol,
    SearchBranch,
    VectorHit,
    VectorStoreProtocol,
)
from .vector_search import VectorSearch
from .keyword_search import KeywordSearch
from .rank_fusion import fuse
from .rerank import BM25Reranker
from .hybrid_retriever import (
    HybridRetriever,
    RetrievalOptions,
    RetrievalTrace,
)

__all__ = [
    "ConfigurationError",
    "EmbeddingDimensionError",
    "RetrievalError",
    "RetrievalUnavailableError",
    "INDEX_TOKENIZER_OPTIONS",
    "KEYWORD_TOKENIZER_OPTIONS",
    "Tokenizer",
    "TokenizerOptions",
    "get_tokenizer",
    "is_chinese_text",
    "tokenize",
    "FusedResult",
    "RankedList",
    "RankedResult",
    "RetrievedPassage",
    "SearchOutcome",
    "LexicalDocument",
    "LexicalIndexManager",
    "Embedder",
    "KeywordHit",
    "KeywordStoreProtocol",
    "SearchBranch",
    "VectorHit",
    "VectorStoreProtocol",
    "VectorSearch",
    "KeywordSearch",
    "fuse",
    "BM25Reranker",
    "HybridRetriever",
    "RetrievalOptions",
    "RetrievalTrace",
]
