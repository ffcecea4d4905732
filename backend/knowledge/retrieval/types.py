"""
Value types passed between retrieval stages.

All stage outputs are frozen; a stage that changes a score builds a new value
with ``dataclasses.replace`` instead of mutating the one it received.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

VECTOR = "vector"
KEYWORD = "keyword"


@dataclass(frozen=True)
class RankedResult:
    """One hit from a single retrieval method.

    ``rank`` is the 1-based position within that method's output and ``score``
    is method specific: cosine similarity, keyword match count or BM25 score.
    """
    id: str
    content: str
    score: float
    rank: int
    file_name: str = ""
    preview: str = ""
    size: int = 0
    type: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RankedList:
    """Ordered output of one retrieval method, tagged with the method name."""
    source: str
    results: List[RankedResult]


@dataclass(frozen=True)
class FusedResult:
    """A deduplicated result after rank fusion (and optional rerank)."""
    id: str
    content: str
    hybrid_score: float
    scores: Mapping[str, float] = field(default_factory=dict)
    file_name: str = ""
    preview: str = ""
    size: int = 0
    type: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)
    bm25_score: Optional[float] = None

    @property
    def vector_score(self) -> Optional[float]:
        """Cosine similarity, when the vector branch returned this id."""
        return self.scores.get(VECTOR)

    @property
    def keyword_score(self) -> Optional[float]:
        """Keyword match count, when the keyword branch returned this id."""
        return self.scores.get(KEYWORD)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "file_name": self.file_name,
            "preview": self.preview,
            "size": self.size,
            "type": self.type,
            "vector_score": self.vector_score,
            "keyword_score": self.keyword_score,
            "bm25_score": self.bm25_score,
            "hybrid_score": self.hybrid_score,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class SearchOutcome:
    """Result of one retrieval branch; ``error`` is set when the branch failed."""
    results: List[RankedResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, error: BaseException) -> "SearchOutcome":
        return cls(results=[], error=f"{type(error).__name__}: {error}")


@dataclass(frozen=True)
class RetrievedPassage:
    """Passage handed to prompt assembly: text plus descriptive metadata."""
    page_content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
