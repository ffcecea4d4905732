"""
Protocol definitions for retrieval collaborators.

The orchestrator only depends on these narrow interfaces, so each collaborator
can be swapped for another backend or a stub in tests.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .types import SearchOutcome


@dataclass(frozen=True)
class VectorHit:
    """Row returned by a similarity query; ``similarity`` is 1 - cosine distance."""
    id: str
    content: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class KeywordHit:
    """Row returned by a keyword query with the number of distinct keywords matched."""
    id: str
    content: str
    match_count: int
    file_name: str = ""
    preview: str = ""
    size: int = 0
    type: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Embedder(Protocol):
    """Produces fixed-dimension embedding vectors."""

    def embed_query(self, text: str) -> List[float]:
        ...

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        ...


@runtime_checkable
class VectorStoreProtocol(Protocol):
    """Vector side of the persistent chunk store."""

    def add(
        self,
        tenant_id: str,
        ids: Sequence[str],
        contents: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        metadatas: Sequence[Dict[str, Any]],
    ) -> None:
        ...

    def similarity_search(
        self,
        tenant_id: str,
        embedding: Sequence[float],
        limit: int,
        min_similarity: float,
    ) -> List[VectorHit]:
        """Hits for the tenant with similarity >= floor, most similar first."""
        ...

    def delete(self, tenant_id: str, ids: Sequence[str]) -> None:
        ...


@runtime_checkable
class KeywordStoreProtocol(Protocol):
    """Substring-match side of the persistent chunk store."""

    def keyword_search(
        self,
        tenant_id: str,
        keywords: Sequence[str],
        limit: int,
    ) -> List[KeywordHit]:
        """Chunks containing any keyword (case-insensitive), most matches first."""
        ...


@runtime_checkable
class SearchBranch(Protocol):
    """One retrieval method run by the hybrid retriever."""

    def run(
        self,
        tenant_id: str,
        query: str,
        limit: int,
        min_similarity: Optional[float] = None,
    ) -> SearchOutcome:
        ...
