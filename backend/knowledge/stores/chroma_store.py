"""
ChromaDB-backed vector store.

All tenants share one collection using cosine space; every query filters on
the ``tenant_id`` metadata key. Chunk ids are only unique within a tenant, so
stored ids are prefixed with the tenant id. Similarity is ``1 - cosine distance``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import chromadb
from chromadb.config import Settings as ChromaSettings

from ..core.config import Settings, get_settings
from ..retrieval.protocols import VectorHit


TENANT_KEY = "tenant_id"


def _stored_id(tenant_id: str, chunk_id: str) -> str:
    return f"{tenant_id}:{chunk_id}"


def create_chroma_client(settings: Optional[Settings] = None):
    """Build a client from settings: remote server, persistent directory or in-memory."""
    settings = settings or get_settings()
    if settings.chroma_server_host:
        return chromadb.HttpClient(
            host=settings.chroma_server_host,
            port=settings.chroma_server_port,
            ssl=settings.chroma_server_ssl,
            headers={"Authorization": f"Bearer {settings.chroma_server_api_key}"} if settings.chroma_server_api_key else None,
        )
    if settings.chroma_persist_directory:
        persist_dir = Path(settings.chroma_persist_directory)
        persist_dir.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(
            path=str(persist_dir),
            settings=ChromaSettings(anonymized_telemetry=False),
        )
    return chromadb.Client(settings=ChromaSettings(anonymized_telemetry=False))


def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    # Chroma only accepts scalar, non-null metadata values
    return {
        key: value for key, value in metadata.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaVectorStore:
    """
    Vector side of the chunk store.

    Example:
        >>> store = ChromaVectorStore(chromadb.Client(), collection_name="knowledge")
        >>> store.add("t1", ["c1"], ["hello"], [[0.1, 0.2]], [{"file_name": "a.txt"}])
        >>> store.similarity_search("t1", [0.1, 0.2], limit=5, min_similarity=0.3)[0].id
        'c1'
    """

    def __init__(
        self,
        client=None,
        collection_name: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self._client = client if client is not None else create_chroma_client(settings)
        self._collection = self._client.get_or_create_collection(
            collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )

    @property
    def collection(self):
        return self._collection

    def add(
        self,
        tenant_id: str,
        ids: Sequence[str],
        contents: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        metadatas: Sequence[Dict[str, Any]],
    ) -> None:
        prepared = []
        for metadata in metadatas:
            cleaned = _clean_metadata(dict(metadata))
            cleaned[TENANT_KEY] = str(tenant_id)
            prepared.append(cleaned)
        self._collection.add(
            ids=[_stored_id(tenant_id, chunk_id) for chunk_id in ids],
            documents=list(contents),
            embeddings=[list(e) for e in embeddings],
            metadatas=prepared,
        )

    def similarity_search(
        self,
        tenant_id: str,
        embedding: Sequence[float],
        limit: int,
        min_similarity: float,
    ) -> List[VectorHit]:
        results = self._collection.query(
            query_embeddings=[list(embedding)],
            where={TENANT_KEY: {"$eq": str(tenant_id)}},
            n_results=limit,
            include=["documents", "metadatas", "distances"],
        )

        prefix = _stored_id(tenant_id, "")
        hits: List[VectorHit] = []
        if not results["ids"] or not results["ids"][0]:
            return hits

        for idx, stored_id in enumerate(results["ids"][0]):
            similarity = 1.0 - float(results["distances"][0][idx])
            if similarity < min_similarity:
                continue
            metadata = dict(results["metadatas"][0][idx] or {}) if results["metadatas"] else {}
            metadata.pop(TENANT_KEY, None)
            hits.append(VectorHit(
                id=stored_id[len(prefix):] if stored_id.startswith(prefix) else stored_id,
                content=results["documents"][0][idx],
                similarity=similarity,
                metadata=metadata,
            ))

        hits.sort(key=lambda h: (-h.similarity, h.id))
        return hits

    def delete(self, tenant_id: str, ids: Sequence[str]) -> None:
        if not ids:
            return
        self._collection.delete(
            ids=[_stored_id(tenant_id, chunk_id) for chunk_id in ids],
            where={TENANT_KEY: {"$eq": str(tenant_id)}},
        )

    def count(self, tenant_id: str) -> int:
        return len(self._collection.get(where={TENANT_KEY: {"$eq": str(tenant_id)}}, include=[])["ids"])
