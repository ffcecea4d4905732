"""
Knowledge indexer keeping the chunk stores and the lexical index in step.

Chunks are written to the SQL chunk store first (source of truth), then to
the vector store, then to the tenant's lexical index. A failure at any step
rolls back the steps already completed, so a chunk is either searchable by
every branch or by none.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..retrieval.errors import EmbeddingDimensionError
from ..retrieval.lexical_index import LexicalDocument, LexicalIndexManager
from ..retrieval.protocols import Embedder
from ..stores.chroma_store import ChromaVectorStore
from ..stores.sql_store import SqlChunkStore


PREVIEW_LENGTH = 200


@dataclass
class ChunkInput:
    """A pre-chunked, pre-labelled piece of content."""
    id: str
    content: str
    file_name: str = ""
    preview: Optional[str] = None
    size: Optional[int] = None
    type: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def descriptive_fields(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "preview": self.preview if self.preview is not None else self.content[:PREVIEW_LENGTH],
            "size": self.size if self.size is not None else len(self.content),
            "type": self.type,
        }


@dataclass
class IndexDocumentRequest:
    """Request data for indexing chunks; embeddings are computed when omitted."""
    tenant_id: str
    chunks: List[ChunkInput]
    embeddings: Optional[List[List[float]]] = None


@dataclass
class IndexResult:
    """Result of an indexing operation."""
    success: bool
    tenant_id: str
    chunk_count: int = 0
    sql_indexed: bool = False
    vector_indexed: bool = False
    lexical_indexed: bool = False
    error: Optional[str] = None


@dataclass
class DeleteResult:
    """Result of a delete operation."""
    success: bool
    tenant_id: str
    sql_deleted: int = 0
    vector_deleted: bool = False
    lexical_deleted: int = 0
    error: Optional[str] = None


class KnowledgeIndexer:
    """
    Manages atomic indexing operations across the chunk, vector and lexical stores.

    Example:
        >>> indexer = KnowledgeIndexer(chunk_store, vector_store, embedder, lexical_index)
        >>> result = indexer.index_chunks(IndexDocumentRequest(
        ...     tenant_id="tenant-1",
        ...     chunks=[ChunkInput(id="c1", content="Bitcoin proof of work")],
        ... ))
        >>> result.success
        True
    """

    def __init__(
        self,
        chunk_store: SqlChunkStore,
        vector_store: ChromaVectorStore,
        embedder: Embedder,
        lexical_index: LexicalIndexManager,
        expected_dimension: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._chunk_store = chunk_store
        self._vector_store = vector_store
        self._embedder = embedder
        self._lexical_index = lexical_index
        self._expected_dimension = expected_dimension
        self._logger = logger or logging.getLogger("knowledge.services.indexer")

    def index_chunks(self, request: IndexDocumentRequest) -> IndexResult:
        """
        Atomically index chunks in all three stores.

        Raises:
            EmbeddingDimensionError: If the embedder returns vectors of the wrong size
        """
        tenant_id = request.tenant_id
        result = IndexResult(success=False, tenant_id=tenant_id, chunk_count=len(request.chunks))

        if not request.chunks:
            result.error = "No chunks provided for indexing"
            self._logger.warning("Index request has no chunks", extra={"tenant_id": tenant_id})
            return result

        ids = [chunk.id for chunk in request.chunks]
        texts = [chunk.content for chunk in request.chunks]

        try:
            embeddings = request.embeddings or self._embedder.embed_documents(texts)
        except Exception as e:
            result.error = f"Embedding failed: {e}"
            self._logger.error(
                "Failed to embed chunks",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
            return result
        if len(embeddings) != len(texts):
            result.error = f"Got {len(embeddings)} embeddings for {len(texts)} chunks"
            return result
        self._check_dimensions(embeddings)

        # Step 1: SQL chunk store
        try:
            self._chunk_store.add_chunks(tenant_id, [
                {"id": chunk.id, "content": chunk.content, "metadata": chunk.metadata,
                 **chunk.descriptive_fields()}
                for chunk in request.chunks
            ])
            result.sql_indexed = True
        except Exception as e:
            result.error = f"Chunk store indexing failed: {e}"
            self._logger.error(
                "Failed to index in chunk store",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
            return result

        # Step 2: vector store
        try:
            self._vector_store.add(
                tenant_id,
                ids,
                texts,
                embeddings,
                [{**chunk.metadata, **chunk.descriptive_fields()} for chunk in request.chunks],
            )
            result.vector_indexed = True
        except Exception as e:
            self._logger.error(
                "Vector indexing failed, rolling back chunk store",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
            self._rollback(tenant_id, ids, vector=False)
            result.sql_indexed = False
            result.error = f"Vector store indexing failed (chunk store rolled back): {e}"
            return result

        # Step 3: lexical index
        try:
            for chunk in request.chunks:
                fields = chunk.descriptive_fields()
                self._lexical_index.add_document(tenant_id, LexicalDocument(
                    id=chunk.id,
                    content=chunk.content,
                    file_name=fields["file_name"],
                    preview=fields["preview"],
                    metadata=dict(chunk.metadata),
                ))
            result.lexical_indexed = True
        except Exception as e:
            self._logger.error(
                "Lexical indexing failed, rolling back chunk and vector stores",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
            for chunk_id in ids:
                self._lexical_index.remove_document(tenant_id, chunk_id)
            self._rollback(tenant_id, ids, vector=True)
            result.sql_indexed = False
            result.vector_indexed = False
            result.error = f"Lexical indexing failed (stores rolled back): {e}"
            return result

        self._logger.info(
            "Indexed chunks",
            extra={"tenant_id": tenant_id, "chunk_count": len(ids)},
        )
        result.success = True
        return result

    def delete_chunks(self, tenant_id: str, chunk_ids: List[str]) -> DeleteResult:
        """
        Delete chunks from every store, continuing past individual store failures.

        ``success`` is True when at least one store deletion succeeded.
        """
        result = DeleteResult(success=False, tenant_id=tenant_id)
        errors: List[str] = []
        sql_ok = vector_ok = lexical_ok = False

        try:
            result.sql_deleted = self._chunk_store.delete_chunks(tenant_id, chunk_ids)
            sql_ok = True
        except Exception as e:
            errors.append(f"Chunk store deletion failed: {e}")
            self._logger.error(
                "Failed to delete from chunk store",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )

        try:
            self._vector_store.delete(tenant_id, chunk_ids)
            result.vector_deleted = True
            vector_ok = True
        except Exception as e:
            errors.append(f"Vector store deletion failed: {e}")
            self._logger.error(
                "Failed to delete from vector store",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )

        try:
            result.lexical_deleted = sum(
                1 for chunk_id in chunk_ids
                if self._lexical_index.remove_document(tenant_id, chunk_id)
            )
            lexical_ok = True
        except Exception as e:
            errors.append(f"Lexical index deletion failed: {e}")
            self._logger.error(
                "Failed to delete from lexical index",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )

        result.success = sql_ok or vector_ok or lexical_ok
        if errors:
            result.error = "; ".join(errors)
        else:
            self._logger.info(
                "Deleted chunks",
                extra={"tenant_id": tenant_id, "chunk_count": len(chunk_ids)},
            )
        return result

    def rebuild_lexical_index(self, tenant_id: str) -> int:
        """Rebuild a tenant's lexical index from the chunk store; returns the document count."""
        documents = self._chunk_store.load_lexical_documents(tenant_id)
        self._lexical_index.build_index(tenant_id, documents)
        return len(documents)

    def check_consistency(self, tenant_id: str) -> Dict[str, Any]:
        """
        Compare chunk counts across stores.

        An evicted lexical index is not an inconsistency; it is rebuilt on demand.
        """
        sql_count = self._chunk_store.count(tenant_id)
        vector_count = self._vector_store.count(tenant_id)
        lexical_loaded = self._lexical_index.has_index(tenant_id)
        lexical_count = self._lexical_index.get_document_count(tenant_id)
        consistent = sql_count == vector_count and (not lexical_loaded or lexical_count == sql_count)
        return {
            "sql_count": sql_count,
            "vector_count": vector_count,
            "lexical_loaded": lexical_loaded,
            "lexical_count": lexical_count,
            "consistent": consistent,
        }

    def _check_dimensions(self, embeddings: List[List[float]]) -> None:
        if self._expected_dimension is None:
            return
        for embedding in embeddings:
            if len(embedding) != self._expected_dimension:
                raise EmbeddingDimensionError(self._expected_dimension, len(embedding))

    def _rollback(self, tenant_id: str, ids: List[str], vector: bool) -> None:
        if vector:
            try:
                self._vector_store.delete(tenant_id, ids)
            except Exception as e:
                self._logger.error(
                    "Failed to rollback vector store - manual cleanup may be required",
                    extra={"tenant_id": tenant_id, "error": str(e)},
                )
        try:
            self._chunk_store.delete_chunks(tenant_id, ids)
            self._logger.info("Rolled back chunk store", extra={"tenant_id": tenant_id})
        except Exception as e:
            self._logger.error(
                "Failed to rollback chunk store - manual cleanup may be required",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
