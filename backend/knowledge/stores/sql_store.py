"""
SQLAlchemy-backed chunk store.

Holds chunk content and descriptive fields, answers the keyword branch's
substring queries, and is the source the lexical index is rebuilt from.
"""

from __future__ import annotations

import functools
import operator
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import case, delete, desc, func, or_, select
from sqlalchemy.orm import sessionmaker

from ..models.chunk import KnowledgeChunk
from ..retrieval.lexical_index import LexicalDocument
from ..retrieval.protocols import KeywordHit


LIKE_ESCAPE = "\\"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so a keyword only ever matches itself."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


class SqlChunkStore:
    """Repository for knowledge chunks."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def add_chunks(self, tenant_id: str, chunks: Iterable[Dict[str, Any]]) -> List[str]:
        """Insert chunks in one transaction; returns the inserted ids."""
        ids: List[str] = []
        with self._session_factory() as session, session.begin():
            for chunk in chunks:
                session.add(KnowledgeChunk(
                    id=chunk["id"],
                    tenant_id=str(tenant_id),
                    file_name=chunk.get("file_name", ""),
                    content=chunk["content"],
                    preview=chunk.get("preview", ""),
                    size=chunk.get("size", 0),
                    type=chunk.get("type", ""),
                    extra=dict(chunk.get("metadata") or {}),
                ))
                ids.append(chunk["id"])
        return ids

    def delete_chunks(self, tenant_id: str, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        with self._session_factory() as session, session.begin():
            result = session.execute(
                delete(KnowledgeChunk).where(
                    KnowledgeChunk.tenant_id == str(tenant_id),
                    KnowledgeChunk.id.in_(list(ids)),
                )
            )
            return result.rowcount or 0

    def list_chunks(self, tenant_id: str) -> List[KnowledgeChunk]:
        with self._session_factory() as session:
            result = session.execute(
                select(KnowledgeChunk)
                .where(KnowledgeChunk.tenant_id == str(tenant_id))
                .order_by(KnowledgeChunk.id.asc())
            )
            return list(result.scalars().all())

    def get_chunk(self, tenant_id: str, chunk_id: str) -> Optional[KnowledgeChunk]:
        with self._session_factory() as session:
            result = session.execute(
                select(KnowledgeChunk).where(
                    KnowledgeChunk.tenant_id == str(tenant_id),
                    KnowledgeChunk.id == chunk_id,
                )
            )
            return result.scalar_one_or_none()

    def count(self, tenant_id: str) -> int:
        with self._session_factory() as session:
            return session.execute(
                select(func.count()).select_from(KnowledgeChunk)
                .where(KnowledgeChunk.tenant_id == str(tenant_id))
            ).scalar_one()

    def load_lexical_documents(self, tenant_id: str) -> List[LexicalDocument]:
        """Tenant's chunks as lexical index documents."""
        return [
            LexicalDocument(
                id=chunk.id,
                content=chunk.content,
                file_name=chunk.file_name,
                preview=chunk.preview,
                metadata=dict(chunk.extra or {}),
            )
            for chunk in self.list_chunks(tenant_id)
        ]

    def keyword_search(
        self,
        tenant_id: str,
        keywords: Sequence[str],
        limit: int,
    ) -> List[KeywordHit]:
        """
        Chunks containing any keyword, case-insensitively.

        Each keyword is bound as a parameter and its LIKE wildcards are
        escaped, so quotes, ``%`` and ``_`` match only themselves.
        """
        keywords = [k for k in dict.fromkeys(keywords) if k]
        if not keywords or limit <= 0:
            return []

        conditions = [
            KnowledgeChunk.content.ilike(f"%{escape_like(keyword)}%", escape=LIKE_ESCAPE)
            for keyword in keywords
        ]
        match_count = functools.reduce(
            operator.add,
            [case((condition, 1), else_=0) for condition in conditions],
        ).label("match_count")

        stmt = (
            select(KnowledgeChunk, match_count)
            .where(KnowledgeChunk.tenant_id == str(tenant_id), or_(*conditions))
            .order_by(desc("match_count"), KnowledgeChunk.id.asc())
            .limit(limit)
        )
        with self._session_factory() as session:
            rows = session.execute(stmt).all()

        return [
            KeywordHit(
                id=chunk.id,
                content=chunk.content,
                match_count=int(count),
                file_name=chunk.file_name,
                preview=chunk.preview,
                size=chunk.size,
                type=chunk.type,
                metadata=dict(chunk.extra or {}),
            )
            for chunk, count in rows
        ]
