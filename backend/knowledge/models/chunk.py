from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from ..core.database import Base


class KnowledgeChunk(Base):
    """One retrievable chunk of a tenant's uploaded document; ids are unique per tenant."""
    __tablename__ = "knowledge_chunks"

    tenant_id = Column(String(64), primary_key=True)
    id = Column(String(64), primary_key=True)
    file_name = Column(String(500), nullable=False, default="")
    content = Column(Text, nullable=False)
    preview = Column(Text, nullable=False, default="")
    size = Column(Integer, nullable=False, default=0)
    type = Column(String(50), nullable=False, default="")
    extra = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "file_name": self.file_name,
            "content": self.content,
            "preview": self.preview,
            "size": self.size,
            "type": self.type,
            "metadata": dict(self.extra or {}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
