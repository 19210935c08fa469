"""
tally.database.models — SQLAlchemy 2.0 Data Models
===================================================

The SQL backend stores every collection in one table:

- documents — ``(collection, doc_id)`` primary key + JSON body

Collections are small and access is by primary key, so a single
key/document table keeps the store contract identical across the
in-memory and SQL backends.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Tally ORM models."""


# ---------------------------------------------------------------------------
# Documents — one row per (collection, doc_id)
# ---------------------------------------------------------------------------
class Document(Base):
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_documents_collection", "collection"),
    )

    def __repr__(self) -> str:
        return f"<Document {self.collection}/{self.doc_id}>"
