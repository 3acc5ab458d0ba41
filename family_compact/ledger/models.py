"""
Family Records — SQLAlchemy models backing the document store and audit feed.

Two tables:

1. ``documents``      — JSON documents keyed by (collection, doc_id) and
                        scoped by family. Agreements, proposals, renewals,
                        rejection patterns and notifications all live here.
2. ``audit_entries``  — the family activity feed. APPEND-ONLY and
                        hash-chained per family, so any retroactive edit is
                        detectable by ``AuditLedger.verify_chain``.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Engine,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all family record models."""
    pass


class DocumentDB(Base):
    """
    A single stored document.

    ``data`` holds the pydantic model dumped in JSON mode. ``family_id`` is
    lifted out of the document so family-scoped queries can filter in SQL.
    """

    __tablename__ = "documents"

    collection = Column(String(64), primary_key=True)
    doc_id = Column(String(64), primary_key=True)
    family_id = Column(String(64), nullable=True, index=True)
    data = Column(JSONDocument, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_documents_collection_family", "collection", "family_id"),
    )

    def __repr__(self) -> str:
        return f"<Document {self.collection}/{self.doc_id} family={self.family_id}>"


class AuditEntryDB(Base):
    """
    A single entry in a family's activity feed.

    This table is APPEND-ONLY. Each row stores SHA-256 of
    (previous_hash || canonical_json(fields)); sequence numbers restart at
    zero for every family.
    """

    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    family_id = Column(String(64), nullable=False, index=True)
    sequence_number = Column(
        Integer, nullable=False,
        comment="Monotonically increasing within a family",
    )
    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)
    entry_type = Column(String(50), nullable=False, index=True)
    actor_id = Column(String(64), nullable=True)
    description = Column(Text, nullable=False, default="")
    entry_metadata = Column("metadata", JSONDocument, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("family_id", "sequence_number", name="uq_audit_family_sequence"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEntry family={self.family_id} seq={self.sequence_number} "
            f"type={self.entry_type} hash={self.entry_hash[:12]}...>"
        )


def create_store_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Build the engine shared by the document store and the audit ledger.

    SQLite gets a static pool so an in-memory database survives across
    sessions.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=echo)


def initialize(engine: Engine) -> None:
    """Create all tables."""
    Base.metadata.create_all(engine)
