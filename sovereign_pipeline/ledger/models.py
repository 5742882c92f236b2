"""
Ledger Storage — SQLAlchemy models for the pipeline's persistent records.

Two tables back the pipeline:

1. kv_records: overwrite-semantics key/value store for Sovereign State,
   Mission Packets, active-mission pointers and Dataset Snapshots
2. audit_events: append-only, hash-chained decision audit log, one chain
   per jurisdiction
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ledger models."""
    pass


class KeyValueRecordDB(Base):
    """
    A single key/value record. Last writer wins; there is no version column.

    Values are stored as raw JSON text so that a malformed record can be
    detected on read and treated as a cache miss.
    """

    __tablename__ = "kv_records"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<KeyValueRecord key={self.key}>"


class AuditEventDB(Base):
    """
    One link of a jurisdiction's audit hash chain.

    This table is APPEND-ONLY. The hash of each row covers
    the canonical JSON array [prev_hash, timestamp, stage, event, payload].
    """

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    jurisdiction = Column(String(100), nullable=False)
    sequence_number = Column(
        Integer, nullable=False,
        comment="Position in the jurisdiction's chain, starting at 0",
    )
    timestamp = Column(BigInteger, nullable=False, comment="Epoch milliseconds")
    stage = Column(String(30), nullable=False)
    event = Column(String(100), nullable=False, default="")
    payload = Column(JSON, nullable=False)
    prev_hash = Column(String(64), nullable=False)
    hash = Column(String(64), nullable=False)

    __table_args__ = (
        Index(
            "ix_audit_jurisdiction_sequence", "jurisdiction", "sequence_number", unique=True,
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent {self.jurisdiction}#{self.sequence_number} "
            f"stage={self.stage} hash={self.hash[:12]}...>"
        )


def create_ledger_engine(database_url: str) -> Engine:
    """
    Create an engine and make sure the ledger tables exist.

    In-memory SQLite URLs share one connection so that every session sees
    the same database.
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(database_url, echo=False)
    Base.metadata.create_all(engine)
    return engine
