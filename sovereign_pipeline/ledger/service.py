"""
Audit Ledger Service — Append-only, hash-chained decision record.

This service persists the pipeline's audit chain, one chain per
jurisdiction:
- Append new events with automatic hash chain computation
- Read a jurisdiction's chain in order
- Verify the integrity of a stored chain

Hashing and verification are delegated to the pure functions in
sovereign_pipeline.ledger.chain; this module only adds storage.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from sovereign_pipeline.domain.schema import AuditEvent, AuditStage, now_ms
from sovereign_pipeline.ledger.chain import (
    GENESIS_HASH,
    ChainValidation,
    append_event,
    validate_chain,
)
from sovereign_pipeline.ledger.models import AuditEventDB

logger = logging.getLogger(__name__)


class LedgerIntegrityError(Exception):
    """Raised when the stored chain head cannot be trusted for an append."""
    pass


class AuditLedgerService:
    """
    Audit ledger: the provenance record of every pipeline decision.

    There is no update and no delete. The head of each jurisdiction's chain
    is read inside the same session that inserts the next event.

    Usage:
        audit = AuditLedgerService(engine)
        audit.append("UAE", AuditStage.GUARD_CHECK, "accounting_apply", {...})
        result = audit.verify("UAE")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine)

    def append(
        self,
        jurisdiction: str,
        stage: AuditStage | str,
        event: str,
        payload: dict[str, Any],
        timestamp: int | None = None,
    ) -> AuditEvent:
        """
        Append a new event to a jurisdiction's chain.

        This is the ONLY write operation.

        Raises:
            LedgerIntegrityError: If the stored head row has no hash.
        """
        key = jurisdiction.upper()
        stage_name = stage.value if isinstance(stage, AuditStage) else stage
        timestamp = now_ms() if timestamp is None else timestamp

        with self.SessionLocal() as session:
            head = session.execute(
                select(AuditEventDB)
                .where(AuditEventDB.jurisdiction == key)
                .order_by(AuditEventDB.sequence_number.desc())
                .limit(1)
            ).scalar_one_or_none()

            if head is None:
                sequence, prev_hash = 0, GENESIS_HASH
            else:
                if not head.hash:
                    raise LedgerIntegrityError(
                        f"Cannot append to {key}: head #{head.sequence_number} has no hash"
                    )
                sequence, prev_hash = head.sequence_number + 1, head.hash

            audit_event = append_event(prev_hash, timestamp, stage_name, payload, event)

            session.add(
                AuditEventDB(
                    jurisdiction=key,
                    sequence_number=sequence,
                    timestamp=audit_event.timestamp,
                    stage=audit_event.stage,
                    event=audit_event.event,
                    payload=audit_event.payload,
                    prev_hash=audit_event.prev_hash,
                    hash=audit_event.hash,
                )
            )
            session.commit()

        logger.info(
            "Audit event appended: jurisdiction=%s seq=%d stage=%s hash=%s",
            key, sequence, stage_name, audit_event.hash[:16],
        )
        return audit_event

    def events(self, jurisdiction: str, limit: int | None = None) -> list[AuditEvent]:
        """Return a jurisdiction's chain in sequence order (oldest first)."""
        with self.SessionLocal() as session:
            stmt = (
                select(AuditEventDB)
                .where(AuditEventDB.jurisdiction == jurisdiction.upper())
                .order_by(AuditEventDB.sequence_number.asc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = session.execute(stmt).scalars().all()
            return [
                AuditEvent(
                    timestamp=row.timestamp,
                    stage=row.stage,
                    event=row.event,
                    payload=row.payload,
                    prev_hash=row.prev_hash,
                    hash=row.hash,
                )
                for row in rows
            ]

    def count(self, jurisdiction: str) -> int:
        with self.SessionLocal() as session:
            result = session.execute(
                select(func.count())
                .select_from(AuditEventDB)
                .where(AuditEventDB.jurisdiction == jurisdiction.upper())
            )
            return result.scalar() or 0

    def verify(self, jurisdiction: str) -> ChainValidation:
        """Recompute every hash in a jurisdiction's chain."""
        result = validate_chain(self.events(jurisdiction))
        if not result.is_valid:
            logger.error(
                "Audit chain broken: jurisdiction=%s index=%s",
                jurisdiction.upper(), result.broken_at,
            )
        return result
