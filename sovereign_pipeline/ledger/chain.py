"""
Audit Chain — pure hash-chain construction and verification.

Every pipeline decision is recorded as an AuditEvent whose hash covers the
previous event's hash, so any retroactive edit is detectable by walking the
chain from the genesis hash. Nothing here touches storage; the SQL-backed
AuditLedgerService and the tests both build on these functions.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Iterable

from sovereign_pipeline.domain.schema import AuditEvent

GENESIS_HASH = "0" * 64  # The "previous hash" for the first event in every chain


@dataclass(frozen=True)
class ChainValidation:
    """Result of walking a chain."""

    is_valid: bool
    broken_at: int | None = None


def canonicalize(payload: Any) -> str:
    """Serialize with sorted keys at every depth: one byte string per logical payload."""
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str,
    )


def compute_hash(
    prev_hash: str,
    timestamp: int,
    stage: str,
    payload: Any,
    event: str = "",
) -> str:
    """SHA-256 over the canonical JSON array [prev_hash, timestamp, stage, event, payload]."""
    material = canonicalize([prev_hash, timestamp, stage, event, payload])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def append_event(
    prev_hash: str,
    timestamp: int,
    stage: str,
    payload: dict[str, Any],
    event: str = "",
) -> AuditEvent:
    """Create the next event of a chain whose head hash is `prev_hash`."""
    return AuditEvent(
        timestamp=timestamp,
        stage=stage,
        event=event,
        payload=payload,
        prev_hash=prev_hash,
        hash=compute_hash(prev_hash, timestamp, stage, payload, event),
    )


def validate_chain(events: Iterable[AuditEvent]) -> ChainValidation:
    """
    Walk the chain from the genesis hash.

    At each index the stored prev_hash must equal the running hash, and the
    stored hash must equal a fresh recomputation. The first failure of
    either check reports that index.
    """
    running = GENESIS_HASH
    for index, event in enumerate(events):
        if event.prev_hash != running:
            return ChainValidation(is_valid=False, broken_at=index)

        expected = compute_hash(
            event.prev_hash, event.timestamp, event.stage, event.payload, event.event,
        )
        if event.hash != expected:
            return ChainValidation(is_valid=False, broken_at=index)

        running = event.hash

    return ChainValidation(is_valid=True, broken_at=None)
