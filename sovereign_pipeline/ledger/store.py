"""
Ledger Store — durable key/value persistence keyed by jurisdiction.

Holds the Sovereign State record, Mission Packets, the active-mission
pointer for each jurisdiction, and cached Dataset Snapshots.

Semantics:
- get-or-default: loads never fail the caller. A missing record yields
  defaults; a malformed record is logged and treated as a cache miss.
- overwrite on save: last writer wins. Two concurrent requests for the same
  jurisdiction can race, and the later save silently replaces the earlier.
"""

from __future__ import annotations

import logging
from typing import TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from sovereign_pipeline.domain.schema import (
    DatasetSnapshot,
    MissionPacket,
    SovereignState,
    now_ms,
)
from sovereign_pipeline.ledger.models import KeyValueRecordDB

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def state_key(jurisdiction: str) -> str:
    return f"state:{jurisdiction.upper()}"


def active_mission_key(jurisdiction: str) -> str:
    return f"active_mission:{jurisdiction.upper()}"


def mission_key(mission_id: str) -> str:
    return f"mission:{mission_id}"


def dataset_key(jurisdiction: str, focus: str) -> str:
    return f"dataset:{jurisdiction.upper()}:{focus.lower()}"


class LedgerStore:
    """
    Repository over the kv_records table.

    Every load returns a fresh pydantic snapshot; callers mutate their copy
    and hand it back to a save method.

    Usage:
        store = LedgerStore(create_ledger_engine(settings.database_url))
        state = store.load_state("UAE")
        ...
        store.save_state(state)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine)

    # ── Sovereign State ─────────────────────────────────────────

    def load_state(self, jurisdiction: str) -> SovereignState:
        """Return the stored state, or fresh defaults if absent or corrupt."""
        state = self._load_model(state_key(jurisdiction), SovereignState)
        if state is None:
            return SovereignState.fresh(jurisdiction)
        return state

    def save_state(self, state: SovereignState) -> None:
        """Stamp the current time and overwrite the jurisdiction's record."""
        state.last_updated_ts = now_ms()
        self._put(state_key(state.jurisdiction), state.model_dump_json())

    # ── Mission Packets ─────────────────────────────────────────

    def load_mission(self, mission_id: str) -> MissionPacket | None:
        return self._load_model(mission_key(mission_id), MissionPacket)

    def save_mission(self, packet: MissionPacket) -> None:
        self._put(mission_key(packet.mission_id), packet.model_dump_json())

    def get_active_mission_id(self, jurisdiction: str) -> str | None:
        return self._get(active_mission_key(jurisdiction)) or None

    def set_active_mission_id(self, jurisdiction: str, mission_id: str) -> None:
        self._put(active_mission_key(jurisdiction), mission_id)

    # ── Dataset Snapshots ───────────────────────────────────────

    def load_dataset(self, jurisdiction: str, focus: str) -> DatasetSnapshot | None:
        return self._load_model(dataset_key(jurisdiction, focus), DatasetSnapshot)

    def save_dataset(self, snapshot: DatasetSnapshot) -> None:
        self._put(
            dataset_key(snapshot.jurisdiction, snapshot.focus), snapshot.model_dump_json(),
        )

    # ── Internal ────────────────────────────────────────────────

    def _load_model(self, key: str, model: type[ModelT]) -> ModelT | None:
        raw = self._get(key)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                "Corrupt ledger record treated as missing: key=%s errors=%d",
                key, e.error_count(),
            )
            return None

    def _get(self, key: str) -> str | None:
        with self.SessionLocal() as session:
            return session.execute(
                select(KeyValueRecordDB.value).where(KeyValueRecordDB.key == key)
            ).scalar_one_or_none()

    def _put(self, key: str, value: str) -> None:
        with self.SessionLocal() as session:
            session.merge(KeyValueRecordDB(key=key, value=value))
            session.commit()
        logger.debug("Ledger record written: key=%s bytes=%d", key, len(value))
