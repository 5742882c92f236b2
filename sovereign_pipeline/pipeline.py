"""
Decision Pipeline — the request-handling core.

Each chat request runs the same linear cycle:

    LOAD → PROMPT → INFER → EXTRACT/REPAIR → ENFORCE → PHASE → PERSIST → RESPOND

Every stage transition is appended to the jurisdiction's audit chain.
Inference and format failures degrade to a VETOED safe stub and are never
surfaced to the caller as errors.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from sovereign_pipeline.config import PipelineSettings
from sovereign_pipeline.datasets import build_fallback_rows
from sovereign_pipeline.domain.schema import (
    NODE_ID,
    AuditStage,
    ChatRequest,
    ChatResponse,
    DatasetRow,
    DatasetSnapshot,
    DecisionRecord,
    MissionPacket,
    SovereignState,
    StateUpdate,
    Verdict,
)
from sovereign_pipeline.governance.accounting import AccountingEnforcer
from sovereign_pipeline.governance.phases import PhaseAutomaton, last_user_text
from sovereign_pipeline.inference.extraction import (
    DecisionRecovery,
    RecoveryContext,
    extract_structure,
    inference_failure_stub,
)
from sovereign_pipeline.inference.gateway import CompletionFn, InferenceFailure, InferenceGateway
from sovereign_pipeline.inference.prompts import build_dataset_prompt, build_decision_prompt
from sovereign_pipeline.ledger.models import create_ledger_engine
from sovereign_pipeline.ledger.service import AuditLedgerService
from sovereign_pipeline.ledger.store import LedgerStore

logger = logging.getLogger(__name__)


class InvalidMissionPacket(ValueError):
    """Raised when a submitted mission packet fails validation."""
    pass


class DecisionPipeline:
    """
    Orchestrates one decision cycle per request against the ledger.

    Usage:
        pipeline = DecisionPipeline.from_settings(settings)
        response = await pipeline.chat(ChatRequest(messages=[...]))
    """

    def __init__(
        self,
        store: LedgerStore,
        audit: AuditLedgerService,
        gateway: InferenceGateway,
        settings: PipelineSettings,
        recovery: DecisionRecovery | None = None,
        enforcer: AccountingEnforcer | None = None,
        automaton: PhaseAutomaton | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.gateway = gateway
        self.settings = settings
        self.recovery = recovery or DecisionRecovery(
            gateway, repair_max_tokens=settings.repair_max_tokens,
        )
        self.enforcer = enforcer or AccountingEnforcer()
        self.automaton = automaton or PhaseAutomaton()
        self.log = structlog.get_logger()

    @classmethod
    def from_settings(
        cls, settings: PipelineSettings, completion: CompletionFn | None = None,
    ) -> DecisionPipeline:
        """Wire the ledger, audit chain and gateway from configuration."""
        engine = create_ledger_engine(settings.database_url)
        return cls(
            store=LedgerStore(engine),
            audit=AuditLedgerService(engine),
            gateway=InferenceGateway.from_settings(settings, completion=completion),
            settings=settings,
        )

    # ── Chat decision ───────────────────────────────────────────

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Run one decision cycle and return the annotated record."""
        country = request.country or self.settings.default_jurisdiction
        focus = request.focus or self.settings.default_focus

        if request.reset_state:
            state = SovereignState.fresh(country)
        else:
            state = self.store.load_state(country)
        state.last_focus = focus

        mission_id = (
            request.mission_id
            or state.active_mission_id
            or self.store.get_active_mission_id(country)
            or self.settings.default_mission_id
        )
        state.active_mission_id = mission_id
        self.store.set_active_mission_id(country, mission_id)

        packet = self.store.load_mission(mission_id)
        dataset = self.store.load_dataset(country, focus)
        prompt = build_decision_prompt(state, packet, dataset, request.messages, mission_id)

        self.log.info(
            "omega.pipeline.ingest",
            jurisdiction=country,
            mission_id=mission_id,
            phase_cursor=state.phase_cursor.value,
            messages=len(request.messages),
            reset_state=request.reset_state,
        )
        self._record(country, AuditStage.INGEST, "chat_request", {
            "mission_id": mission_id,
            "focus": focus,
            "phase_cursor": state.phase_cursor.value,
            "messages": len(request.messages),
            "has_packet": packet is not None,
            "has_dataset": dataset is not None,
        })

        context = RecoveryContext(mission_id=mission_id, objective=prompt.objective, state=state)
        temperature = (
            request.temperature if request.temperature is not None
            else self.settings.default_temperature
        )
        max_tokens = (
            request.max_tokens if request.max_tokens is not None
            else self.settings.default_max_tokens
        )

        try:
            raw_text = await self.gateway.invoke(
                prompt.text, max_tokens=max_tokens, temperature=temperature,
            )
        except InferenceFailure as e:
            record = inference_failure_stub(context)
            self.log.warning("omega.pipeline.inference_failed", mission_id=mission_id, error=str(e))
            self._record(country, AuditStage.PUBLISH, "inference_failure", {
                "mission_id": mission_id,
                "verdict": record.guard.verdict.value,
                "reasons": record.guard.reasons,
            })
            return self._respond(record, error=str(e))

        record = await self.recovery.recover(raw_text, context)
        proposed_phase = record.state_update.phase_cursor or None
        self._record(country, AuditStage.PLAN, "decision_extracted", {
            "mission_id": mission_id,
            "proposed_verdict": record.guard.verdict.value,
            "hs_codes": record.explorer.hs_codes,
            "resource_request": record.planner.resource_request.model_dump(),
        })

        record.mission_id = mission_id
        record.objective = prompt.objective
        record.phase_cursor = state.phase_cursor.value

        approved = self.enforcer.enforce(state, record)
        advanced = self.automaton.apply(state, approved, last_user_text(request.messages))
        record.state_update = StateUpdate.from_state(state, proposed_phase_cursor=proposed_phase)

        self._record(country, AuditStage.GUARD_CHECK, state.allocations[-1].type, {
            "mission_id": mission_id,
            "approved": approved,
            "risk_flags": record.guard.risk_flags,
            "phase_cursor": state.phase_cursor.value,
            "phase_advanced": advanced,
            **state.remaining(),
        })

        try:
            self.store.save_state(state)
        except SQLAlchemyError as e:
            logger.error("Failed to persist sovereign state: jurisdiction=%s error=%s", country, e)

        if not approved:
            record.guard.verdict = Verdict.VETOED

        self.log.info(
            "omega.pipeline.decision",
            jurisdiction=country,
            mission_id=mission_id,
            verdict=record.guard.verdict.value,
            phase_cursor=state.phase_cursor.value,
            phase_advanced=advanced,
        )
        self._record(country, AuditStage.PUBLISH, "decision_published", {
            "mission_id": mission_id,
            "verdict": record.guard.verdict.value,
            "reasons": record.guard.reasons,
        })
        return self._respond(record)

    # ── Dataset ─────────────────────────────────────────────────

    async def fetch_dataset(self, country: str | None = None, focus: str | None = None) -> dict[str, Any]:
        """
        Generate a trade-dependency dataset for (country, focus).

        Falls back to deterministic synthetic rows when the model fails or
        returns rows that do not validate. The snapshot is saved either way.
        """
        country = country or self.settings.default_jurisdiction
        focus = focus or self.settings.default_dataset_focus

        try:
            raw_text = await self.gateway.invoke(
                build_dataset_prompt(country, focus),
                max_tokens=self.settings.dataset_max_tokens,
                temperature=0.2,
            )
        except InferenceFailure as e:
            logger.warning("Dataset inference failed, using fallback rows: %s", e)
            raw_text = ""

        rows = self._dataset_rows(extract_structure(raw_text))
        synthetic = rows is None
        if synthetic:
            rows = build_fallback_rows(country, focus)

        self.store.save_dataset(
            DatasetSnapshot(jurisdiction=country, focus=focus, rows=rows, synthetic=synthetic)
        )
        self.log.info(
            "omega.pipeline.dataset",
            jurisdiction=country, focus=focus, rows=len(rows), synthetic=synthetic,
        )

        result: dict[str, Any] = {"rows": [row.model_dump() for row in rows]}
        if synthetic:
            result["note"] = "fallback"
        return result

    @staticmethod
    def _dataset_rows(parsed: Any) -> list[DatasetRow] | None:
        candidate = parsed.get("rows") if isinstance(parsed, dict) else parsed
        if not isinstance(candidate, list) or not candidate:
            return None
        try:
            return [DatasetRow.model_validate(item) for item in candidate]
        except ValidationError as e:
            logger.warning("Dataset rows rejected: errors=%d", e.error_count())
            return None

    # ── Missions ────────────────────────────────────────────────

    def set_mission(self, body: Any) -> dict[str, Any]:
        """
        Store a mission packet and optionally make it the active mission.

        Accepts {packet, country?, set_active?} or a bare packet.

        Raises:
            InvalidMissionPacket: If the packet does not validate.
        """
        envelope = body if isinstance(body, dict) else {}
        raw_packet = envelope.get("packet", body) if isinstance(body, dict) else body

        try:
            packet = MissionPacket.model_validate(raw_packet)
        except ValidationError as e:
            raise InvalidMissionPacket("Invalid mission packet") from e

        self.store.save_mission(packet)

        country = str(envelope.get("country") or self.settings.default_jurisdiction)
        set_active = envelope.get("set_active") is not False
        if set_active:
            self.store.set_active_mission_id(country, packet.mission_id)
            state = self.store.load_state(country)
            state.active_mission_id = packet.mission_id
            self.store.save_state(state)

        self.log.info(
            "omega.pipeline.mission_saved",
            mission_id=packet.mission_id, jurisdiction=country, active=set_active,
        )
        return {"ok": True, "active_mission_id": packet.mission_id if set_active else None}

    def get_mission(self, country: str | None = None) -> dict[str, Any]:
        country = country or self.settings.default_jurisdiction
        active = self.store.get_active_mission_id(country)
        if not active:
            return {"active_mission_id": None, "packet": None}

        packet = self.store.load_mission(active)
        return {
            "active_mission_id": active,
            "packet": packet.model_dump() if packet else None,
        }

    def health(self) -> dict[str, Any]:
        return {"ok": True, "node": NODE_ID, "model": self.gateway.model}

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _respond(record: DecisionRecord, error: str | None = None) -> ChatResponse:
        return ChatResponse(text=record.model_dump_json(), json_record=record, error=error)

    def _record(
        self, jurisdiction: str, stage: AuditStage, event: str, payload: dict[str, Any],
    ) -> None:
        """Append to the audit chain; a failed append never fails the request."""
        try:
            self.audit.append(jurisdiction, stage, event, payload)
        except Exception as e:
            logger.error("Failed to append audit event: stage=%s error=%s", stage.value, e)
