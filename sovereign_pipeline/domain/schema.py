"""
Domain Schema — Pydantic models for the Sovereign Decision Pipeline.

These models are the canonical data structures shared by the ledger store,
the inference layer, the governance components and the API:

- SovereignState: authoritative resource / staffing ledger for one jurisdiction
- MissionPacket: externally authored objective and phase definition
- DatasetSnapshot: cached trade-dependency rows used as a numeric anchor
- DecisionRecord: structured output of one pipeline run
- AuditEvent: one link in the hash-chained audit log

The DecisionRecord family is parsed from untrusted model output, so every
block is lenient: wrong shapes degrade to defaults instead of raising.
"""

from __future__ import annotations

import enum
import json
import math
import time
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ModelWrapValidatorHandler,
    PrivateAttr,
    StrictStr,
    field_validator,
    model_validator,
)

NODE_ID = "MISSION ORCHESTRATOR V3.2.1"
STATE_VERSION = "3.2.1"
ALLOCATION_LOG_LIMIT = 60
BRAIN_ORDER = ["EXPLORER", "PLANNER", "GUARD"]


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def finite_number(value: Any) -> float:
    """Coerce an untrusted value to a finite float (0.0 when impossible)."""
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def optional_number(value: Any) -> float | None:
    """Coerce an optional caller setting to a finite float (None when unusable)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def string_list(value: Any) -> list[str]:
    """Coerce an untrusted value to a list of strings ([] when not a list)."""
    if not isinstance(value, list):
        return []
    return [item if isinstance(item, str) else str(item) for item in value]


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class Phase(str, enum.Enum):
    """Mission lifecycle phases, in order. The last phase is terminal."""

    FEASIBILITY = "PHASE_1_FEASIBILITY"
    SANDBOX = "PHASE_2_SANDBOX"
    SCALE = "PHASE_3_SCALE"
    DOMINION = "PHASE_4_DOMINION"

    @classmethod
    def coerce(cls, value: Any) -> Phase:
        """Return the matching phase, or the initial phase for anything unrecognized."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except (ValueError, TypeError):
            return cls.FEASIBILITY

    @classmethod
    def is_valid(cls, value: Any) -> bool:
        return isinstance(value, str) and value in cls._value2member_map_

    def next(self) -> Phase:
        order = list(Phase)
        index = order.index(self)
        return order[min(len(order) - 1, index + 1)]


class Verdict(str, enum.Enum):
    """Guard verdict: the policy gate on committing resource changes."""

    APPROVED = "APPROVED"
    VETOED = "VETOED"

    @classmethod
    def coerce(cls, value: Any) -> Verdict:
        """Anything other than an explicit APPROVED is a veto."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value.strip().upper() == cls.APPROVED.value:
            return cls.APPROVED
        return cls.VETOED


class AuditStage(str, enum.Enum):
    """Pipeline stages recorded in the audit chain."""

    INGEST = "INGEST"
    LEAK_DETECT = "LEAK_DETECT"
    PLAN = "PLAN"
    GUARD_CHECK = "GUARD_CHECK"
    PUBLISH = "PUBLISH"
    AUDIT_APPEND = "AUDIT_APPEND"


# ════════════════════════════════════════════════════════════════
# Sovereign State
# ════════════════════════════════════════════════════════════════


class ResourcePool(BaseModel):
    """A finite resource pool. `used` may never exceed `total`."""

    total: float = Field(ge=0)
    used: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def _used_within_total(self) -> ResourcePool:
        if self.used > self.total:
            raise ValueError(f"pool overdrawn: used={self.used} total={self.total}")
        return self

    @property
    def remaining(self) -> float:
        return max(0.0, self.total - self.used)


class AllocationEvent(BaseModel):
    """One entry in the allocation ring buffer."""

    ts: int = Field(default_factory=now_ms)
    mission_id: str = ""
    phase: str = ""
    type: str
    power_mw: float = 0.0
    land_sqft: float = 0.0
    water_gpd: float = 0.0
    hires_local: int = 0
    hires_golden_visas: int = 0
    hires_global: int = 0


class SovereignState(BaseModel):
    """
    The authoritative resource / staffing ledger and phase cursor for one
    jurisdiction. Created lazily with fixed defaults, never deleted.
    """

    version: str = STATE_VERSION
    jurisdiction: str
    active_mission_id: str | None = None
    phase_cursor: Phase = Phase.FEASIBILITY

    power: ResourcePool = Field(default_factory=lambda: ResourcePool(total=680))
    land: ResourcePool = Field(default_factory=lambda: ResourcePool(total=450_000_000))
    water: ResourcePool = Field(default_factory=lambda: ResourcePool(total=10_000_000))

    talent_local_pool: int = Field(default=450_000, ge=0)
    golden_visas_pool: int = Field(default=200_000, ge=0)

    last_focus: str | None = None
    last_updated_ts: int = Field(default_factory=now_ms)
    allocations: list[AllocationEvent] = Field(default_factory=list)

    @field_validator("phase_cursor", mode="before")
    @classmethod
    def _reset_unknown_phase(cls, value: Any) -> Phase:
        return Phase.coerce(value)

    @field_validator("allocations")
    @classmethod
    def _bound_allocations(cls, value: list[AllocationEvent]) -> list[AllocationEvent]:
        return value[-ALLOCATION_LOG_LIMIT:]

    @classmethod
    def fresh(cls, jurisdiction: str) -> SovereignState:
        return cls(jurisdiction=jurisdiction)

    def remaining(self) -> dict[str, float]:
        return {
            "power_mw_remaining": self.power.remaining,
            "land_sqft_remaining": self.land.remaining,
            "water_gpd_remaining": self.water.remaining,
        }

    def record_allocation(self, event: AllocationEvent) -> None:
        self.allocations.append(event)
        self.allocations = self.allocations[-ALLOCATION_LOG_LIMIT:]


# ════════════════════════════════════════════════════════════════
# Mission Packets & Datasets
# ════════════════════════════════════════════════════════════════


class MissionPhase(BaseModel):
    focus: str = ""
    action: str = ""
    result: str = ""


class MissionPacket(BaseModel):
    """An externally authored objective and per-phase plan, referenced by id."""

    model_config = ConfigDict(extra="allow")

    mission_id: StrictStr = Field(min_length=1)
    objective: StrictStr = Field(min_length=1)
    status: StrictStr = Field(min_length=1)
    phases: dict[str, MissionPhase]


class DatasetRow(BaseModel):
    hs_code: str
    category: str
    country: str
    value_usd: float


class DatasetSnapshot(BaseModel):
    """Trade-dependency rows for one (jurisdiction, focus). Replaced, never merged."""

    jurisdiction: str
    focus: str
    rows: list[DatasetRow] = Field(default_factory=list)
    synthetic: bool = False
    generated_ts: int = Field(default_factory=now_ms)


# ════════════════════════════════════════════════════════════════
# Decision Record (parsed from untrusted model output)
# ════════════════════════════════════════════════════════════════


class _LenientBlock(BaseModel):
    """Base for model-output blocks: non-mapping input becomes defaults, extras kept."""

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="before")
    @classmethod
    def _require_mapping(cls, data: Any) -> Any:
        if isinstance(data, (dict, BaseModel)):
            return data
        return {}


class ResourceRequest(_LenientBlock):
    power_mw: float = 0.0
    land_sqft: float = 0.0
    water_gpd: float = 0.0

    @field_validator("*", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> float:
        return finite_number(value)


class StaffingRequest(_LenientBlock):
    hires_local: int = 0
    hires_golden_visas: int = 0
    hires_global: int = 0
    time_to_staff_months: float = 0.0

    @field_validator("hires_local", "hires_golden_visas", "hires_global", mode="before")
    @classmethod
    def _whole(cls, value: Any) -> int:
        return math.floor(finite_number(value))

    @field_validator("time_to_staff_months", mode="before")
    @classmethod
    def _months(cls, value: Any) -> float:
        return finite_number(value)


class Explorer(_LenientBlock):
    leakage_usd: float = 0.0
    hs_codes: list[str] = Field(default_factory=list)
    facts: list[str] = Field(default_factory=list)
    dataset_rows_used: int = 0

    @field_validator("leakage_usd", mode="before")
    @classmethod
    def _leakage(cls, value: Any) -> float:
        return finite_number(value)

    @field_validator("dataset_rows_used", mode="before")
    @classmethod
    def _rows(cls, value: Any) -> int:
        return max(0, math.floor(finite_number(value)))

    @field_validator("hs_codes", "facts", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> list[str]:
        return string_list(value)


def _empty_pillar_pack() -> dict[str, Any]:
    return {f"p{i}": {} for i in range(1, 8)}


class Planner(_LenientBlock):
    resource_request: ResourceRequest = Field(default_factory=ResourceRequest)
    staffing_request: StaffingRequest = Field(default_factory=StaffingRequest)
    seven_pillar_pack: dict[str, Any] = Field(default_factory=_empty_pillar_pack)
    capex_usd_range: list[float] = Field(default_factory=lambda: [0.0, 0.0])
    timeline_months: float = 12.0
    next_actions: list[str] = Field(default_factory=list)
    kpis: list[str] = Field(default_factory=list)

    @field_validator("seven_pillar_pack", mode="before")
    @classmethod
    def _pack(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else _empty_pillar_pack()

    @field_validator("capex_usd_range", mode="before")
    @classmethod
    def _capex(cls, value: Any) -> list[float]:
        if not isinstance(value, list):
            return [0.0, 0.0]
        return [finite_number(v) for v in value]

    @field_validator("timeline_months", mode="before")
    @classmethod
    def _timeline(cls, value: Any) -> float:
        return finite_number(value)

    @field_validator("next_actions", "kpis", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> list[str]:
        return string_list(value)


class Guard(_LenientBlock):
    verdict: Verdict = Verdict.VETOED
    reasons: list[str] = Field(default_factory=list)
    risk_flags: list[str] = Field(default_factory=list)

    @field_validator("verdict", mode="before")
    @classmethod
    def _verdict(cls, value: Any) -> Verdict:
        return Verdict.coerce(value)

    @field_validator("reasons", "risk_flags", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> list[str]:
        return string_list(value)

    @property
    def approved(self) -> bool:
        return self.verdict == Verdict.APPROVED


class StateUpdate(_LenientBlock):
    """Post-enforcement echo of remaining capacity. Authoritative values only."""

    power_mw_remaining: float = 0.0
    land_sqft_remaining: float = 0.0
    water_gpd_remaining: float = 0.0
    talent_local_pool: int = 0
    golden_visas_pool: int = 0
    phase_cursor: str = ""
    proposed_phase_cursor: str | None = None

    @field_validator(
        "power_mw_remaining", "land_sqft_remaining", "water_gpd_remaining", mode="before"
    )
    @classmethod
    def _numeric(cls, value: Any) -> float:
        return finite_number(value)

    @field_validator("talent_local_pool", "golden_visas_pool", mode="before")
    @classmethod
    def _whole(cls, value: Any) -> int:
        return math.floor(finite_number(value))

    @field_validator("phase_cursor", mode="before")
    @classmethod
    def _phase(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("proposed_phase_cursor", mode="before")
    @classmethod
    def _proposed(cls, value: Any) -> str | None:
        return value if isinstance(value, str) and value else None

    @classmethod
    def from_state(
        cls, state: SovereignState, proposed_phase_cursor: str | None = None
    ) -> StateUpdate:
        return cls(
            **state.remaining(),
            talent_local_pool=state.talent_local_pool,
            golden_visas_pool=state.golden_visas_pool,
            phase_cursor=state.phase_cursor.value,
            proposed_phase_cursor=proposed_phase_cursor,
        )


MISSING_GUARD = {"verdict": "VETOED", "reasons": ["MISSING_GUARD"], "risk_flags": ["FORMAT_FAILURE"]}


class DecisionRecord(_LenientBlock):
    """
    The structured output of one pipeline run.

    Ephemeral: reconstructed every request. Only what the Accounting
    Enforcer commits to SovereignState survives.
    """

    mission_id: str = ""
    objective: str = ""
    phase_cursor: str = Phase.FEASIBILITY.value
    brain_order: list[str] = Field(default_factory=lambda: list(BRAIN_ORDER))
    explorer: Explorer = Field(default_factory=Explorer)
    planner: Planner = Field(default_factory=Planner)
    guard: Guard = Field(default_factory=Guard)
    state_update: StateUpdate = Field(default_factory=StateUpdate)

    _source_text: str = PrivateAttr(default="")

    @model_validator(mode="wrap")
    @classmethod
    def _keep_source(
        cls, data: Any, handler: ModelWrapValidatorHandler[DecisionRecord],
    ) -> DecisionRecord:
        record = handler(data)
        if isinstance(data, dict):
            record._source_text = json.dumps(data, ensure_ascii=False, default=str)
        elif isinstance(data, DecisionRecord):
            record._source_text = data.source_text
        return record

    @property
    def source_text(self) -> str:
        """The input as received, serialized before any lenient coercion."""
        return self._source_text

    @model_validator(mode="before")
    @classmethod
    def _default_guard(cls, data: Any) -> Any:
        if isinstance(data, BaseModel):
            return data
        if not isinstance(data, dict):
            data = {}
        if not isinstance(data.get("guard"), (dict, Guard)):
            data = {**data, "guard": dict(MISSING_GUARD)}
        return data

    @field_validator("mission_id", "objective", "phase_cursor", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @field_validator("brain_order", mode="before")
    @classmethod
    def _order(cls, value: Any) -> list[str]:
        return string_list(value) or list(BRAIN_ORDER)

    @classmethod
    def vetoed_stub(
        cls,
        *,
        mission_id: str,
        objective: str,
        state: SovereignState,
        reason: str,
        fact: str,
        risk_flag: str,
        next_action: str,
        kpi: str,
    ) -> DecisionRecord:
        """
        Statically constructed safe record: zero requests, VETOED, with the
        failure mode named in reasons. Always well-formed.
        """
        return cls(
            mission_id=mission_id,
            objective=objective,
            phase_cursor=state.phase_cursor.value,
            explorer=Explorer(facts=[fact]),
            planner=Planner(next_actions=[next_action], kpis=[kpi]),
            guard=Guard(verdict=Verdict.VETOED, reasons=[reason], risk_flags=[risk_flag]),
            state_update=StateUpdate.from_state(state),
        )


# ════════════════════════════════════════════════════════════════
# Requests
# ════════════════════════════════════════════════════════════════


class ChatMessage(BaseModel):
    role: str = "user"
    content: str = ""

    @field_validator("role", "content", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @property
    def is_assistant(self) -> bool:
        return (self.role or "user").lower() == "assistant"


class ChatRequest(BaseModel):
    messages: list[ChatMessage]
    temperature: float | None = None
    max_tokens: int | None = None
    mission_id: str | None = None
    country: str | None = None
    focus: str | None = None
    reset_state: bool = False

    @field_validator("mission_id", "country", "focus", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    @field_validator("temperature", mode="before")
    @classmethod
    def _temperature(cls, value: Any) -> float | None:
        return optional_number(value)

    @field_validator("max_tokens", mode="before")
    @classmethod
    def _max_tokens(cls, value: Any) -> int | None:
        number = optional_number(value)
        return None if number is None else max(0, int(number))

    @field_validator("reset_state", mode="before")
    @classmethod
    def _reset(cls, value: Any) -> bool:
        return value is True


class ChatResponse(BaseModel):
    text: str
    json_record: DecisionRecord = Field(serialization_alias="json")
    node: str = NODE_ID
    error: str | None = None


# ════════════════════════════════════════════════════════════════
# Audit Chain
# ════════════════════════════════════════════════════════════════


class AuditEvent(BaseModel):
    """
    One link of the audit hash chain. Immutable once created.

    hash = SHA-256(canonical([prev_hash, timestamp, stage, event, payload]))
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timestamp: int
    stage: str
    event: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    prev_hash: str = Field(alias="prevHash")
    hash: str
