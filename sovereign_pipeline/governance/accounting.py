"""
Accounting Enforcer — the trust boundary between model proposals and the ledger.

The language model's numeric proposals are advisory; this module is
authoritative. Every decision record passes through enforce() before
anything is committed:

- CLAMP:    resource and staffing requests are forced into fixed numeric ranges
- VETO:     a P7 security violation or a pool exceedance forces VETOED,
            whatever the model's guard block claimed
- COMMIT:   only an APPROVED record moves pool usage and talent counts
- LOG:      every outcome, approved or blocked, lands in the allocation log
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable

from sovereign_pipeline.domain.schema import (
    AllocationEvent,
    DecisionRecord,
    ResourceRequest,
    SovereignState,
    StaffingRequest,
    Verdict,
)

logger = logging.getLogger(__name__)

SECURITY_VIOLATION_FLAG = "P7_SECURITY_VIOLATION"
RESOURCE_EXCEEDED_FLAG = "P2_RESOURCE_EXCEEDED"
OVERRIDE_FLAG = "EDGE_GUARD_OVERRIDE"
SECURITY_VIOLATION_REASON = "P7 inside-the-fence violation (edge override)"
RESOURCE_EXCEEDED_REASON = "Resource request exceeds sovereign pools (edge override)"

ALLOCATION_APPLIED = "accounting_apply"
ALLOCATION_BLOCKED = "accounting_blocked"


@dataclass(frozen=True)
class ClampLimits:
    """Upper bounds applied to every proposal; lower bounds are always zero."""

    power_mw: float = 1e9
    land_sqft: float = 1e12
    water_gpd: float = 1e12
    hires: int = 1_000_000_000
    time_to_staff_months: float = 120.0


def _clamp(value: float, upper: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(upper, max(0.0, value))


def _merge_unique(existing: Iterable[str], additions: Iterable[str]) -> list[str]:
    """Order-preserving union."""
    return list(dict.fromkeys([*existing, *additions]))


class AccountingEnforcer:
    """
    Deterministic resource and staffing accounting.

    Mutates the SovereignState snapshot it is given (the caller persists it)
    and rewrites the decision record's planner requests and guard block.
    """

    def __init__(self, limits: ClampLimits | None = None) -> None:
        self.limits = limits or ClampLimits()

    def clamp_resources(self, request: ResourceRequest) -> ResourceRequest:
        return ResourceRequest(
            power_mw=_clamp(request.power_mw, self.limits.power_mw),
            land_sqft=_clamp(request.land_sqft, self.limits.land_sqft),
            water_gpd=_clamp(request.water_gpd, self.limits.water_gpd),
        )

    def clamp_staffing(self, request: StaffingRequest) -> StaffingRequest:
        def whole(value: int) -> int:
            return int(_clamp(math.floor(value), self.limits.hires))

        return StaffingRequest(
            hires_local=whole(request.hires_local),
            hires_golden_visas=whole(request.hires_golden_visas),
            hires_global=whole(request.hires_global),
            time_to_staff_months=_clamp(
                request.time_to_staff_months, self.limits.time_to_staff_months,
            ),
        )

    @staticmethod
    def has_security_violation(record: DecisionRecord) -> bool:
        """
        Declared in risk_flags, or named anywhere in the record.

        The raw model output is scanned as well as the parsed record, since
        lenient parsing drops mistyped fields that may carry the flag.
        """
        if any(SECURITY_VIOLATION_FLAG in flag for flag in record.guard.risk_flags):
            return True
        return (
            SECURITY_VIOLATION_FLAG in record.source_text
            or SECURITY_VIOLATION_FLAG in record.model_dump_json()
        )

    @staticmethod
    def exceeds_capacity(state: SovereignState, request: ResourceRequest) -> bool:
        return (
            request.power_mw > state.power.remaining
            or request.land_sqft > state.land.remaining
            or request.water_gpd > state.water.remaining
        )

    def enforce(self, state: SovereignState, record: DecisionRecord) -> bool:
        """
        Validate a proposal against remaining capacity and policy.

        Args:
            state: The jurisdiction's ledger snapshot; committed to in place.
            record: The extracted decision record; overridden in place.

        Returns:
            True only if the final verdict is APPROVED. A False return is
            authoritative even if the record's guard block says otherwise.
        """
        resources = self.clamp_resources(record.planner.resource_request)
        staffing = self.clamp_staffing(record.planner.staffing_request)
        record.planner.resource_request = resources
        record.planner.staffing_request = staffing

        guard = record.guard

        if self.has_security_violation(record):
            guard.verdict = Verdict.VETOED
            guard.risk_flags = _merge_unique(
                guard.risk_flags, [SECURITY_VIOLATION_FLAG, OVERRIDE_FLAG],
            )
            guard.reasons = _merge_unique(guard.reasons, [SECURITY_VIOLATION_REASON])
            logger.warning("Guard override: security violation mission=%s", record.mission_id)

        if self.exceeds_capacity(state, resources):
            guard.verdict = Verdict.VETOED
            guard.risk_flags = _merge_unique(
                guard.risk_flags, [RESOURCE_EXCEEDED_FLAG, OVERRIDE_FLAG],
            )
            guard.reasons = _merge_unique(guard.reasons, [RESOURCE_EXCEEDED_REASON])
            logger.warning(
                "Guard override: pool exceedance mission=%s power=%.1f/%.1f",
                record.mission_id, resources.power_mw, state.power.remaining,
            )

        approved = guard.verdict == Verdict.APPROVED

        if approved:
            self._commit(state, resources, staffing)

        state.record_allocation(
            AllocationEvent(
                mission_id=record.mission_id or state.active_mission_id or "",
                phase=state.phase_cursor.value,
                type=ALLOCATION_APPLIED if approved else ALLOCATION_BLOCKED,
                power_mw=resources.power_mw,
                land_sqft=resources.land_sqft,
                water_gpd=resources.water_gpd,
                hires_local=staffing.hires_local,
                hires_golden_visas=staffing.hires_golden_visas,
                hires_global=staffing.hires_global,
            )
        )

        logger.info(
            "Accounting %s: jurisdiction=%s mission=%s",
            "applied" if approved else "blocked", state.jurisdiction, record.mission_id,
        )
        return approved

    @staticmethod
    def _commit(
        state: SovereignState, resources: ResourceRequest, staffing: StaffingRequest,
    ) -> None:
        """Usage is capped at each pool's total; talent pools floor at zero."""
        state.power.used = min(state.power.total, state.power.used + resources.power_mw)
        state.land.used = min(state.land.total, state.land.used + resources.land_sqft)
        state.water.used = min(state.water.total, state.water.used + resources.water_gpd)

        state.talent_local_pool = max(0, state.talent_local_pool - staffing.hires_local)
        state.golden_visas_pool = max(0, state.golden_visas_pool - staffing.hires_golden_visas)
