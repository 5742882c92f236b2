"""
Tests for the Accounting Enforcer.

Validates:
- Requests are clamped into fixed ranges and written back
- Pool exceedance and P7 violations always veto
- Only approved records commit; pools never go negative or over capacity
- Every outcome lands in the bounded allocation log
"""

from __future__ import annotations

import math

from sovereign_pipeline.domain.schema import (
    ALLOCATION_LOG_LIMIT,
    DecisionRecord,
    ResourceRequest,
    SovereignState,
    StaffingRequest,
    Verdict,
)
from sovereign_pipeline.governance.accounting import (
    ALLOCATION_APPLIED,
    ALLOCATION_BLOCKED,
    OVERRIDE_FLAG,
    RESOURCE_EXCEEDED_FLAG,
    RESOURCE_EXCEEDED_REASON,
    SECURITY_VIOLATION_FLAG,
    SECURITY_VIOLATION_REASON,
    AccountingEnforcer,
)


def make_record(power_mw=100.0, verdict="APPROVED", hires_local=0, **extra) -> DecisionRecord:
    return DecisionRecord.model_validate({
        "mission_id": "M-1",
        "planner": {
            "resource_request": {"power_mw": power_mw, "land_sqft": 1000, "water_gpd": 500},
            "staffing_request": {"hires_local": hires_local, "hires_golden_visas": 5},
        },
        "guard": {"verdict": verdict, "reasons": [], "risk_flags": []},
        **extra,
    })


class TestClamping:

    def setup_method(self):
        self.enforcer = AccountingEnforcer()

    def test_resources_clamped(self):
        clamped = self.enforcer.clamp_resources(
            ResourceRequest(power_mw=-5, land_sqft=5e12, water_gpd=10)
        )
        assert clamped.power_mw == 0
        assert clamped.land_sqft == 1e12
        assert clamped.water_gpd == 10

    def test_non_finite_becomes_zero(self):
        request = ResourceRequest.model_validate({"power_mw": "nan", "land_sqft": math.inf})
        clamped = self.enforcer.clamp_resources(request)
        assert clamped.power_mw == 0
        assert clamped.land_sqft == 0

    def test_staffing_clamped(self):
        clamped = self.enforcer.clamp_staffing(
            StaffingRequest(
                hires_local=2_000_000_000,
                hires_golden_visas=-3,
                hires_global=7.9,
                time_to_staff_months=500,
            )
        )
        assert clamped.hires_local == 1_000_000_000
        assert clamped.hires_golden_visas == 0
        assert clamped.hires_global == 7
        assert clamped.time_to_staff_months == 120

    def test_clamped_values_written_back(self):
        state = SovereignState.fresh("UAE")
        record = make_record(power_mw=-40)
        self.enforcer.enforce(state, record)
        assert record.planner.resource_request.power_mw == 0


class TestVetoes:

    def setup_method(self):
        self.enforcer = AccountingEnforcer()
        self.state = SovereignState.fresh("UAE")

    def test_exceedance_vetoes_and_commits_nothing(self):
        record = make_record(power_mw=700)

        approved = self.enforcer.enforce(self.state, record)

        assert approved is False
        assert record.guard.verdict == Verdict.VETOED
        assert RESOURCE_EXCEEDED_FLAG in record.guard.risk_flags
        assert OVERRIDE_FLAG in record.guard.risk_flags
        assert RESOURCE_EXCEEDED_REASON in record.guard.reasons
        assert self.state.power.used == 0

    def test_clamped_land_exceedance_vetoes(self):
        record = make_record()
        record.planner.resource_request.land_sqft = 5e12
        assert self.enforcer.enforce(self.state, record) is False
        assert self.state.land.used == 0

    def test_p7_flag_vetoes(self):
        record = make_record()
        record.guard.risk_flags = ["P7_SECURITY_VIOLATION: foreign cloud"]
        assert self.enforcer.enforce(self.state, record) is False
        assert SECURITY_VIOLATION_REASON in record.guard.reasons

    def test_p7_anywhere_in_record_vetoes(self):
        record = make_record(notes="hosting on a foreign hyperscaler => P7_SECURITY_VIOLATION")

        assert self.enforcer.enforce(self.state, record) is False
        assert SECURITY_VIOLATION_FLAG in record.guard.risk_flags
        assert self.state.power.used == 0

    def test_p7_inside_pillar_pack_vetoes(self):
        record = make_record()
        record.planner.seven_pillar_pack["p7"] = {"status": "P7_SECURITY_VIOLATION"}
        assert self.enforcer.enforce(self.state, record) is False

    def test_p7_in_mistyped_block_vetoes(self):
        record = make_record(explorer="P7_SECURITY_VIOLATION: sovereign data on foreign cloud")
        assert record.explorer.facts == []

        assert self.enforcer.enforce(self.state, record) is False
        assert SECURITY_VIOLATION_FLAG in record.guard.risk_flags
        assert self.state.power.used == 0

    def test_p7_in_mistyped_list_vetoes(self):
        record = DecisionRecord.model_validate({
            "planner": {
                "resource_request": {"power_mw": 100},
                "next_actions": "Host on AWS us-east-1 (P7_SECURITY_VIOLATION)",
            },
            "guard": {"verdict": "APPROVED"},
        })
        assert record.planner.next_actions == []

        assert self.enforcer.enforce(self.state, record) is False
        assert self.state.allocations[-1].type == ALLOCATION_BLOCKED

    def test_combined_overrides_are_deduplicated(self):
        record = make_record(power_mw=700, notes="P7_SECURITY_VIOLATION")

        self.enforcer.enforce(self.state, record)

        assert record.guard.risk_flags == [
            SECURITY_VIOLATION_FLAG, OVERRIDE_FLAG, RESOURCE_EXCEEDED_FLAG,
        ]
        assert record.guard.reasons == [SECURITY_VIOLATION_REASON, RESOURCE_EXCEEDED_REASON]

    def test_model_veto_is_respected(self):
        record = make_record(verdict="VETOED")
        assert self.enforcer.enforce(self.state, record) is False
        assert self.state.power.used == 0
        assert self.state.allocations[-1].type == ALLOCATION_BLOCKED


class TestCommit:

    def setup_method(self):
        self.enforcer = AccountingEnforcer()
        self.state = SovereignState.fresh("UAE")

    def test_approval_commits(self):
        record = make_record(power_mw=100, hires_local=120)

        approved = self.enforcer.enforce(self.state, record)

        assert approved is True
        assert self.state.power.used == 100
        assert self.state.land.used == 1000
        assert self.state.water.used == 500
        assert self.state.talent_local_pool == 450_000 - 120
        assert self.state.golden_visas_pool == 200_000 - 5
        assert self.state.allocations[-1].type == ALLOCATION_APPLIED
        assert self.state.allocations[-1].power_mw == 100

    def test_pool_conservation_across_approvals(self):
        used = []
        for _ in range(4):
            self.enforcer.enforce(self.state, make_record(power_mw=300))
            used.append(self.state.power.used)

        assert used == [300, 600, 600, 600]
        assert self.state.power.used <= self.state.power.total

    def test_talent_pool_floors_at_zero(self):
        self.enforcer.enforce(self.state, make_record(hires_local=500_000))
        assert self.state.talent_local_pool == 0

    def test_allocation_log_is_bounded(self):
        for i in range(ALLOCATION_LOG_LIMIT + 5):
            self.enforcer.enforce(self.state, make_record(power_mw=0, verdict="VETOED"))
        assert len(self.state.allocations) == ALLOCATION_LOG_LIMIT
