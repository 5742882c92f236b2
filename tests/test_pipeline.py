"""
Tests for the Decision Pipeline end to end, with the model scripted.

Validates:
- Fallback safety when every inference attempt fails
- Exceedance and approval scenarios against a fresh ledger
- Phase advance requires approval and user intent
- Mission activation, dataset fallback and the audit trail
"""

from __future__ import annotations

import asyncio

import pytest

from sovereign_pipeline.datasets import build_fallback_rows
from sovereign_pipeline.domain.schema import (
    NODE_ID,
    ChatMessage,
    ChatRequest,
    Phase,
    Verdict,
)
from sovereign_pipeline.pipeline import DecisionPipeline, InvalidMissionPacket


def ask(text: str, **kwargs) -> ChatRequest:
    return ChatRequest(messages=[ChatMessage(role="user", content=text)], **kwargs)


PACKET = {
    "mission_id": "UAE-SEMI-2027",
    "objective": "Onshore advanced packaging",
    "status": "ACTIVE",
    "phases": {
        "PHASE_1_FEASIBILITY": {"focus": "Semiconductors", "action": "Survey", "result": ""},
    },
}


class TestFallbackSafety:

    def test_inference_failure_returns_vetoed_stub(self, test_settings, scripted_completion):
        completion = scripted_completion(RuntimeError("edge down"))
        pipeline = DecisionPipeline.from_settings(test_settings, completion=completion)

        response = asyncio.run(pipeline.chat(ask("Plan a fab")))
        record = response.json_record

        assert response.error
        assert record.guard.verdict == Verdict.VETOED
        assert record.guard.reasons == ["EDGE_TIMEOUT_OR_AI_FAILURE"]
        assert record.state_update.power_mw_remaining == 680
        assert record.state_update.land_sqft_remaining == 450_000_000
        assert record.state_update.water_gpd_remaining == 10_000_000
        assert len(completion.calls) == test_settings.inference_attempts

        stored = pipeline.store.load_state("UAE")
        assert stored.power.used == 0
        assert stored.land.used == 0
        assert stored.water.used == 0
        assert stored.allocations == []

    def test_inference_failure_audit_trail(self, test_settings, scripted_completion):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(RuntimeError("edge down")),
        )
        asyncio.run(pipeline.chat(ask("Plan a fab")))

        stages = [e.stage for e in pipeline.audit.events("UAE")]
        assert stages == ["INGEST", "PUBLISH"]
        assert pipeline.audit.verify("UAE").is_valid

    def test_non_json_twice_yields_format_stub(self, test_settings, scripted_completion):
        completion = scripted_completion("I cannot answer in JSON.")
        pipeline = DecisionPipeline.from_settings(test_settings, completion=completion)

        response = asyncio.run(pipeline.chat(ask("Plan a fab")))

        assert response.error is None
        assert response.json_record.guard.reasons == ["NON_JSON_OUTPUT"]
        assert len(completion.calls) == 2
        assert completion.calls[1]["temperature"] == 0.0
        assert completion.calls[1]["max_tokens"] == test_settings.repair_max_tokens


class TestScenarios:

    def test_exceedance_is_vetoed(self, test_settings, scripted_completion, make_decision):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(make_decision(power_mw=700)),
        )

        response = asyncio.run(pipeline.chat(ask("Build a 700 MW campus")))
        record = response.json_record

        assert record.guard.verdict == Verdict.VETOED
        assert "P2_RESOURCE_EXCEEDED" in record.guard.risk_flags
        assert pipeline.store.load_state("UAE").power.used == 0

    def test_approval_commits_without_advancing(
        self, test_settings, scripted_completion, make_decision,
    ):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(make_decision(power_mw=100)),
        )

        response = asyncio.run(pipeline.chat(ask("Plan the first fab")))
        record = response.json_record
        state = pipeline.store.load_state("UAE")

        assert record.guard.verdict == Verdict.APPROVED
        assert state.power.used == 100
        assert state.phase_cursor == Phase.FEASIBILITY
        assert record.state_update.power_mw_remaining == 580
        assert record.mission_id == test_settings.default_mission_id

    def test_approval_with_intent_advances_once(
        self, test_settings, scripted_completion, make_decision,
    ):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(make_decision(power_mw=100)),
        )

        response = asyncio.run(pipeline.chat(ask("Approved plan, advance to the next phase")))
        record = response.json_record

        assert record.phase_cursor == Phase.FEASIBILITY.value
        assert record.state_update.phase_cursor == Phase.SANDBOX.value
        assert pipeline.store.load_state("UAE").phase_cursor == Phase.SANDBOX

    def test_veto_with_intent_does_not_advance(
        self, test_settings, scripted_completion, make_decision,
    ):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(make_decision(power_mw=700)),
        )
        asyncio.run(pipeline.chat(ask("advance")))
        assert pipeline.store.load_state("UAE").phase_cursor == Phase.FEASIBILITY

    def test_model_phase_is_only_a_proposal(
        self, test_settings, scripted_completion, make_decision,
    ):
        reply = make_decision(state_update={"phase_cursor": "PHASE_4_DOMINION"})
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(reply),
        )

        response = asyncio.run(pipeline.chat(ask("advance")))
        update = response.json_record.state_update

        assert update.phase_cursor == Phase.SANDBOX.value
        assert update.proposed_phase_cursor == "PHASE_4_DOMINION"

    def test_reset_state_starts_from_defaults(
        self, test_settings, scripted_completion, make_decision,
    ):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(make_decision(power_mw=100)),
        )
        asyncio.run(pipeline.chat(ask("first")))
        asyncio.run(pipeline.chat(ask("second")))
        assert pipeline.store.load_state("UAE").power.used == 200

        asyncio.run(pipeline.chat(ask("start over", reset_state=True)))
        assert pipeline.store.load_state("UAE").power.used == 100

    def test_successful_cycle_audit_trail(
        self, test_settings, scripted_completion, make_decision,
    ):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(make_decision()),
        )
        asyncio.run(pipeline.chat(ask("Plan")))

        events = pipeline.audit.events("UAE")
        assert [e.stage for e in events] == ["INGEST", "PLAN", "GUARD_CHECK", "PUBLISH"]
        assert events[2].event == "accounting_apply"
        assert pipeline.audit.verify("UAE").is_valid

    def test_decision_prompt_embeds_ledger_and_conversation(
        self, test_settings, scripted_completion, make_decision,
    ):
        completion = scripted_completion(make_decision())
        pipeline = DecisionPipeline.from_settings(test_settings, completion=completion)

        asyncio.run(pipeline.chat(ask("Where is the leakage?", temperature=0.3, max_tokens=900)))
        call = completion.calls[0]
        prompt = call["messages"][0]["content"]

        assert call["temperature"] == 0.3
        assert call["max_tokens"] == 900
        assert "STATE_JSON=" in prompt
        assert "USER: Where is the leakage?" in prompt
        assert prompt.rstrip().endswith("OMEGA-1:")

    def test_explicit_zero_settings_are_passed_through(
        self, test_settings, scripted_completion, make_decision,
    ):
        completion = scripted_completion(make_decision())
        pipeline = DecisionPipeline.from_settings(test_settings, completion=completion)

        asyncio.run(pipeline.chat(ask("Plan a fab", temperature=0, max_tokens=0)))

        assert completion.calls[0]["temperature"] == 0
        assert completion.calls[0]["max_tokens"] == 0


class TestMissions:

    def test_set_and_get_active_mission(self, test_settings, scripted_completion):
        pipeline = DecisionPipeline.from_settings(test_settings, completion=scripted_completion(""))

        result = pipeline.set_mission({"packet": PACKET, "country": "UAE"})

        assert result == {"ok": True, "active_mission_id": "UAE-SEMI-2027"}
        fetched = pipeline.get_mission("UAE")
        assert fetched["active_mission_id"] == "UAE-SEMI-2027"
        assert fetched["packet"]["objective"] == "Onshore advanced packaging"
        assert pipeline.store.load_state("UAE").active_mission_id == "UAE-SEMI-2027"

    def test_bare_packet_uses_default_jurisdiction(self, test_settings, scripted_completion):
        pipeline = DecisionPipeline.from_settings(test_settings, completion=scripted_completion(""))
        pipeline.set_mission(PACKET)
        assert pipeline.get_mission()["active_mission_id"] == "UAE-SEMI-2027"

    def test_inactive_mission(self, test_settings, scripted_completion):
        pipeline = DecisionPipeline.from_settings(test_settings, completion=scripted_completion(""))

        result = pipeline.set_mission({"packet": PACKET, "set_active": False})

        assert result == {"ok": True, "active_mission_id": None}
        assert pipeline.get_mission("UAE") == {"active_mission_id": None, "packet": None}

    @pytest.mark.parametrize(
        "body",
        [
            None,
            [],
            {"packet": {"mission_id": "X"}},
            {**PACKET, "status": ""},
            {**PACKET, "objective": 7},
        ],
    )
    def test_invalid_packet(self, test_settings, scripted_completion, body):
        pipeline = DecisionPipeline.from_settings(test_settings, completion=scripted_completion(""))
        with pytest.raises(InvalidMissionPacket):
            pipeline.set_mission(body)

    def test_chat_uses_active_mission(self, test_settings, scripted_completion, make_decision):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(make_decision()),
        )
        pipeline.set_mission(PACKET)

        record = asyncio.run(pipeline.chat(ask("Plan"))).json_record

        assert record.mission_id == "UAE-SEMI-2027"
        assert record.objective == "Onshore advanced packaging"


class TestDataset:

    def test_model_rows_are_saved(self, test_settings, scripted_completion):
        rows = '{"rows": [{"hs_code": "8542.31.00", "category": "Semiconductors", "country": "UAE", "value_usd": 5000}]}'
        pipeline = DecisionPipeline.from_settings(test_settings, completion=scripted_completion(rows))

        result = asyncio.run(pipeline.fetch_dataset("UAE", "Semiconductors"))

        assert "note" not in result
        assert result["rows"][0]["hs_code"] == "8542.31.00"
        snapshot = pipeline.store.load_dataset("UAE", "semiconductors")
        assert snapshot.synthetic is False

    def test_failure_falls_back(self, test_settings, scripted_completion):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion(RuntimeError("down")),
        )

        result = asyncio.run(pipeline.fetch_dataset())

        assert result["note"] == "fallback"
        assert len(result["rows"]) == 12
        snapshot = pipeline.store.load_dataset("UAE", test_settings.default_dataset_focus)
        assert snapshot.synthetic is True

    def test_invalid_rows_fall_back(self, test_settings, scripted_completion):
        pipeline = DecisionPipeline.from_settings(
            test_settings, completion=scripted_completion('{"rows": [{"hs_code": 1}]}'),
        )
        result = asyncio.run(pipeline.fetch_dataset("UAE", "Food Security"))
        assert result["note"] == "fallback"
        assert result["rows"][0]["hs_code"] == "0713.10.00"

    def test_health(self, test_settings, scripted_completion):
        pipeline = DecisionPipeline.from_settings(test_settings, completion=scripted_completion(""))
        assert pipeline.health() == {"ok": True, "node": NODE_ID, "model": "scripted-model"}


class TestFallbackRows:

    def test_unmapped_focus_padded_to_minimum(self):
        rows = build_fallback_rows("UAE", "industrial imports")

        assert len(rows) == 12
        assert [r.hs_code for r in rows[:3]] == ["9999.99.99", "9999.99.97", "9999.99.98"]
        assert [r.value_usd for r in rows[:4]] == [125_000, 212_500, 300_000, 387_500]
        assert rows[4].value_usd == 437_500
        assert all(r.category == "Industrial Imports" for r in rows[3:])

    def test_known_categories(self):
        rows = build_fallback_rows("UAE", "Semiconductors, Energy Systems")

        assert [r.hs_code for r in rows[:6]] == [
            "8542.31.00", "8542.33.00", "8542.41.00",
            "8502.30.00", "8507.30.00", "8501.90.00",
        ]
        assert len(rows) == 12

    def test_empty_focus_uses_default_categories(self):
        rows = build_fallback_rows("", "")
        assert [r.category for r in rows[:9:3]] == [
            "Semiconductors", "Energy Systems", "Food Security",
        ]
        assert rows[0].country == "United Arab Emirates"

    def test_capped_at_six_categories(self):
        rows = build_fallback_rows("UAE", "A, B, C, D, E, F, G")
        assert len(rows) == 18
        assert "G" not in {r.category for r in rows}

    def test_deterministic(self):
        assert build_fallback_rows("UAE", "Food Security") == build_fallback_rows(
            "UAE", "Food Security"
        )
