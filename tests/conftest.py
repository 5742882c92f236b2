"""Shared fixtures: in-memory ledger, scripted model replies, sample decisions."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import pytest

from sovereign_pipeline.config import PipelineSettings


class ScriptedCompletion:
    """
    Stand-in for litellm.acompletion.

    Replies are consumed in order; the last one repeats. A reply that is an
    exception instance is raised instead of returned.
    """

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=reply))]
        )


class ScriptedGateway:
    """Stand-in for InferenceGateway with the same invoke() signature."""

    model = "scripted-model"

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def invoke(self, prompt: str, max_tokens: int, temperature: float) -> str:
        self.calls.append(
            {"prompt": prompt, "max_tokens": max_tokens, "temperature": temperature}
        )
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


def decision_payload(
    power_mw: float = 100.0,
    verdict: str = "APPROVED",
    **overrides: Any,
) -> dict[str, Any]:
    """A well-formed decision as a model would emit it."""
    payload = {
        "mission_id": "MODEL-SUPPLIED-ID",
        "objective": "Model supplied objective",
        "phase_cursor": "PHASE_1_FEASIBILITY",
        "brain_order": ["EXPLORER", "PLANNER", "GUARD"],
        "explorer": {
            "leakage_usd": 1_250_000_000,
            "hs_codes": ["8542.31.00"],
            "facts": ["Advanced logic imports dominate leakage"],
            "dataset_rows_used": 12,
        },
        "planner": {
            "resource_request": {"power_mw": power_mw, "land_sqft": 250_000, "water_gpd": 40_000},
            "staffing_request": {
                "hires_local": 120,
                "hires_golden_visas": 30,
                "hires_global": 10,
                "time_to_staff_months": 4,
            },
            "seven_pillar_pack": {f"p{i}": {} for i in range(1, 8)},
            "capex_usd_range": [400_000_000, 650_000_000],
            "timeline_months": 18,
            "next_actions": ["Site survey"],
            "kpis": ["Wafer starts per month"],
        },
        "guard": {"verdict": verdict, "reasons": ["Within pools"], "risk_flags": []},
        "state_update": {"phase_cursor": "PHASE_1_FEASIBILITY"},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_decision():
    """Factory returning the JSON text of a model decision."""

    def _make(power_mw: float = 100.0, verdict: str = "APPROVED", **overrides: Any) -> str:
        return json.dumps(decision_payload(power_mw, verdict, **overrides))

    return _make


@pytest.fixture
def scripted_completion():
    return ScriptedCompletion


@pytest.fixture
def scripted_gateway():
    return ScriptedGateway


@pytest.fixture
def test_settings() -> PipelineSettings:
    return PipelineSettings(
        database_url="sqlite://",
        omega_model="scripted-model",
        inference_backoff_seconds=0.0,
        inference_timeout_seconds=2.0,
        default_jurisdiction="UAE",
        omega_access_code="",
        allowed_origins="",
    )
