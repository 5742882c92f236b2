"""
Prompt assembly for the decision, repair and dataset calls.

The decision prompt is a single text block that embeds, in order: node
identity, the mission packet, the state ledger, the dataset feed, the pillar
logic gateways, the strict output contract, and the conversation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from sovereign_pipeline.domain.schema import (
    NODE_ID,
    ChatMessage,
    DatasetSnapshot,
    MissionPacket,
    SovereignState,
)

DEFAULT_OBJECTIVE = "Sovereign Execution"

PILLAR_GATEWAYS = """
PILLAR LOGIC GATEWAYS (ENFORCE AS RULES, NOT WORDS):

P1 (CAPITAL / WALLET) - MANDATE WEIGHTING:
- MGX=high-risk frontier AI; Mubadala=long-horizon tech ROI; ADQ=national stability/strategic supply chains.
- If mismatch => flag P1_MANDATE_MISMATCH and re-route.

P2 (INFRA / WORKSHOP) - RESOURCE CONFLICT RESOLUTION:
- Power/Land/Water are finite pools. Proposals must specify resource_request.
- The ledger applies accounting; proposals exceeding pools must be vetoed.

P3 (HUMAN / HANDS) - RECRUITMENT VELOCITY:
- staffing_request must specify hires_local / hires_golden_visas / hires_global.
- time_to_staff_months must reflect: 0-2 (local) vs 3-6 (global).

P4 (REG / RULES) - COMPLIANCE SCORE:
- Every initiative returns reg_friction_score (1-10) + regulators.
- If score >= 9 => GUARD MUST VETO.

P5 (GEO / BRIDGE) - MARKET ENTRY MAP:
- Provide priority_markets + corridor/CEPA/tariff advantage.

P6 (ENERGY / GRID) - CLEAN ENERGY FIT:
- Provide CO2_intensity + clean_power_fit. Penalize gas expansion.

P7 (DIGITAL / SHIELD) - INSIDE-THE-FENCE:
- Default hosting: Sovereign Cloud (G42/Core42 or on-prem).
- Any foreign cloud for sovereign data => P7_SECURITY_VIOLATION => VETO.
""".strip()

DECISION_SCHEMA = """
OUTPUT MUST BE VALID MINIFIED JSON ONLY. NO MARKDOWN. NO EXTRA TEXT.
Schema:
{
 "mission_id": string,
 "objective": string,
 "phase_cursor": string,
 "brain_order": ["EXPLORER","PLANNER","GUARD"],

 "explorer": {
   "leakage_usd": number,
   "hs_codes": string[],
   "facts": string[],
   "dataset_rows_used": number
 },

 "planner": {
   "resource_request": { "power_mw": number, "land_sqft": number, "water_gpd": number },
   "staffing_request": { "hires_local": number, "hires_golden_visas": number, "hires_global": number, "time_to_staff_months": number },

   "seven_pillar_pack": { "p1": object,"p2": object,"p3": object,"p4": object,"p5": object,"p6": object,"p7": object },
   "capex_usd_range": [number, number],
   "timeline_months": number,
   "next_actions": string[],
   "kpis": string[]
 },

 "guard": {
   "verdict": "APPROVED" | "VETOED",
   "reasons": string[],
   "risk_flags": string[]
 },

 "state_update": {
   "power_mw_remaining": number,
   "land_sqft_remaining": number,
   "water_gpd_remaining": number,
   "talent_local_pool": number,
   "golden_visas_pool": number,
   "phase_cursor": string
 }
}
Hard rules:
- Guard MUST VETO if P7_SECURITY_VIOLATION OR pools would go negative OR reg_friction_score>=9.
- The ledger will override output if hard rules are violated.
- Use injected dataset as numeric anchor when present.
""".strip()


@dataclass(frozen=True)
class DecisionPrompt:
    text: str
    objective: str
    phase_cursor: str


def build_decision_prompt(
    state: SovereignState,
    packet: MissionPacket | None,
    dataset: DatasetSnapshot | None,
    messages: list[ChatMessage],
    mission_id: str,
) -> DecisionPrompt:
    """Assemble the single decision prompt for one chat request."""
    packet_json = packet.model_dump_json() if packet else "null"
    dataset_json = (
        json.dumps({"rows": [r.model_dump() for r in dataset.rows]}) if dataset else "null"
    )
    objective = packet.objective if packet else DEFAULT_OBJECTIVE
    phase_cursor = state.phase_cursor.value

    constitution = f"""
[SYSTEM STATUS: SOVEREIGN NODE ACTIVE]
[NODE: {NODE_ID}]
[DOMAIN: {state.jurisdiction.upper()} INDUSTRIAL & AI SOVEREIGNTY]

IDENTITY:
You are OMEGA-1, a Sovereign Decision Engine. Never mention any other model/provider.

MISSION PACKET (AUTHORITATIVE):
MISSION_PACKET_JSON={packet_json}

STATE LEDGER (AUTHORITATIVE):
STATE_JSON={state.model_dump_json()}

DATA FEED (GROUND TRUTH):
DATASET_JSON={dataset_json}

LOGIC GATEWAYS:
{PILLAR_GATEWAYS}

STRICT OUTPUT CONTRACT:
{DECISION_SCHEMA}

MISSION_ID="{mission_id}"
OBJECTIVE="{objective}"
PHASE_CURSOR="{phase_cursor}"
""".strip()

    parts = [constitution, "CONVERSATION:"]
    for message in messages:
        speaker = "OMEGA-1" if message.is_assistant else "USER"
        parts.append(f"{speaker}: {message.content}")
    parts.append("OMEGA-1:")

    return DecisionPrompt(text="\n".join(parts), objective=objective, phase_cursor=phase_cursor)


def build_repair_prompt(
    mission_id: str, objective: str, phase_cursor: str, raw_text: str,
) -> str:
    """Second-pass prompt asking the model to coerce its own output into the schema."""
    return "\n".join([
        "You are OMEGA-1 JSON REPAIR MODE.",
        "Return ONLY valid MINIFIED JSON that matches the schema. No markdown. No commentary.",
        "If data missing, fill with best-effort conservative defaults.",
        f'mission_id="{mission_id}" objective="{objective}" phase_cursor="{phase_cursor}"',
        "SCHEMA:",
        DECISION_SCHEMA,
        "RAW_TEXT_TO_REPAIR:",
        raw_text,
    ])


def build_dataset_prompt(country: str, focus: str) -> str:
    return "\n".join([
        "You are OMEGA-1. Return ONLY valid MINIFIED JSON (no markdown, no commentary).",
        "Create a small trade import dependency dataset for the given country and focus.",
        '{ "rows": [ { "hs_code": "string", "category": "string", "country": "string", "value_usd": 123 } ] }',
        f"Country: {country}",
        f"Focus: {focus}",
        "Constraints: 12 to 18 rows. Keep output under 5500 characters. "
        "value_usd must be numeric. Use realistic HS-like codes.",
    ])
