"""
Structured Output Extraction and Repair.

Models routinely wrap valid JSON in prose or markdown fences, or truncate
it. Recovery happens in three tiers:

1. extract_structure(): pure scan for the outermost parseable JSON value
2. repair pass: one more inference call asking the model to
   coerce its raw text into the decision schema
3. safe stub: a statically built VETOED record naming the
   failure mode; always well-formed
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from sovereign_pipeline.domain.schema import DecisionRecord, SovereignState
from sovereign_pipeline.inference.gateway import InferenceFailure, InferenceGateway
from sovereign_pipeline.inference.prompts import build_repair_prompt

logger = logging.getLogger(__name__)

NON_JSON_FACT = "NON_JSON_MODEL_OUTPUT"
INFERENCE_FAILURE_FACT = "EDGE_TIMEOUT_OR_AI_FAILURE"

_OPENERS = {"{": "}", "[": "]"}


def _balanced_ends(text: str, start: int) -> list[int]:
    """
    Indices where text[start:i + 1] closes into a balanced structure.

    Bracket-depth scan that ignores brackets inside JSON strings. Stops at
    the first mismatched closer, since no longer prefix can balance after it.
    """
    ends: list[int] = []
    stack: list[str] = []
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch in ("}", "]"):
            if not stack or stack[-1] != ch:
                break
            stack.pop()
            if not stack:
                ends.append(i)

    return ends


def extract_structure(text: str | None) -> dict[str, Any] | list[Any] | None:
    """
    Recover a JSON object or array from free-form model text.

    Tries a direct parse first; otherwise starts at the first opening
    brace/bracket and tries balanced candidates from the longest to the
    shortest. Returns None when nothing parses.
    """
    if not text:
        return None
    s = text.strip()

    try:
        parsed = json.loads(s)
    except ValueError:
        parsed = None
    if isinstance(parsed, (dict, list)):
        return parsed

    starts = [i for i in (s.find("{"), s.find("[")) if i >= 0]
    if not starts:
        return None
    start = min(starts)

    for end in reversed(_balanced_ends(s, start)):
        try:
            parsed = json.loads(s[start:end + 1])
        except ValueError:
            continue
        if isinstance(parsed, (dict, list)):
            return parsed

    return None


# ════════════════════════════════════════════════════════════════
# Safe stubs
# ════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RecoveryContext:
    """Mission and ledger context needed to repair or stub a decision."""

    mission_id: str
    objective: str
    state: SovereignState

    @property
    def phase_cursor(self) -> str:
        return self.state.phase_cursor.value


def inference_failure_stub(context: RecoveryContext) -> DecisionRecord:
    """Stub for a timed-out or failed inference call."""
    return DecisionRecord.vetoed_stub(
        mission_id=context.mission_id,
        objective=context.objective,
        state=context.state,
        reason=INFERENCE_FAILURE_FACT,
        fact=INFERENCE_FAILURE_FACT,
        risk_flag="EDGE_FAILURE",
        next_action="RETRY_REQUEST",
        kpi="RECOVER_EDGE",
    )


def non_conformant_stub(context: RecoveryContext) -> DecisionRecord:
    """Stub for model output that could not be extracted or repaired."""
    return DecisionRecord.vetoed_stub(
        mission_id=context.mission_id,
        objective=context.objective,
        state=context.state,
        reason="NON_JSON_OUTPUT",
        fact=NON_JSON_FACT,
        risk_flag="FORMAT_FAILURE",
        next_action="FIX_OUTPUT_FORMAT",
        kpi="FORMAT_COMPLIANCE",
    )


def _needs_repair(parsed: Any) -> bool:
    if not isinstance(parsed, dict):
        return True
    explorer = parsed.get("explorer")
    if isinstance(explorer, dict):
        facts = explorer.get("facts")
        if isinstance(facts, list) and NON_JSON_FACT in facts:
            return True
    return False


# ════════════════════════════════════════════════════════════════
# Recovery
# ════════════════════════════════════════════════════════════════


class DecisionRecovery:
    """
    Turn raw model text into a DecisionRecord, repairing once if needed.

    Usage:
        recovery = DecisionRecovery(gateway)
        record = await recovery.recover(raw_text, context)
    """

    def __init__(self, gateway: InferenceGateway, repair_max_tokens: int = 1200) -> None:
        self.gateway = gateway
        self.repair_max_tokens = repair_max_tokens

    async def recover(self, raw_text: str, context: RecoveryContext) -> DecisionRecord:
        parsed = extract_structure(raw_text)

        if _needs_repair(parsed):
            logger.info(
                "Model output non-conformant, running repair pass: mission=%s chars=%d",
                context.mission_id, len(raw_text or ""),
            )
            parsed = await self.repair(raw_text, context)

        if not isinstance(parsed, dict):
            logger.warning("Repair failed, using safe stub: mission=%s", context.mission_id)
            return non_conformant_stub(context)

        try:
            return DecisionRecord.model_validate(parsed)
        except ValidationError as e:
            logger.warning(
                "Decision record rejected, using safe stub: mission=%s errors=%d",
                context.mission_id, e.error_count(),
            )
            return non_conformant_stub(context)

    async def repair(self, raw_text: str, context: RecoveryContext) -> Any:
        """Issue the repair call and extract from its answer; None on failure."""
        prompt = build_repair_prompt(
            context.mission_id, context.objective, context.phase_cursor, raw_text or "",
        )
        try:
            repaired = await self.gateway.invoke(
                prompt, max_tokens=self.repair_max_tokens, temperature=0.0,
            )
        except InferenceFailure as e:
            logger.warning("Repair inference failed: %s", e)
            return None
        return extract_structure(repaired)
