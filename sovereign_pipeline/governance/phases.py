"""
Phase Automaton — bounded, monotonic mission lifecycle cursor.

    PHASE_1_FEASIBILITY → PHASE_2_SANDBOX → PHASE_3_SCALE → PHASE_4_DOMINION

The cursor moves at most one step per request, and only when BOTH hold:
1. the Accounting Enforcer's final verdict is APPROVED
2. the most recent user-authored message expresses advance intent

The model's own state_update.phase_cursor never moves the cursor.
"""

from __future__ import annotations

import logging

from sovereign_pipeline.domain.schema import ChatMessage, Phase, SovereignState

logger = logging.getLogger(__name__)

ADVANCE_LEXICON: tuple[str, ...] = (
    "advance",
    "next phase",
    "proceed",
    "move to",
    "go to phase",
    "phase 2", "phase_2", "sandbox",
    "phase 3", "phase_3", "scale",
    "phase 4", "phase_4", "dominion",
)


def last_user_text(messages: list[ChatMessage]) -> str:
    """Content of the most recent non-assistant message, or ''."""
    for message in reversed(messages):
        if not message.is_assistant:
            return message.content
    return ""


class PhaseAutomaton:
    """Advances a SovereignState's phase cursor under strict preconditions."""

    def __init__(self, lexicon: tuple[str, ...] = ADVANCE_LEXICON) -> None:
        self.lexicon = lexicon

    def wants_advance(self, text: str) -> bool:
        lowered = text.lower()
        return any(term in lowered for term in self.lexicon)

    def apply(self, state: SovereignState, approved: bool, user_text: str) -> bool:
        """
        Advance the cursor by one phase if permitted.

        Args:
            state: Ledger snapshot; mutated in place.
            approved: The enforcer's authoritative verdict.
            user_text: The most recent user-authored message.

        Returns:
            True if the cursor moved.
        """
        state.phase_cursor = Phase.coerce(state.phase_cursor)

        if not approved or not self.wants_advance(user_text):
            return False

        previous = state.phase_cursor
        state.phase_cursor = previous.next()
        moved = state.phase_cursor != previous

        if moved:
            logger.info(
                "Phase advanced: jurisdiction=%s %s -> %s",
                state.jurisdiction, previous.value, state.phase_cursor.value,
            )
        return moved
