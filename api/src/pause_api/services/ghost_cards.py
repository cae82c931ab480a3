from __future__ import annotations

import logging

from ..concurrency import fire_and_forget
from ..store import RecordStore
from .outcomes import GHOST_QUALIFYING_OUTCOMES

logger = logging.getLogger(__name__)

SATISFACTION_SCORE_METRIC = "purchase_satisfaction"

SATISFACTION_SCORES: dict[str, float] = {
    "worth_it": 1.0,
    "not_sure": 0.5,
    "regret_it": 0.0,
}

SATISFACTION_SIGNALS: dict[str, dict[str, str]] = {
    "worth_it": {
        "accepted": "correct — user accepted Guardian's suggestion and is satisfied with the purchase",
        "overridden": (
            "incorrect — user overrode Guardian and is happy with the purchase; "
            "strategy was wrong to intervene"
        ),
        "wait": "correct — user waited as suggested and is satisfied with the outcome",
        "abandoned": "neutral — user abandoned interaction, satisfaction inconclusive",
        "timeout": "neutral — interaction timed out, satisfaction inconclusive",
        "auto_approved": "neutral — low-risk auto-approved, satisfaction not strongly attributable",
        "break_glass": "neutral — system failure triggered break glass, satisfaction not attributable",
        "wizard_bookmark": "neutral — user bookmarked reflection, satisfaction inconclusive",
        "wizard_abandoned": "neutral — user abandoned wizard, satisfaction inconclusive",
    },
    "regret_it": {
        "accepted": "incorrect — user accepted Guardian's suggestion but later regretted the decision",
        "overridden": (
            "correct — user overrode Guardian and now regrets it; "
            "strategy was right and should have been stronger"
        ),
        "wait": "incorrect — user waited as suggested but regrets waiting; should have acted sooner",
        "abandoned": "neutral — user abandoned interaction, regret inconclusive",
        "timeout": "neutral — interaction timed out, regret inconclusive",
        "auto_approved": "neutral — low-risk auto-approved, regret not strongly attributable",
        "break_glass": "neutral — system failure triggered break glass, regret not attributable",
        "wizard_bookmark": "neutral — user bookmarked reflection, regret inconclusive",
        "wizard_abandoned": "neutral — user abandoned wizard, regret inconclusive",
    },
    "not_sure": {
        "accepted": "neutral — user is unsure about the purchase decision",
        "overridden": "neutral — user is unsure about the override decision",
        "wait": "neutral — user is unsure about the wait decision",
        "abandoned": "neutral — user abandoned interaction, no clear signal",
        "timeout": "neutral — interaction timed out, no clear signal",
        "auto_approved": "neutral — auto-approved, no clear signal",
        "break_glass": "neutral — break glass, no clear signal",
        "wizard_bookmark": "neutral — user bookmarked reflection, no clear signal",
        "wizard_abandoned": "neutral — user abandoned wizard, no clear signal",
    },
}


def satisfaction_to_feedback_signal(satisfaction: str, outcome: str | None) -> str:
    row = SATISFACTION_SIGNALS.get(satisfaction)
    if row is None:
        logger.warning("Unknown satisfaction value: %s", satisfaction)
        return "neutral — unknown satisfaction feedback, no learning signal"
    signal = row.get(outcome or "")
    if signal is None:
        logger.warning("Unknown outcome for %s: %s", satisfaction, outcome)
        return "neutral — unknown outcome, no learning signal"
    return signal


def create_ghost_card(store: RecordStore, *, interaction_id: str, user_id: str) -> str:
    card_id = store.insert_ghost_card(interaction_id=interaction_id, user_id=user_id)
    logger.info("Created ghost card %s for interaction %s", card_id, interaction_id)
    return card_id


def dispatch_ghost_card(store: RecordStore, *, interaction_id: str, user_id: str, mapped_outcome: str) -> bool:
    """
    Schedule one pending ghost card when the outcome warrants a satisfaction check.

    Not deduplicated against earlier cards for the same interaction.
    """
    if mapped_outcome not in GHOST_QUALIFYING_OUTCOMES:
        return False
    fire_and_forget(
        create_ghost_card,
        store,
        interaction_id=interaction_id,
        user_id=user_id,
        label=f"Ghost card creation for interaction {interaction_id}",
    )
    return True
