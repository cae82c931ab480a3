from __future__ import annotations

from typing import Literal, NamedTuple

ClientOutcome = Literal["accepted", "override", "wait", "abandoned", "skipped_savings", "accepted_savings"]
WizardOutcome = Literal["wait", "override", "wizard_bookmark"]
SatisfactionFeedback = Literal["worth_it", "regret_it", "not_sure"]

OUTCOME_MAP: dict[str, str] = {
    "accepted": "accepted",
    "override": "overridden",
    "wait": "wait",
    "abandoned": "abandoned",
    "skipped_savings": "overridden",
    "accepted_savings": "accepted",
}

WIZARD_OUTCOME_MAP: dict[str, str] = {
    "wait": "wait",
    "override": "overridden",
    "wizard_bookmark": "wizard_bookmark",
}

# wizard_bookmark / wizard_abandoned come through the wizard route and are not learned from here.
LEARNABLE_OUTCOMES = frozenset({"accepted", "overridden", "wait", "abandoned"})

GHOST_QUALIFYING_OUTCOMES = frozenset({"accepted", "overridden", "wait", "auto_approved"})


class ScoreEntry(NamedTuple):
    value: float
    reason: str


INTERVENTION_ACCEPTANCE_METRIC = "intervention_acceptance"

# Keyed on the raw client outcome; outcomes without an entry get no score.
INTERVENTION_ACCEPTANCE_SCORES: dict[str, ScoreEntry] = {
    "accepted": ScoreEntry(1.0, "User accepted the Guardian's suggestion"),
    "accepted_savings": ScoreEntry(1.0, "User applied the savings the Guardian found"),
    "wizard_bookmark": ScoreEntry(0.75, "User bookmarked the reflection for later"),
    "wait": ScoreEntry(0.5, "User chose to wait before buying"),
    "override": ScoreEntry(0.0, "User overrode the Guardian"),
    "skipped_savings": ScoreEntry(0.0, "User skipped the savings and bought anyway"),
}

FEEDBACK_SIGNALS: dict[str, str] = {
    "accepted": "correct — user accepted the Guardian's suggestion",
    "overridden": "incorrect — user overrode the Guardian's suggestion",
    "wait": "correct — user chose to wait as suggested",
    "abandoned": "neutral — user abandoned the interaction without deciding",
    "auto_approved": "neutral — low-risk auto-approved, no intervention needed",
    "break_glass": "neutral — system failure triggered break glass fallback",
    "timeout": "neutral — interaction timed out",
    "wizard_bookmark": "correct — user bookmarked reflection for later",
    "wizard_abandoned": "neutral — user started wizard but abandoned",
}


def map_outcome(outcome: str) -> str:
    return OUTCOME_MAP[outcome]


def map_wizard_outcome(outcome: str) -> str:
    return WIZARD_OUTCOME_MAP[outcome]


def feedback_signal(outcome: str) -> str:
    return FEEDBACK_SIGNALS.get(outcome, f"neutral — unknown outcome: {outcome}")
