"""
Synchronous halves of the feedback endpoints.

Each function validates ownership, performs the single store write that decides
the HTTP response, then hands side effects to fire-and-forget effects or
post-response background tasks. Store failures surface as ``DatabaseError``.
"""
from __future__ import annotations

import datetime as dt
import logging

from fastapi import BackgroundTasks

from ..concurrency import fire_and_forget
from ..errors import Conflict, DatabaseError, Forbidden, NotFound
from ..models import GhostCard, Interaction
from ..schemas import (
    FeedbackOut,
    FeedbackRequest,
    GhostCardOut,
    GhostCardPage,
    GhostCardPurchaseContext,
    PurchaseContext,
    SatisfactionFeedbackOut,
    SatisfactionFeedbackRequest,
    WizardCompleteOut,
    WizardCompleteRequest,
)
from ..store import RecordStore, StoreError
from .ghost_cards import dispatch_ghost_card
from .learning import LearningOrchestrator, dispatch_feedback_learning, dispatch_satisfaction_learning
from .metadata import merge_metadata, read_metadata
from .outcomes import (
    INTERVENTION_ACCEPTANCE_METRIC,
    INTERVENTION_ACCEPTANCE_SCORES,
    LEARNABLE_OUTCOMES,
    map_outcome,
    map_wizard_outcome,
)
from .telemetry import TraceClient

logger = logging.getLogger(__name__)

GHOST_CARD_PAGE_SIZE = 10


def _load_interaction(store: RecordStore, interaction_id: str) -> Interaction:
    try:
        row = store.get_interaction(interaction_id)
    except StoreError as exc:
        logger.error("Interaction lookup failed for %s: %s", interaction_id, exc)
        raise DatabaseError() from exc
    if row is None:
        raise NotFound("Interaction not found")
    return row


def _load_ghost_card(store: RecordStore, ghost_card_id: str) -> GhostCard:
    try:
        card = store.get_ghost_card(ghost_card_id)
    except StoreError as exc:
        logger.error("Ghost card lookup failed for %s: %s", ghost_card_id, exc)
        raise DatabaseError() from exc
    if card is None:
        raise NotFound("Ghost card not found")
    return card


def schedule_acceptance_score(telemetry: TraceClient | None, interaction_id: str, client_outcome: str) -> bool:
    entry = INTERVENTION_ACCEPTANCE_SCORES.get(client_outcome)
    if telemetry is None or entry is None:
        return False
    fire_and_forget(
        telemetry.attach_score,
        interaction_id,
        INTERVENTION_ACCEPTANCE_METRIC,
        entry.value,
        entry.reason,
        label=f"Score attachment for interaction {interaction_id}",
    )
    return True


def submit_feedback(
    payload: FeedbackRequest,
    user_id: str,
    *,
    store: RecordStore,
    telemetry: TraceClient | None,
    orchestrator: LearningOrchestrator,
    background_tasks: BackgroundTasks,
) -> FeedbackOut:
    interaction = _load_interaction(store, payload.interaction_id)
    if interaction.user_id != user_id:
        raise Forbidden()

    mapped = map_outcome(payload.outcome)
    was_updated = interaction.outcome is not None
    # Pre-update document; the pipeline reads what the guardian saw.
    previous_metadata = interaction.metadata_json

    try:
        store.update_interaction(
            interaction.id,
            outcome=mapped,
            status="feedback_received",
            metadata=merge_metadata(previous_metadata, payload.metadata),
        )
    except StoreError as exc:
        logger.error("Feedback write failed for %s: %s", interaction.id, exc)
        raise DatabaseError("Failed to update interaction") from exc

    schedule_acceptance_score(telemetry, interaction.id, payload.outcome)
    dispatch_ghost_card(store, interaction_id=interaction.id, user_id=user_id, mapped_outcome=mapped)

    if mapped in LEARNABLE_OUTCOMES:
        background_tasks.add_task(
            dispatch_feedback_learning,
            orchestrator,
            interaction_id=interaction.id,
            user_id=user_id,
            metadata=previous_metadata,
            reasoning_summary=interaction.reasoning_summary,
            outcome=mapped,
            tier=interaction.tier,
        )

    return FeedbackOut(feedback_id=interaction.id, updated=True if was_updated else None)


def submit_satisfaction_feedback(
    ghost_card_id: str,
    payload: SatisfactionFeedbackRequest,
    user_id: str,
    *,
    store: RecordStore,
    orchestrator: LearningOrchestrator,
    background_tasks: BackgroundTasks,
) -> SatisfactionFeedbackOut:
    card = _load_ghost_card(store, ghost_card_id)
    if card.user_id != user_id:
        raise Forbidden()

    try:
        store.update_ghost_card(
            card.id,
            satisfaction_feedback=payload.satisfaction_feedback,
            status="feedback_given",
        )
    except StoreError as exc:
        logger.error("Satisfaction write failed for ghost card %s: %s", card.id, exc)
        raise DatabaseError("Failed to update ghost card") from exc

    background_tasks.add_task(
        dispatch_satisfaction_learning,
        orchestrator,
        ghost_card_id=card.id,
        user_id=user_id,
        satisfaction_feedback=payload.satisfaction_feedback,
    )
    return SatisfactionFeedbackOut(ghost_card_id=card.id, satisfaction_feedback=payload.satisfaction_feedback)


def complete_wizard(
    payload: WizardCompleteRequest,
    user_id: str,
    *,
    store: RecordStore,
    telemetry: TraceClient | None,
) -> WizardCompleteOut:
    """Write-once: a second completion for the same interaction is a conflict, never an overwrite."""
    interaction = _load_interaction(store, payload.interaction_id)
    if interaction.user_id != user_id:
        raise Forbidden("Access denied")
    if interaction.outcome is not None:
        raise Conflict("Interaction already has an outcome")

    responses = [r.model_dump() for r in payload.responses]
    try:
        matched = store.update_interaction(
            interaction.id,
            only_if_outcome_null=True,
            outcome=map_wizard_outcome(payload.outcome),
            status="feedback_received",
            metadata={"wizardResponses": responses},
        )
    except StoreError as exc:
        logger.error("Wizard write failed for %s: %s", interaction.id, exc)
        raise DatabaseError("Failed to update interaction") from exc

    if matched == 0:
        raise Conflict("Interaction already has an outcome")

    schedule_acceptance_score(telemetry, interaction.id, payload.outcome)
    return WizardCompleteOut()


def parse_cursor(cursor: str | None) -> tuple[dt.datetime, str] | None:
    """``"<createdAt ISO>|<id>"``; anything malformed is treated as no cursor."""
    if not cursor:
        return None
    created_raw, sep, card_id = cursor.partition("|")
    if not sep or not created_raw or not card_id:
        return None
    try:
        created_at = dt.datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(dt.timezone.utc)
    return created_at, card_id


def format_cursor(card: GhostCard) -> str:
    return f"{card.created_at.isoformat()}|{card.id}"


def _card_purchase_context(raw: dict | None) -> GhostCardPurchaseContext | None:
    meta = read_metadata(raw)
    if meta is None or not isinstance(meta.purchase_context, PurchaseContext):
        return None
    ctx = meta.purchase_context
    return GhostCardPurchaseContext(item_name=ctx.item_name, price=ctx.price, merchant=ctx.merchant)


def list_ghost_cards(user_id: str, cursor: str | None, *, store: RecordStore) -> GhostCardPage:
    try:
        rows = store.list_ghost_cards(user_id, limit=GHOST_CARD_PAGE_SIZE + 1, before=parse_cursor(cursor))
    except StoreError as exc:
        logger.error("Ghost card listing failed for user %s: %s", user_id, exc)
        raise DatabaseError() from exc

    has_more = len(rows) > GHOST_CARD_PAGE_SIZE
    rows = rows[:GHOST_CARD_PAGE_SIZE]
    cards = [
        GhostCardOut(
            id=card.id,
            interaction_id=card.interaction_id,
            status=card.status,
            satisfaction_feedback=card.satisfaction_feedback,
            created_at=card.created_at,
            tier=interaction.tier,
            outcome=interaction.outcome,
            purchase_context=_card_purchase_context(interaction.metadata_json),
        )
        for card, interaction in rows
    ]
    next_cursor = format_cursor(rows[-1][0]) if has_more else None
    return GhostCardPage(cards=cards, next_cursor=next_cursor)
