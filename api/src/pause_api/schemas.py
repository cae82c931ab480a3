from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .services.outcomes import ClientOutcome, SatisfactionFeedback, WizardOutcome


class APIModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class HealthOut(BaseModel):
    ok: bool
    service: str


# -- metadata document ----------------------------------------------------


class PurchaseContext(APIModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    item_name: str | None = Field(default=None, alias="itemName")
    price: float | None = None
    merchant: str | None = None

    def describe(self) -> str:
        parts: list[str] = []
        if self.item_name:
            parts.append(self.item_name)
        if self.merchant:
            parts.append(f"from {self.merchant}")
        if self.price is not None:
            parts.append(f"for ${self.price:,.2f}")
        return " ".join(parts)


class WizardResponse(BaseModel):
    step: int
    question: str
    answer: str


class InteractionMetadata(APIModel):
    """Typed view over the stored metadata document; unknown keys ride along as extras."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    purchase_context: str | PurchaseContext | None = Field(default=None, alias="purchaseContext")
    wizard_responses: list[WizardResponse] | None = Field(default=None, alias="wizardResponses")


# -- feedback -------------------------------------------------------------


class FeedbackRequest(APIModel):
    interaction_id: str = Field(alias="interactionId", min_length=1)
    outcome: ClientOutcome
    metadata: dict[str, Any] | None = None


class FeedbackOut(APIModel):
    success: bool = True
    feedback_id: str = Field(alias="feedbackId")
    updated: bool | None = None


# -- ghost cards ----------------------------------------------------------


class SatisfactionFeedbackRequest(APIModel):
    satisfaction_feedback: SatisfactionFeedback = Field(alias="satisfactionFeedback")


class SatisfactionFeedbackOut(APIModel):
    success: bool = True
    ghost_card_id: str = Field(alias="ghostCardId")
    satisfaction_feedback: SatisfactionFeedback = Field(alias="satisfactionFeedback")


class GhostCardPurchaseContext(APIModel):
    item_name: str | None = Field(default=None, alias="itemName")
    price: float | None = None
    merchant: str | None = None


class GhostCardOut(APIModel):
    id: str
    interaction_id: str = Field(alias="interactionId")
    status: str
    satisfaction_feedback: str | None = Field(default=None, alias="satisfactionFeedback")
    created_at: dt.datetime = Field(alias="createdAt")
    tier: str
    outcome: str | None
    purchase_context: GhostCardPurchaseContext | None = Field(default=None, alias="purchaseContext")


class GhostCardPage(APIModel):
    cards: list[GhostCardOut]
    next_cursor: str | None = Field(default=None, alias="nextCursor")


# -- wizard ---------------------------------------------------------------


class WizardCompleteRequest(APIModel):
    interaction_id: str = Field(alias="interactionId", min_length=1)
    responses: list[WizardResponse] = Field(min_length=1)
    outcome: WizardOutcome


class WizardCompleteOut(BaseModel):
    success: bool = True


# -- skillbook ------------------------------------------------------------


class SkillbookContextOut(BaseModel):
    context: str
