from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from ..schemas import InteractionMetadata

DEFAULT_PURCHASE_QUESTION = "unlock request"


def merge_metadata(existing: dict[str, Any] | None, incoming: dict[str, Any] | None) -> dict[str, Any] | None:
    """
    Shallow merge with incoming keys winning.
    An absent or empty payload keeps the stored document untouched rather than clearing it.
    """
    if not incoming:
        return existing
    return {**(existing or {}), **incoming}


def read_metadata(raw: dict[str, Any] | None) -> InteractionMetadata | None:
    if not raw:
        return None
    try:
        return InteractionMetadata.model_validate(raw)
    except ValidationError:
        return None


def purchase_question(raw: dict[str, Any] | None) -> str:
    meta = read_metadata(raw)
    if meta is None or meta.purchase_context is None:
        return DEFAULT_PURCHASE_QUESTION
    context = meta.purchase_context
    if isinstance(context, str):
        return context if context.strip() else DEFAULT_PURCHASE_QUESTION
    return context.describe() or DEFAULT_PURCHASE_QUESTION
