from __future__ import annotations

import logging

from ..config import get_learning_config
from ..store import RecordStore
from .skillbook import Skillbook, UpdateBatch

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[Skillbook truncated - showing top strategies]"

SKILLBOOK_USAGE_INSTRUCTIONS = """\
**How to use these strategies:**
- Review skills relevant to your current task
- Prioritize strategies with high success rates (helpful > harmful)
- Apply strategies when they match your context
- Adapt general strategies to your specific situation
- Learn from both successful patterns and failure avoidance

**Important:** These are learned patterns, not rigid rules. Use judgment."""


def wrap_skillbook_context(skillbook: Skillbook) -> str:
    """Prompt-ready explanation plus skills; empty string when nothing has been learned yet."""
    if not skillbook.skills():
        return ""
    return (
        "\n## Available Strategic Knowledge (Learned from Experience)\n\n"
        "The following strategies have been learned from previous task executions.\n"
        "Each skill shows its success rate based on helpful/harmful feedback:\n\n"
        f"{skillbook.as_prompt()}\n\n"
        f"{SKILLBOOK_USAGE_INSTRUCTIONS}\n"
    )


def truncate_context(context: str, max_chars: int) -> str:
    if len(context) <= max_chars:
        return context
    return f"{context[:max_chars]}{TRUNCATION_MARKER}"


def skillbook_prompt_context(skillbook: Skillbook, max_chars: int | None = None) -> str:
    if max_chars is None:
        max_chars = get_learning_config().skillbook_max_context_chars
    return truncate_context(wrap_skillbook_context(skillbook), max_chars)


def load_user_skillbook_instance(store: RecordStore, user_id: str) -> tuple[Skillbook, int]:
    """Returns the user's skillbook and its stored version; ``(empty, 0)`` when no row exists."""
    row = store.get_skillbook(user_id)
    if row is None:
        return Skillbook(), 0
    return Skillbook.from_dict(row.skills or {}), row.version


def load_user_skillbook(store: RecordStore, user_id: str, *, max_chars: int | None = None) -> str:
    skillbook, _ = load_user_skillbook_instance(store, user_id)
    return skillbook_prompt_context(skillbook, max_chars)


def persist_skillbook_update(
    store: RecordStore,
    user_id: str,
    skillbook: Skillbook,
    version: int,
    batch: UpdateBatch,
    *,
    max_retries: int | None = None,
) -> Skillbook | None:
    """
    Write ``skillbook`` (with ``batch`` already applied) using optimistic locking.

    On a version conflict the latest row is reloaded and the same batch is
    re-applied before retrying. Returns the persisted skillbook, or ``None``
    once every attempt lost the race. Store errors propagate.
    """
    if max_retries is None:
        max_retries = get_learning_config().skillbook_max_retries

    current, current_version = skillbook, version
    for attempt in range(max_retries):
        if attempt > 0:
            current, current_version = load_user_skillbook_instance(store, user_id)
            current.apply_update(batch)

        if store.compare_and_swap_skillbook(user_id, current.to_dict(), expected_version=current_version):
            return current

        # Version 0 means no row yet for this user.
        if current_version == 0 and store.insert_skillbook(user_id, current.to_dict()):
            return current

        logger.warning("Skillbook version conflict on attempt %d for user %s", attempt + 1, user_id)

    return None
