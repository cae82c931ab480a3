"""
Record store adapter.

Every operation opens its own session on a store worker thread and the caller
waits at most ``timeout`` seconds. The three failure shapes stay distinct:
``StoreTimeout`` (deadline hit, operation abandoned), ``None`` (row absent) and
``StoreError`` (anything the database raised).
"""
from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .concurrency import OperationTimedOut, call_with_timeout
from .config import get_store_config
from .db import SessionLocal
from .models import GhostCard, Interaction, Skillbook

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreError(Exception):
    pass


class StoreTimeout(StoreError):
    pass


class RecordStore:
    def __init__(self, session_factory: sessionmaker | None = None, *, timeout: float | None = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self.timeout = timeout if timeout is not None else get_store_config().timeout_seconds

    def _run(self, op: Callable[[Session], T]) -> T:
        def work() -> T:
            with self._session_factory() as session:
                result = op(session)
                session.commit()
                return result

        try:
            return call_with_timeout(work, self.timeout)
        except OperationTimedOut as exc:
            raise StoreTimeout(str(exc)) from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"{type(exc).__name__}: {exc}") from exc

    # -- interactions ------------------------------------------------------

    def get_interaction(self, interaction_id: str) -> Interaction | None:
        def op(session: Session) -> Interaction | None:
            row = session.get(Interaction, interaction_id)
            if row is not None:
                session.expunge(row)
            return row

        return self._run(op)

    def update_interaction(
        self,
        interaction_id: str,
        *,
        only_if_outcome_null: bool = False,
        **values: Any,
    ) -> int:
        """Single-row update; returns the number of rows matched."""
        if "metadata" in values:
            values["metadata_json"] = values.pop("metadata")

        def op(session: Session) -> int:
            stmt = update(Interaction).where(Interaction.id == interaction_id)
            if only_if_outcome_null:
                stmt = stmt.where(Interaction.outcome.is_(None))
            return session.execute(stmt.values(**values)).rowcount

        return self._run(op)

    # -- ghost cards -------------------------------------------------------

    def get_ghost_card(self, ghost_card_id: str) -> GhostCard | None:
        def op(session: Session) -> GhostCard | None:
            row = session.get(GhostCard, ghost_card_id)
            if row is not None:
                session.expunge(row)
            return row

        return self._run(op)

    def update_ghost_card(self, ghost_card_id: str, **values: Any) -> int:
        def op(session: Session) -> int:
            stmt = update(GhostCard).where(GhostCard.id == ghost_card_id).values(**values)
            return session.execute(stmt).rowcount

        return self._run(op)

    def insert_ghost_card(self, *, interaction_id: str, user_id: str) -> str:
        def op(session: Session) -> str:
            card = GhostCard(interaction_id=interaction_id, user_id=user_id, status="pending")
            session.add(card)
            session.flush()
            return card.id

        return self._run(op)

    def list_ghost_cards(
        self,
        user_id: str,
        *,
        limit: int,
        before: tuple[dt.datetime, str] | None = None,
    ) -> list[tuple[GhostCard, Interaction]]:
        """Owner-scoped page, newest first, keyed on ``(created_at, id)``."""

        def op(session: Session) -> list[tuple[GhostCard, Interaction]]:
            stmt = (
                select(GhostCard, Interaction)
                .join(Interaction, GhostCard.interaction_id == Interaction.id)
                .where(GhostCard.user_id == user_id)
            )
            if before is not None:
                created_at, card_id = before
                stmt = stmt.where(
                    or_(
                        GhostCard.created_at < created_at,
                        and_(GhostCard.created_at == created_at, GhostCard.id < card_id),
                    )
                )
            stmt = stmt.order_by(GhostCard.created_at.desc(), GhostCard.id.desc()).limit(limit)
            rows = [(card, interaction) for card, interaction in session.execute(stmt).all()]
            session.expunge_all()
            return rows

        return self._run(op)

    # -- skillbooks --------------------------------------------------------

    def get_skillbook(self, user_id: str) -> Skillbook | None:
        def op(session: Session) -> Skillbook | None:
            row = session.scalars(select(Skillbook).where(Skillbook.user_id == user_id).limit(1)).first()
            if row is not None:
                session.expunge(row)
            return row

        return self._run(op)

    def compare_and_swap_skillbook(self, user_id: str, skills: dict, *, expected_version: int) -> bool:
        def op(session: Session) -> bool:
            stmt = (
                update(Skillbook)
                .where(Skillbook.user_id == user_id, Skillbook.version == expected_version)
                .values(skills=skills, version=Skillbook.version + 1)
            )
            return session.execute(stmt).rowcount > 0

        return self._run(op)

    def insert_skillbook(self, user_id: str, skills: dict) -> bool:
        """Create the first row for a user. False when another writer got there first."""

        def op(session: Session) -> bool:
            session.add(Skillbook(user_id=user_id, skills=skills, version=1))
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                logger.info("Skillbook row for user %s already exists", user_id)
                return False
            return True

        return self._run(op)


_default_store: RecordStore | None = None


def get_store() -> RecordStore:
    global _default_store
    if _default_store is None:
        _default_store = RecordStore()
    return _default_store
