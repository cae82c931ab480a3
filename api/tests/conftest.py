from __future__ import annotations

import datetime as dt
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

# Ensure the app reads a test database URL before importing package modules.
TEST_DB_PATH = Path("/tmp/pause_api_test.db")
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ.pop("OPIK_API_KEY", None)
os.environ.pop("USE_GEMINI_LEARNING", None)

from pause_api.auth import create_access_token
from pause_api.concurrency import wait_for_pending
from pause_api.config import LearningConfig
from pause_api.db import Base, SessionLocal, engine
from pause_api.main import app
from pause_api.models import GhostCard, Interaction
from pause_api.services.learning import LearningOrchestrator, get_learning_orchestrator
from pause_api.services.skillbook import ReflectorOutput, Skillbook, UpdateBatch
from pause_api.services.telemetry import get_telemetry
from pause_api.store import RecordStore, get_store


class FakeTelemetry:
    def __init__(self) -> None:
        self.scores: list[tuple[str, str, float, str]] = []
        self.outputs: list[tuple[str, dict[str, Any], list[str]]] = []
        self.traces: list[tuple[str, dict[str, Any]]] = []
        self.fail_outputs = False
        self.fail_scores = False

    def attach_score(self, interaction_id: str, metric_name: str, value: float, reason: str) -> bool:
        if self.fail_scores:
            raise RuntimeError("score backend unavailable")
        self.scores.append((interaction_id, metric_name, value, reason))
        return True

    def attach_output(self, interaction_id: str, output: dict[str, Any], tags: list[str], *, name: str = "learning:reflection") -> str:
        if self.fail_outputs:
            raise RuntimeError("trace backend unavailable")
        self.outputs.append((interaction_id, output, tags))
        return "trace-1"

    def log_trace(self, name: str, *, input: dict[str, Any], output: dict[str, Any] | None = None, tags: list[str] | None = None) -> str:
        self.traces.append((name, input))
        return "trace-2"


class FakeReflector:
    def __init__(self) -> None:
        self.output: ReflectorOutput | None = None
        self.error: Exception | None = None
        self.delay = 0.0
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def reflect(self, *, question: str, generator_answer: str, feedback: str, skillbook: Skillbook) -> ReflectorOutput | None:
        with self._lock:
            self.calls.append(
                {"question": question, "generator_answer": generator_answer, "feedback": feedback, "skillbook": skillbook}
            )
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.output


class FakeCurator:
    def __init__(self) -> None:
        self.batch = UpdateBatch(reasoning="nothing to change")
        self.error: Exception | None = None
        self.calls: list[str] = []

    def curate(self, *, reflection_analysis: str, skillbook: Skillbook) -> UpdateBatch:
        self.calls.append(reflection_analysis)
        if self.error is not None:
            raise self.error
        return self.batch


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    wait_for_pending(timeout=5)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store() -> RecordStore:
    return RecordStore(timeout=5.0)


@pytest.fixture
def telemetry() -> FakeTelemetry:
    return FakeTelemetry()


@pytest.fixture
def reflector() -> FakeReflector:
    return FakeReflector()


@pytest.fixture
def curator() -> FakeCurator:
    return FakeCurator()


@pytest.fixture
def learning_config() -> LearningConfig:
    return LearningConfig(
        reflection_timeout_seconds=2.0,
        curation_timeout_seconds=2.0,
        skillbook_max_context_chars=8000,
        skillbook_max_retries=3,
    )


@pytest.fixture
def orchestrator(
    store: RecordStore,
    reflector: FakeReflector,
    curator: FakeCurator,
    telemetry: FakeTelemetry,
    learning_config: LearningConfig,
) -> LearningOrchestrator:
    return LearningOrchestrator(store, reflector, curator, telemetry, learning_config)


@pytest.fixture
def client(store: RecordStore, telemetry: FakeTelemetry, orchestrator: LearningOrchestrator) -> TestClient:
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_telemetry] = lambda: telemetry
    app.dependency_overrides[get_learning_orchestrator] = lambda: orchestrator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def bearer(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return bearer("user-1")


@pytest.fixture
def make_interaction() -> Callable[..., str]:
    def _make(
        interaction_id: str = "int-1",
        user_id: str = "user-1",
        *,
        tier: str = "negotiator",
        outcome: str | None = None,
        metadata: dict[str, Any] | None = None,
        reasoning_summary: str | None = "Flagged as impulse buy: late night, high price.",
    ) -> str:
        with SessionLocal() as db:
            db.add(
                Interaction(
                    id=interaction_id,
                    user_id=user_id,
                    tier=tier,
                    status="completed",
                    outcome=outcome,
                    metadata_json=metadata,
                    reasoning_summary=reasoning_summary,
                )
            )
            db.commit()
        return interaction_id

    return _make


@pytest.fixture
def make_ghost_card() -> Callable[..., str]:
    def _make(
        card_id: str,
        interaction_id: str = "int-1",
        user_id: str = "user-1",
        *,
        created_at: dt.datetime | None = None,
    ) -> str:
        with SessionLocal() as db:
            card = GhostCard(id=card_id, interaction_id=interaction_id, user_id=user_id, status="pending")
            if created_at is not None:
                card.created_at = created_at
            db.add(card)
            db.commit()
        return card_id

    return _make


def load_interaction(interaction_id: str) -> Interaction:
    with SessionLocal() as db:
        row = db.get(Interaction, interaction_id)
        assert row is not None
        db.expunge(row)
        return row


def load_ghost_cards(interaction_id: str) -> list[GhostCard]:
    with SessionLocal() as db:
        rows = list(db.scalars(select(GhostCard).where(GhostCard.interaction_id == interaction_id)))
        db.expunge_all()
        return rows
