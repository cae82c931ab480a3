from __future__ import annotations

import logging

import pytest

from conftest import FakeCurator, FakeReflector, FakeTelemetry, load_interaction
from pause_api.config import LearningConfig
from pause_api.services.learning import LearningOrchestrator, dispatch_feedback_learning
from pause_api.services.skillbook import ReflectorOutput, UpdateBatch, UpdateOperation
from pause_api.services.skillbook_adapter import load_user_skillbook_instance
from pause_api.store import RecordStore, StoreError

REFLECTION = ReflectorOutput(
    analysis="User overrode a soft nudge on a late-night gadget purchase.",
    helpful_skill_ids=(),
    harmful_skill_ids=("late-00001",),
    new_learnings=({"section": "late night", "content": "Be firmer after midnight", "atomicity_score": 0.9},),
)

ADD_BATCH = UpdateBatch(
    reasoning="capture the late-night pattern",
    operations=(UpdateOperation(type="ADD", section="late night", content="Be firmer after midnight"),),
)


def _run(orchestrator: LearningOrchestrator, **overrides) -> None:
    params = dict(
        interaction_id="int-1",
        user_id="user-1",
        metadata={"purchaseContext": "Noise-cancelling headphones"},
        reasoning_summary="Late-night purchase above usual spend.",
        outcome="overridden",
        tier="negotiator",
    )
    params.update(overrides)
    dispatch_feedback_learning(orchestrator, **params)


def _learning_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [r for r in caplog.records if r.name.startswith("pause_api")]


def test_full_pipeline(
    orchestrator: LearningOrchestrator,
    reflector: FakeReflector,
    curator: FakeCurator,
    telemetry: FakeTelemetry,
    store: RecordStore,
    make_interaction,
) -> None:
    make_interaction(outcome="overridden")
    reflector.output = REFLECTION
    curator.batch = ADD_BATCH

    _run(orchestrator)

    call = reflector.calls[0]
    assert call["question"] == "Noise-cancelling headphones"
    assert call["generator_answer"] == "Late-night purchase above usual spend."
    assert call["feedback"] == "incorrect — user overrode the Guardian's suggestion"
    assert curator.calls == [REFLECTION.analysis]

    book, version = load_user_skillbook_instance(store, "user-1")
    assert version == 1
    assert [s.content for s in book.skills()] == ["Be firmer after midnight"]

    assert load_interaction("int-1").status == "learning_complete"

    assert len(telemetry.outputs) == 1
    interaction_id, output, tags = telemetry.outputs[0]
    assert interaction_id == "int-1"
    assert tags == ["learning", "outcome:overridden", "tier:negotiator"]
    assert output["reflectionAnalysis"] == REFLECTION.analysis
    assert output["harmfulSkillIds"] == ["late-00001"]
    assert output["newLearningsCount"] == 1

    name, trace_input = telemetry.traces[0]
    assert name == "learning:skillbook_update"
    assert trace_input["skillCountBefore"] == 0
    assert trace_input["skillCountAfter"] == 1


def test_reflection_nothing_to_learn_stops_silently(
    orchestrator: LearningOrchestrator,
    reflector: FakeReflector,
    curator: FakeCurator,
    telemetry: FakeTelemetry,
    make_interaction,
    caplog: pytest.LogCaptureFixture,
) -> None:
    make_interaction(outcome="accepted")
    caplog.set_level(logging.INFO)

    _run(orchestrator, outcome="accepted")

    assert len(reflector.calls) == 1
    assert curator.calls == []
    assert telemetry.outputs == []
    assert load_interaction("int-1").status == "completed"
    assert [r for r in _learning_records(caplog) if r.levelno >= logging.WARNING] == []


def test_reflection_failure_goes_to_retry_queue(
    orchestrator: LearningOrchestrator,
    reflector: FakeReflector,
    curator: FakeCurator,
    make_interaction,
    caplog: pytest.LogCaptureFixture,
) -> None:
    make_interaction(outcome="wait")
    reflector.error = RuntimeError("model overloaded")

    _run(orchestrator, outcome="wait")

    assert curator.calls == []
    assert "Reflection failed for interaction int-1: model overloaded" in caplog.text
    retry = [r.getMessage() for r in caplog.records if "RETRY_QUEUE" in r.getMessage()]
    assert len(retry) == 1
    assert '"interactionId": "int-1"' in retry[0]
    assert load_interaction("int-1").status == "completed"


def test_reflection_timeout(
    store: RecordStore,
    reflector: FakeReflector,
    curator: FakeCurator,
    telemetry: FakeTelemetry,
    make_interaction,
    caplog: pytest.LogCaptureFixture,
) -> None:
    make_interaction(outcome="accepted")
    reflector.output = REFLECTION
    reflector.delay = 0.5
    config = LearningConfig(
        reflection_timeout_seconds=0.05,
        curation_timeout_seconds=1.0,
        skillbook_max_context_chars=8000,
        skillbook_max_retries=3,
    )
    orchestrator = LearningOrchestrator(store, reflector, curator, telemetry, config)

    _run(orchestrator, outcome="accepted")

    assert curator.calls == []
    assert "RETRY_QUEUE" in caplog.text
    assert "timed out" in caplog.text


def test_skill_update_failure_aborts_pipeline(
    orchestrator: LearningOrchestrator,
    reflector: FakeReflector,
    curator: FakeCurator,
    telemetry: FakeTelemetry,
    store: RecordStore,
    make_interaction,
    caplog: pytest.LogCaptureFixture,
) -> None:
    make_interaction(outcome="overridden")
    reflector.output = REFLECTION
    curator.error = RuntimeError("curation returned garbage")

    _run(orchestrator)

    assert telemetry.outputs == []
    assert load_interaction("int-1").status == "completed"
    assert load_user_skillbook_instance(store, "user-1")[1] == 0
    failures = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert [r.getMessage() for r in failures] == ["Learning pipeline failed for interaction int-1"]
    assert failures[0].exc_info is not None


class _ConflictingStore(RecordStore):
    def compare_and_swap_skillbook(self, user_id: str, skills: dict, *, expected_version: int) -> bool:
        return False

    def insert_skillbook(self, user_id: str, skills: dict) -> bool:
        return False


def test_exhausted_skillbook_retries_still_finalize(
    reflector: FakeReflector,
    curator: FakeCurator,
    telemetry: FakeTelemetry,
    learning_config: LearningConfig,
    make_interaction,
    caplog: pytest.LogCaptureFixture,
) -> None:
    make_interaction(outcome="overridden")
    reflector.output = REFLECTION
    curator.batch = ADD_BATCH
    orchestrator = LearningOrchestrator(_ConflictingStore(timeout=5.0), reflector, curator, telemetry, learning_config)

    _run(orchestrator)

    assert caplog.text.count("Skillbook version conflict") == 3
    assert '"type": "skillbook_update"' in caplog.text
    assert telemetry.traces == []
    assert len(telemetry.outputs) == 1
    assert load_interaction("int-1").status == "learning_complete"


def test_finalization_tasks_are_isolated(
    orchestrator: LearningOrchestrator,
    reflector: FakeReflector,
    telemetry: FakeTelemetry,
    make_interaction,
    caplog: pytest.LogCaptureFixture,
) -> None:
    make_interaction(outcome="wait")
    reflector.output = REFLECTION
    telemetry.fail_outputs = True

    _run(orchestrator, outcome="wait")

    assert load_interaction("int-1").status == "learning_complete"
    assert "Trace attachment failed for int-1: trace backend unavailable" in caplog.text
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


class _StatusFailingStore(RecordStore):
    def update_interaction(self, interaction_id: str, *, only_if_outcome_null: bool = False, **values) -> int:
        raise StoreError("OperationalError: disk I/O error")


def test_status_update_failure_keeps_trace(
    reflector: FakeReflector,
    curator: FakeCurator,
    telemetry: FakeTelemetry,
    learning_config: LearningConfig,
    make_interaction,
    caplog: pytest.LogCaptureFixture,
) -> None:
    make_interaction(outcome="wait")
    reflector.output = REFLECTION
    orchestrator = LearningOrchestrator(_StatusFailingStore(timeout=5.0), reflector, curator, telemetry, learning_config)

    _run(orchestrator, outcome="wait")

    assert len(telemetry.outputs) == 1
    assert "Status update failed for int-1" in caplog.text


def test_learning_without_telemetry(
    store: RecordStore,
    reflector: FakeReflector,
    curator: FakeCurator,
    learning_config: LearningConfig,
    make_interaction,
) -> None:
    make_interaction(outcome="accepted", tier="analyst")
    reflector.output = REFLECTION
    orchestrator = LearningOrchestrator(store, reflector, curator, None, learning_config)

    _run(orchestrator, outcome="accepted", tier="analyst")

    assert load_interaction("int-1").status == "learning_complete"


def test_slow_model_calls_do_not_starve_store_lookups(
    store: RecordStore,
    reflector: FakeReflector,
    curator: FakeCurator,
    make_interaction,
) -> None:
    make_interaction(outcome="overridden")
    reflector.delay = 1.0
    config = LearningConfig(
        reflection_timeout_seconds=0.05,
        curation_timeout_seconds=0.05,
        skillbook_max_context_chars=8000,
        skillbook_max_retries=3,
    )
    orchestrator = LearningOrchestrator(store, reflector, curator, None, config)

    # More abandoned reflections than there are model workers.
    for _ in range(20):
        _run(orchestrator)

    row = RecordStore(timeout=0.5).get_interaction("int-1")
    assert row is not None
    assert row.user_id == "user-1"
    # Let the queued reflections drain quickly.
    reflector.delay = 0.0
