"""
Asynchronous learning pipeline run after feedback has been recorded.

Three stages per invocation: reflection, skill update, then finalization
(trace attachment and status update side by side). Nothing here is durable;
a crash between stages loses the remaining work.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from ..concurrency import Settled, call_with_timeout, llm_pool, run_settled
from ..config import LearningConfig, get_learning_config
from ..store import RecordStore, get_store
from .gemini_learning import GeminiReflector, GeminiSkillManager
from .ghost_cards import SATISFACTION_SCORE_METRIC, SATISFACTION_SCORES, satisfaction_to_feedback_signal
from .metadata import purchase_question
from .outcomes import feedback_signal
from .skillbook import ReflectorOutput, Skillbook, UpdateBatch
from .skillbook_adapter import load_user_skillbook_instance, persist_skillbook_update
from .telemetry import TraceClient, get_telemetry

logger = logging.getLogger(__name__)


class Reflector(Protocol):
    def reflect(
        self, *, question: str, generator_answer: str, feedback: str, skillbook: Skillbook
    ) -> ReflectorOutput | None: ...


class SkillCurator(Protocol):
    def curate(self, *, reflection_analysis: str, skillbook: Skillbook) -> UpdateBatch: ...


@dataclass
class LearningPipelineResult:
    reflection_output: ReflectorOutput
    interaction_id: str
    user_id: str
    skillbook: Skillbook
    skillbook_version: int


def _retry_queue_entry(**fields: Any) -> str:
    fields["timestamp"] = dt.datetime.now(dt.timezone.utc).isoformat()
    return json.dumps(fields)


class LearningOrchestrator:
    def __init__(
        self,
        store: RecordStore,
        reflector: Reflector,
        curator: SkillCurator,
        telemetry: TraceClient | None = None,
        config: LearningConfig | None = None,
    ) -> None:
        self.store = store
        self.reflector = reflector
        self.curator = curator
        self.telemetry = telemetry
        self.config = config or get_learning_config()

    # -- stage 1 -----------------------------------------------------------

    def run_reflection(
        self,
        *,
        interaction_id: str,
        user_id: str,
        question: str,
        generator_answer: str,
        feedback: str,
    ) -> LearningPipelineResult | None:
        """Returns ``None`` when there is nothing to learn or reflection failed (failure is logged)."""
        try:
            skillbook, version = load_user_skillbook_instance(self.store, user_id)
            reflection = call_with_timeout(
                self.reflector.reflect,
                self.config.reflection_timeout_seconds,
                executor=llm_pool,
                question=question,
                generator_answer=generator_answer,
                feedback=feedback,
                skillbook=skillbook,
            )
        except Exception as exc:
            logger.warning("Reflection failed for interaction %s: %s", interaction_id, exc)
            logger.warning(
                "RETRY_QUEUE %s",
                _retry_queue_entry(type="reflection", interactionId=interaction_id, userId=user_id),
            )
            return None

        if reflection is None:
            return None
        return LearningPipelineResult(
            reflection_output=reflection,
            interaction_id=interaction_id,
            user_id=user_id,
            skillbook=skillbook,
            skillbook_version=version,
        )

    # -- stage 2 -----------------------------------------------------------

    def run_skill_update(self, result: LearningPipelineResult) -> UpdateBatch | None:
        """
        Curate, apply and persist. Raises on curation or store failure; returns
        ``None`` when every optimistic-locking attempt lost the race.
        """
        skillbook = result.skillbook
        skill_count_before = len(skillbook.skills())

        batch = call_with_timeout(
            self.curator.curate,
            self.config.curation_timeout_seconds,
            executor=llm_pool,
            reflection_analysis=result.reflection_output.analysis,
            skillbook=skillbook,
        )
        skillbook.apply_update(batch)

        persisted = persist_skillbook_update(
            self.store,
            result.user_id,
            skillbook,
            result.skillbook_version,
            batch,
            max_retries=self.config.skillbook_max_retries,
        )
        if persisted is None:
            logger.warning(
                "RETRY_QUEUE %s",
                _retry_queue_entry(
                    type="skillbook_update", userId=result.user_id, interactionId=result.interaction_id
                ),
            )
            return None

        self._trace_skill_update(result.interaction_id, batch, skill_count_before, len(persisted.skills()))
        return batch

    def _trace_skill_update(self, interaction_id: str, batch: UpdateBatch, before: int, after: int) -> None:
        if self.telemetry is None:
            return
        try:
            self.telemetry.log_trace(
                "learning:skillbook_update",
                input={
                    "interactionId": interaction_id,
                    "operationCount": len(batch.operations),
                    "skillCountBefore": before,
                    "skillCountAfter": after,
                    "reasoning": batch.reasoning,
                    "operations": [
                        {"type": op.type, "section": op.section, "skill_id": op.skill_id} for op in batch.operations
                    ],
                },
                tags=["skillbook-update"],
            )
        except Exception as exc:
            logger.warning("Skillbook update trace failed for %s: %s", interaction_id, exc)

    # -- stage 3 -----------------------------------------------------------

    def attach_reflection_to_trace(
        self, interaction_id: str, reflection_output: ReflectorOutput, tags: list[str]
    ) -> str | None:
        if self.telemetry is None:
            return None
        output = {
            "reflectionAnalysis": reflection_output.analysis,
            "helpfulSkillIds": list(reflection_output.helpful_skill_ids),
            "harmfulSkillIds": list(reflection_output.harmful_skill_ids),
            "newLearningsCount": len(reflection_output.new_learnings),
        }
        return self.telemetry.attach_output(interaction_id, output, tags)

    def mark_learning_complete(self, interaction_id: str) -> None:
        self.store.update_interaction(interaction_id, status="learning_complete")

    def attach_satisfaction_score(self, interaction_id: str, satisfaction_feedback: str) -> bool:
        if self.telemetry is None:
            return False
        value = SATISFACTION_SCORES.get(satisfaction_feedback, 0.5)
        return self.telemetry.attach_score(
            interaction_id,
            SATISFACTION_SCORE_METRIC,
            value,
            f"User reported {satisfaction_feedback} after the purchase",
        )

    @staticmethod
    def _report_settled(results: dict[str, Settled], subject: str) -> None:
        for name, settled in results.items():
            if not settled.ok:
                logger.warning("%s failed for %s: %s", name, subject, settled.error)

    # -- entry points ------------------------------------------------------

    def run_feedback_learning(
        self,
        *,
        interaction_id: str,
        user_id: str,
        metadata: dict[str, Any] | None,
        reasoning_summary: str | None,
        outcome: str,
        tier: str | None = None,
    ) -> None:
        result = self.run_reflection(
            interaction_id=interaction_id,
            user_id=user_id,
            question=purchase_question(metadata),
            generator_answer=reasoning_summary or "",
            feedback=feedback_signal(outcome),
        )
        if result is None:
            return

        self.run_skill_update(result)

        tags = ["learning", f"outcome:{outcome}"]
        if tier:
            tags.append(f"tier:{tier}")
        settled = run_settled(
            {
                "Trace attachment": lambda: self.attach_reflection_to_trace(
                    interaction_id, result.reflection_output, tags
                ),
                "Status update": lambda: self.mark_learning_complete(interaction_id),
            }
        )
        self._report_settled(settled, interaction_id)

    def run_satisfaction_learning(self, *, ghost_card_id: str, user_id: str, satisfaction_feedback: str) -> None:
        card = self.store.get_ghost_card(ghost_card_id)
        if card is None:
            logger.warning("Ghost card %s vanished before satisfaction learning", ghost_card_id)
            return
        interaction = self.store.get_interaction(card.interaction_id)
        if interaction is None:
            logger.warning("Interaction %s for ghost card %s not found", card.interaction_id, ghost_card_id)
            return
        if interaction.outcome is None:
            logger.info("Interaction %s has no outcome; skipping satisfaction learning", interaction.id)
            return

        result = self.run_reflection(
            interaction_id=interaction.id,
            user_id=user_id,
            question=purchase_question(interaction.metadata_json),
            generator_answer=interaction.reasoning_summary or "",
            feedback=satisfaction_to_feedback_signal(satisfaction_feedback, interaction.outcome),
        )
        if result is None:
            return

        self.run_skill_update(result)

        tags = ["satisfaction", f"feedback:{satisfaction_feedback}", f"outcome:{interaction.outcome}"]
        settled = run_settled(
            {
                "Trace attachment": lambda: self.attach_reflection_to_trace(
                    interaction.id, result.reflection_output, tags
                ),
                "Satisfaction score": lambda: self.attach_satisfaction_score(interaction.id, satisfaction_feedback),
            }
        )
        self._report_settled(settled, f"ghost card {ghost_card_id}")


def dispatch_feedback_learning(orchestrator: LearningOrchestrator, **params: Any) -> None:
    """Background-task entry point; nothing may escape into the server."""
    try:
        orchestrator.run_feedback_learning(**params)
    except Exception:
        logger.exception("Learning pipeline failed for interaction %s", params.get("interaction_id"))


def dispatch_satisfaction_learning(
    orchestrator: LearningOrchestrator, *, ghost_card_id: str, user_id: str, satisfaction_feedback: str
) -> None:
    try:
        orchestrator.run_satisfaction_learning(
            ghost_card_id=ghost_card_id, user_id=user_id, satisfaction_feedback=satisfaction_feedback
        )
    except Exception:
        logger.exception("Satisfaction learning failed for ghost card %s", ghost_card_id)


_orchestrator: LearningOrchestrator | None = None


def get_learning_orchestrator() -> LearningOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = LearningOrchestrator(
            store=get_store(),
            reflector=GeminiReflector(),
            curator=GeminiSkillManager(),
            telemetry=get_telemetry(),
        )
    return _orchestrator
