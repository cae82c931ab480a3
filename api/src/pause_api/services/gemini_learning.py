from __future__ import annotations

import json
import logging
from typing import Any

from ..config import GeminiLearningConfig, get_gemini_learning_config
from .skillbook import ReflectorOutput, Skillbook, UpdateBatch
from .skillbook_adapter import skillbook_prompt_context

logger = logging.getLogger(__name__)


class CurationError(RuntimeError):
    pass


def _validate_model(model: str) -> bool:
    return model.startswith("gemini-")


def _extract_json(text: str) -> dict[str, Any] | None:
    candidates: list[str] = [text.strip()]
    stripped = text.strip()
    if stripped.startswith("```"):
        first_nl = stripped.find("\n")
        last_fence = stripped.rfind("```")
        if first_nl != -1 and last_fence > first_nl:
            candidates.append(stripped[first_nl + 1:last_fence].strip())

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _str_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(v) for v in value if v is not None)


class _GeminiRole:
    def __init__(self, config: GeminiLearningConfig | None = None) -> None:
        self.config = config or get_gemini_learning_config()
        self._client: Any = None

    @property
    def available(self) -> bool:
        cfg = self.config
        return cfg.enabled and bool(cfg.api_key) and _validate_model(cfg.model)

    def _generate(self, prompt: dict[str, Any]) -> dict[str, Any] | None:
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self.config.api_key)
        response = self._client.models.generate_content(
            model=self.config.model,
            contents=json.dumps(prompt),
        )
        text = (response.text or "").strip()
        if not text:
            return None
        return _extract_json(text)


class GeminiReflector(_GeminiRole):
    """Explains why an outcome happened. ``None`` means nothing to learn (or learning is disabled)."""

    def reflect(
        self,
        *,
        question: str,
        generator_answer: str,
        feedback: str,
        skillbook: Skillbook,
    ) -> ReflectorOutput | None:
        if not self.available:
            return None

        prompt = {
            "task": (
                "Analyse why the purchase guardian's intervention led to this outcome and "
                "extract reusable, atomic strategy learnings."
            ),
            "question": question,
            "guardian_reasoning": generator_answer,
            "feedback": feedback,
            "skillbook": skillbook_prompt_context(skillbook),
            "response_schema": {
                "analysis": "str",
                "helpful_skill_ids": "list[str]",
                "harmful_skill_ids": "list[str]",
                "new_learnings": "list[{section: str, content: str, atomicity_score: float}]",
            },
        }
        parsed = self._generate(prompt)
        if parsed is None:
            return None

        analysis = str(parsed.get("analysis") or "").strip()
        if not analysis:
            return None
        learnings = parsed.get("new_learnings")
        return ReflectorOutput(
            analysis=analysis,
            helpful_skill_ids=_str_list(parsed.get("helpful_skill_ids")),
            harmful_skill_ids=_str_list(parsed.get("harmful_skill_ids")),
            new_learnings=tuple(item for item in (learnings if isinstance(learnings, list) else []) if isinstance(item, dict)),
        )


class GeminiSkillManager(_GeminiRole):
    def curate(self, *, reflection_analysis: str, skillbook: Skillbook) -> UpdateBatch:
        if not self.available:
            raise CurationError("Gemini curation is not configured")

        prompt = {
            "task": (
                "Curate the skillbook from this reflection. Prefer TAG and UPDATE over ADD, "
                "never duplicate an existing skill, and keep each skill to one actionable idea."
            ),
            "reflection": reflection_analysis,
            "skillbook": skillbook_prompt_context(skillbook),
            "response_schema": {
                "reasoning": "str",
                "operations": "list[{type: ADD|UPDATE|TAG|REMOVE, section: str, content?: str, "
                "skill_id?: str, metadata?: {helpful|harmful|neutral: int}}]",
            },
        }
        parsed = self._generate(prompt)
        if parsed is None:
            raise CurationError("Skill manager returned no parseable update batch")
        try:
            return UpdateBatch.from_dict(parsed)
        except (TypeError, ValueError) as exc:
            raise CurationError(f"Invalid update batch: {exc}") from exc
