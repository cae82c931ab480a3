"""
Skillbook: the per-user strategy document the curation layer accumulates.

Persisted as a plain JSON document (``to_dict``/``from_dict``); mutated only by
applying an ``UpdateBatch`` of ADD / UPDATE / TAG / REMOVE operations.
"""
from __future__ import annotations

import datetime as dt
import json
from dataclasses import asdict, dataclass, field
from typing import Any

OPERATION_TYPES = ("ADD", "UPDATE", "TAG", "REMOVE")
VALID_TAGS = ("helpful", "harmful", "neutral")


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


@dataclass
class Skill:
    id: str
    section: str
    content: str
    helpful: int = 0
    harmful: int = 0
    neutral: int = 0
    status: str = "active"
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def apply_metadata(self, metadata: dict[str, float]) -> None:
        for key in VALID_TAGS:
            if key in metadata:
                setattr(self, key, int(metadata[key]))

    def to_llm_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "section": self.section,
            "content": self.content,
            "helpful": self.helpful,
            "harmful": self.harmful,
            "neutral": self.neutral,
        }

    @classmethod
    def from_dict(cls, skill_id: str, payload: dict[str, Any]) -> Skill:
        return cls(
            id=str(payload.get("id") or skill_id),
            section=str(payload.get("section", "")),
            content=str(payload.get("content", "")),
            helpful=int(payload.get("helpful", 0) or 0),
            harmful=int(payload.get("harmful", 0) or 0),
            neutral=int(payload.get("neutral", 0) or 0),
            status=str(payload.get("status") or "active"),
            created_at=str(payload.get("created_at") or _now_iso()),
            updated_at=str(payload.get("updated_at") or _now_iso()),
        )


@dataclass(frozen=True)
class UpdateOperation:
    type: str
    section: str
    content: str | None = None
    skill_id: str | None = None
    metadata: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> UpdateOperation:
        op_type = str(payload.get("type", "")).upper()
        if op_type not in OPERATION_TYPES:
            raise ValueError(f"Invalid operation type: {op_type}")
        metadata = {str(k): float(v) for k, v in (payload.get("metadata") or {}).items()}
        if op_type == "TAG":
            metadata = {k: v for k, v in metadata.items() if k in VALID_TAGS}
        content = payload.get("content")
        skill_id = payload.get("skill_id")
        return cls(
            type=op_type,
            section=str(payload.get("section") or ""),
            content=str(content) if content is not None else None,
            skill_id=str(skill_id) if skill_id is not None else None,
            metadata=metadata,
        )


@dataclass(frozen=True)
class UpdateBatch:
    reasoning: str
    operations: tuple[UpdateOperation, ...] = ()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> UpdateBatch:
        raw_ops = payload.get("operations")
        operations = tuple(
            UpdateOperation.from_dict(item) for item in (raw_ops if isinstance(raw_ops, list) else []) if isinstance(item, dict)
        )
        return cls(reasoning=str(payload.get("reasoning") or ""), operations=operations)


@dataclass(frozen=True)
class ReflectorOutput:
    analysis: str
    helpful_skill_ids: tuple[str, ...] = ()
    harmful_skill_ids: tuple[str, ...] = ()
    new_learnings: tuple[dict[str, Any], ...] = ()


class Skillbook:
    def __init__(self) -> None:
        self._skills: dict[str, Skill] = {}
        self._sections: dict[str, list[str]] = {}
        self._next_id = 0
        self._similarity_decisions: dict[str, dict[str, Any]] = {}

    def __repr__(self) -> str:
        if not self._skills:
            return "Skillbook(empty)"
        return f"Skillbook(skills={len(self._skills)}, sections={len(self._sections)})"

    # -- CRUD --------------------------------------------------------------

    def add_skill(
        self,
        section: str,
        content: str,
        skill_id: str | None = None,
        metadata: dict[str, float] | None = None,
    ) -> Skill:
        skill_id = skill_id or self._generate_id(section)
        if skill_id in self._skills:
            self._drop_from_section(skill_id)
        skill = Skill(id=skill_id, section=section, content=content)
        if metadata:
            skill.apply_metadata(metadata)
        self._skills[skill_id] = skill
        self._sections.setdefault(section, []).append(skill_id)
        return skill

    def update_skill(
        self,
        skill_id: str,
        *,
        content: str | None = None,
        metadata: dict[str, float] | None = None,
    ) -> Skill | None:
        skill = self._skills.get(skill_id)
        if skill is None:
            return None
        if content is not None:
            skill.content = content
        if metadata:
            skill.apply_metadata(metadata)
        skill.updated_at = _now_iso()
        return skill

    def tag_skill(self, skill_id: str, tag: str, increment: int = 1) -> Skill | None:
        if tag not in VALID_TAGS:
            raise ValueError(f"Unsupported tag: {tag}")
        skill = self._skills.get(skill_id)
        if skill is None:
            return None
        setattr(skill, tag, getattr(skill, tag) + increment)
        skill.updated_at = _now_iso()
        return skill

    def remove_skill(self, skill_id: str) -> None:
        if skill_id not in self._skills:
            return
        self._drop_from_section(skill_id)
        del self._skills[skill_id]

    def _drop_from_section(self, skill_id: str) -> None:
        section = self._skills[skill_id].section
        remaining = [sid for sid in self._sections.get(section, []) if sid != skill_id]
        if remaining:
            self._sections[section] = remaining
        else:
            self._sections.pop(section, None)

    def skills(self) -> list[Skill]:
        return [s for s in self._skills.values() if s.status == "active"]

    # -- updates -----------------------------------------------------------

    def apply_update(self, batch: UpdateBatch) -> None:
        for operation in batch.operations:
            self._apply_operation(operation)

    def _apply_operation(self, operation: UpdateOperation) -> None:
        op_type = operation.type.upper()
        if op_type == "ADD":
            self.add_skill(operation.section, operation.content or "", operation.skill_id, operation.metadata)
            return
        if not operation.skill_id:
            return
        if op_type == "UPDATE":
            self.update_skill(operation.skill_id, content=operation.content, metadata=operation.metadata)
        elif op_type == "TAG":
            for tag, increment in operation.metadata.items():
                if tag in VALID_TAGS:
                    self.tag_skill(operation.skill_id, tag, int(increment))
        elif op_type == "REMOVE":
            self.remove_skill(operation.skill_id)

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "skills": {sid: asdict(skill) for sid, skill in self._skills.items()},
            "sections": {section: list(ids) for section, ids in self._sections.items()},
            "next_id": self._next_id,
            "similarity_decisions": dict(self._similarity_decisions),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Skillbook:
        instance = cls()
        for skill_id, value in (payload.get("skills") or {}).items():
            if isinstance(value, dict):
                instance._skills[skill_id] = Skill.from_dict(skill_id, value)
        for section, ids in (payload.get("sections") or {}).items():
            if isinstance(ids, list):
                instance._sections[section] = [str(i) for i in ids]
        instance._next_id = int(payload.get("next_id") or 0)
        for pair_key, decision in (payload.get("similarity_decisions") or {}).items():
            if isinstance(decision, dict):
                instance._similarity_decisions[pair_key] = decision
        return instance

    # -- presentation ------------------------------------------------------

    def as_prompt(self) -> str:
        """Compact JSON of active skills, without timestamps, for LLM prompts."""
        return json.dumps({"skills": [s.to_llm_dict() for s in self.skills()]})

    def _generate_id(self, section: str) -> str:
        self._next_id += 1
        prefix = (section.split(" ")[0] or "skill").lower()
        return f"{prefix}-{self._next_id:05d}"
