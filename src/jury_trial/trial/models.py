from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from jury_trial.personas.base import Persona
from jury_trial.utils import new_id, now_ms


class TrialStatus(str, Enum):
    INITIALIZING = "INITIALIZING"
    GATHERING_INITIAL_RESPONSES = "GATHERING_INITIAL_RESPONSES"
    DELIBERATING = "DELIBERATING"
    GENERATING_VERDICT = "GENERATING_VERDICT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TrialStatus.COMPLETED, TrialStatus.FAILED)

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_transition_to(self, target: TrialStatus) -> bool:
        if self.is_terminal:
            return False
        if target == TrialStatus.FAILED:
            return True
        return target.rank >= self.rank


_STATUS_ORDER = list(TrialStatus)


class InteractionType(str, Enum):
    INITIAL_QUESTION = "INITIAL_QUESTION"
    INITIAL_RESPONSE = "INITIAL_RESPONSE"
    FOLLOW_UP_QUESTION = "FOLLOW_UP_QUESTION"
    FOLLOW_UP_RESPONSE = "FOLLOW_UP_RESPONSE"
    VERDICT = "VERDICT"


@dataclass(frozen=True, slots=True)
class TrialInteraction:
    trial_id: str
    type: InteractionType
    speaker: str
    content: str
    round_number: int = 1
    target_persona: str | None = None
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        if self.round_number < 1:
            raise ValueError(f"round_number must be >= 1, got {self.round_number}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trial_id": self.trial_id,
            "type": self.type.name,
            "speaker": self.speaker,
            "content": self.content,
            "target_persona": self.target_persona,
            "timestamp": self.timestamp,
            "round_number": self.round_number,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrialInteraction:
        return cls(
            id=str(data["id"]),
            trial_id=str(data["trial_id"]),
            type=InteractionType[str(data["type"])],
            speaker=str(data["speaker"]),
            content=str(data["content"]),
            target_persona=data.get("target_persona"),
            timestamp=int(data["timestamp"]),
            round_number=int(data["round_number"]),
        )


@dataclass(frozen=True, slots=True)
class Trial:
    """One deliberation session.

    Instances are immutable; the store replaces them wholesale on every change.
    ``personas`` is the snapshot taken at creation and ``interactions`` only grows.
    """

    original_question: str
    personas: tuple[Persona, ...]
    interactions: tuple[TrialInteraction, ...] = ()
    status: TrialStatus = TrialStatus.INITIALIZING
    verdict: str | None = None
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)
    completed_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def last_round(self) -> int:
        return max((i.round_number for i in self.interactions), default=1)

    def persona_name(self, persona_id: str) -> str:
        for persona in self.personas:
            if persona.id == persona_id:
                return persona.name
        return persona_id

    def with_interaction(self, interaction: TrialInteraction) -> Trial:
        return replace(self, interactions=self.interactions + (interaction,))

    def with_status(self, status: TrialStatus) -> Trial:
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_question": self.original_question,
            "personas": [persona.to_dict() for persona in self.personas],
            "interactions": [interaction.to_dict() for interaction in self.interactions],
            "status": self.status.name,
            "verdict": self.verdict,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Trial:
        completed_at = data.get("completed_at")
        return cls(
            id=str(data["id"]),
            original_question=str(data["original_question"]),
            personas=tuple(Persona.from_dict(p) for p in data.get("personas", [])),
            interactions=tuple(TrialInteraction.from_dict(i) for i in data.get("interactions", [])),
            status=TrialStatus[str(data["status"])],
            verdict=data.get("verdict"),
            created_at=int(data["created_at"]),
            completed_at=int(completed_at) if completed_at is not None else None,
        )


@dataclass(frozen=True, slots=True)
class FollowUpQuestion:
    question: str
    target_persona_id: str
    reasoning: str
    id: str = field(default_factory=new_id)


@dataclass(frozen=True, slots=True)
class TrialState:
    """Snapshot emitted to callers at every meaningful change of a trial."""

    trial: Trial
    currently_thinking: frozenset[str] = frozenset()
    is_complete: bool = False
