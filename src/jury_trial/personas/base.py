from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jury_trial._defaults import DEFAULT_MODEL
from jury_trial.utils import new_id


@dataclass(frozen=True, slots=True)
class Persona:
    name: str
    description: str
    system_instruction: str
    id: str = field(default_factory=new_id)
    model: str = DEFAULT_MODEL
    temperature: float = 0.3

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "system_instruction": self.system_instruction,
            "model": self.model,
            "temperature": self.temperature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Persona:
        kwargs: dict[str, Any] = {
            "name": str(data["name"]),
            "description": str(data.get("description", "")),
            "system_instruction": str(data.get("system_instruction", data.get("systemInstruction", ""))),
        }
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        if data.get("model"):
            kwargs["model"] = str(data["model"])
        if data.get("temperature") is not None:
            kwargs["temperature"] = float(data["temperature"])
        return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class AgentResult:
    """Live view of one persona's answer; never persisted."""

    persona_id: str
    response: str = ""
    is_loading: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.is_loading and self.error is None and bool(self.response.strip())
