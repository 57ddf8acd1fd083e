from __future__ import annotations

import threading

from .base import Persona


class PersonaRoster:
    """Mutable persona list owned by the caller-facing layer.

    Trials never read the roster directly; they receive ``snapshot()``.
    """

    def __init__(self, personas: list[Persona] | None = None) -> None:
        self._lock = threading.Lock()
        self._personas: list[Persona] = list(personas or [])

    def add(self, persona: Persona) -> None:
        with self._lock:
            if any(existing.id == persona.id for existing in self._personas):
                raise ValueError(f"Persona id already present: {persona.id}")
            self._personas.append(persona)

    def update(self, persona: Persona) -> bool:
        with self._lock:
            for idx, existing in enumerate(self._personas):
                if existing.id == persona.id:
                    self._personas[idx] = persona
                    return True
        return False

    def remove(self, persona_id: str) -> bool:
        with self._lock:
            before = len(self._personas)
            self._personas = [p for p in self._personas if p.id != persona_id]
            return len(self._personas) != before

    def snapshot(self) -> tuple[Persona, ...]:
        with self._lock:
            return tuple(self._personas)

    def __len__(self) -> int:
        with self._lock:
            return len(self._personas)
