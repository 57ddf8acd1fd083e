from .base import AgentResult, Persona
from .registry import PersonaRegistry
from .roster import PersonaRoster

__all__ = ["AgentResult", "Persona", "PersonaRegistry", "PersonaRoster"]
