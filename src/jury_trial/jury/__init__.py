from .runner import PersonaRunner

__all__ = ["PersonaRunner"]
