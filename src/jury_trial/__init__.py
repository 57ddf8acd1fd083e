from ._version import __version__
from .jury.runner import PersonaRunner
from .moderator.agent import Moderator
from .persistence.base import PersistenceError, Result, TrialRepository
from .persistence.memory import InMemoryTrialRepository
from .persistence.sqlite import SQLiteTrialRepository
from .personas.base import AgentResult, Persona
from .personas.registry import PersonaRegistry
from .personas.roster import PersonaRoster
from .streaming.registry import StreamRegistry, StreamStatus
from .streaming.streamer import ResponseStreamer, StreamChunk
from .trial.models import (
    FollowUpQuestion,
    InteractionType,
    Trial,
    TrialInteraction,
    TrialState,
    TrialStatus,
)
from .trial.orchestrator import TrialConfig, TrialOrchestrator
from .trial.store import TrialStore

__all__ = [
    "__version__",
    "AgentResult",
    "FollowUpQuestion",
    "InMemoryTrialRepository",
    "InteractionType",
    "Moderator",
    "Persona",
    "PersonaRegistry",
    "PersonaRoster",
    "PersonaRunner",
    "PersistenceError",
    "ResponseStreamer",
    "Result",
    "SQLiteTrialRepository",
    "StreamChunk",
    "StreamRegistry",
    "StreamStatus",
    "Trial",
    "TrialConfig",
    "TrialInteraction",
    "TrialOrchestrator",
    "TrialRepository",
    "TrialState",
    "TrialStatus",
    "TrialStore",
]
