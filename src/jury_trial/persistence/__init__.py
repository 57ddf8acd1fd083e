from .base import PersistenceError, Result, TrialRepository
from .memory import InMemoryTrialRepository
from .sqlite import SQLiteTrialRepository

__all__ = [
    "InMemoryTrialRepository",
    "PersistenceError",
    "Result",
    "SQLiteTrialRepository",
    "TrialRepository",
]
