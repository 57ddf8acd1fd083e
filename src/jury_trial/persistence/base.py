from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

from jury_trial.trial.models import Trial, TrialInteraction, TrialStatus

T = TypeVar("T")


class PersistenceError(Exception):
    """Raised when a write the caller depends on was not committed."""


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Success/failure envelope returned by every repository operation."""

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: Exception) -> Result[T]:
        return cls(error=error)

    def unwrap(self) -> T | None:
        if self.error is not None:
            raise PersistenceError(str(self.error)) from self.error
        return self.value


class TrialRepository(Protocol):
    """Persistence port consumed by :class:`~jury_trial.trial.store.TrialStore`.

    Implementations must never raise; failures come back as ``Result.failure``.
    """

    async def save_trial(self, trial: Trial) -> Result[None]: ...

    async def load_trials(self) -> Result[list[Trial]]: ...

    async def get_trial(self, trial_id: str) -> Result[Trial]: ...

    async def save_interaction(self, interaction: TrialInteraction) -> Result[None]: ...

    async def load_interactions(self, trial_id: str) -> Result[list[TrialInteraction]]: ...

    async def update_status(self, trial_id: str, status: TrialStatus) -> Result[None]: ...

    async def update_verdict(self, trial_id: str, verdict: str, completed_at: int) -> Result[None]: ...
