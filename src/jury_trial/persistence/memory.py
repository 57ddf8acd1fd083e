from __future__ import annotations

from dataclasses import replace

from jury_trial.trial.models import Trial, TrialInteraction, TrialStatus

from .base import Result


class InMemoryTrialRepository:
    """Process-local repository; ``fail_operations`` names methods that should fail."""

    def __init__(self, fail_operations: set[str] | None = None) -> None:
        self._trials: dict[str, Trial] = {}
        self._interactions: dict[str, list[TrialInteraction]] = {}
        self.fail_operations: set[str] = set(fail_operations or ())

    def _failing(self, operation: str) -> Result | None:
        if operation in self.fail_operations:
            return Result.failure(OSError(f"{operation} failed"))
        return None

    async def save_trial(self, trial: Trial) -> Result[None]:
        failed = self._failing("save_trial")
        if failed is not None:
            return failed
        self._trials[trial.id] = replace(trial, interactions=())
        stored = self._interactions.setdefault(trial.id, [])
        known = {interaction.id for interaction in stored}
        stored.extend(i for i in trial.interactions if i.id not in known)
        return Result.success()

    async def load_trials(self) -> Result[list[Trial]]:
        failed = self._failing("load_trials")
        if failed is not None:
            return failed
        return Result.success([self._assemble(trial_id) for trial_id in self._trials])

    async def get_trial(self, trial_id: str) -> Result[Trial]:
        failed = self._failing("get_trial")
        if failed is not None:
            return failed
        if trial_id not in self._trials:
            return Result.success(None)
        return Result.success(self._assemble(trial_id))

    async def save_interaction(self, interaction: TrialInteraction) -> Result[None]:
        failed = self._failing("save_interaction")
        if failed is not None:
            return failed
        stored = self._interactions.setdefault(interaction.trial_id, [])
        for idx, existing in enumerate(stored):
            if existing.id == interaction.id:
                stored[idx] = interaction
                break
        else:
            stored.append(interaction)
        return Result.success()

    async def load_interactions(self, trial_id: str) -> Result[list[TrialInteraction]]:
        failed = self._failing("load_interactions")
        if failed is not None:
            return failed
        return Result.success(list(self._interactions.get(trial_id, [])))

    async def update_status(self, trial_id: str, status: TrialStatus) -> Result[None]:
        failed = self._failing("update_status")
        if failed is not None:
            return failed
        trial = self._trials.get(trial_id)
        if trial is None:
            return Result.failure(KeyError(trial_id))
        self._trials[trial_id] = replace(trial, status=status)
        return Result.success()

    async def update_verdict(self, trial_id: str, verdict: str, completed_at: int) -> Result[None]:
        failed = self._failing("update_verdict")
        if failed is not None:
            return failed
        trial = self._trials.get(trial_id)
        if trial is None:
            return Result.failure(KeyError(trial_id))
        self._trials[trial_id] = replace(
            trial, status=TrialStatus.COMPLETED, verdict=verdict, completed_at=completed_at
        )
        return Result.success()

    def _assemble(self, trial_id: str) -> Trial:
        return replace(self._trials[trial_id], interactions=tuple(self._interactions.get(trial_id, [])))
