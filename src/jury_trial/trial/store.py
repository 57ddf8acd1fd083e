"""Authoritative record of trials backed by a :class:`TrialRepository`.

Every mutation writes to the repository first and only then replaces the
cached :class:`Trial`, so the cache may trail persistence but never leads it.
Terminal trials are frozen: further interactions and status changes are
ignored.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from jury_trial._defaults import SYSTEM_SPEAKER
from jury_trial.persistence.base import PersistenceError, TrialRepository
from jury_trial.personas.base import Persona
from jury_trial.trial.models import InteractionType, Trial, TrialInteraction, TrialStatus
from jury_trial.utils import now_ms

logger = logging.getLogger(__name__)


class TrialStore:
    def __init__(self, repository: TrialRepository) -> None:
        self.repository = repository
        self._trials: dict[str, Trial] = {}
        self._lock = asyncio.Lock()
        self._is_loading = False
        self._last_error: str | None = None

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def clear_error(self) -> None:
        self._last_error = None

    async def initialize(self) -> list[Trial]:
        """Warm the cache from the repository."""
        self._is_loading = True
        try:
            result = await self.repository.load_trials()
            if not result.ok:
                self._record_error("load trials", result.error)
                return []
            trials = list(result.value or [])
            async with self._lock:
                for trial in trials:
                    self._trials.setdefault(trial.id, trial)
            return trials
        finally:
            self._is_loading = False

    async def create_trial(self, question: str, personas: list[Persona] | tuple[Persona, ...]) -> Trial:
        trial = Trial(original_question=question, personas=tuple(personas))
        result = await self.repository.save_trial(trial)
        if not result.ok:
            self._record_error("create trial", result.error)
            raise PersistenceError(f"Failed to create trial: {result.error}") from result.error
        async with self._lock:
            self._trials[trial.id] = trial
        logger.info("Created trial %s with %d personas", trial.id, len(trial.personas))
        return trial

    async def add_interaction(self, trial_id: str, interaction: TrialInteraction) -> Trial | None:
        async with self._lock:
            trial = await self._current(trial_id)
            if trial is None:
                logger.warning("Cannot add interaction to unknown trial %s", trial_id)
                return None
            if trial.is_terminal:
                logger.debug("Ignoring interaction for terminal trial %s", trial_id)
                return None
            result = await self.repository.save_interaction(interaction)
            if not result.ok:
                self._record_error("save interaction", result.error)
                return None
            updated = trial.with_interaction(interaction)
            self._trials[trial_id] = updated
            return updated

    async def update_status(self, trial_id: str, status: TrialStatus) -> Trial | None:
        """Move a live trial forward. Terminal states are reached only via complete() or fail()."""
        async with self._lock:
            trial = await self._current(trial_id)
            if trial is None:
                return None
            if trial.status == status:
                return trial
            if status.is_terminal:
                logger.debug(
                    "Refusing terminal status %s for trial %s outside complete/fail", status.name, trial_id
                )
                return trial
            if not trial.status.can_transition_to(status):
                logger.debug(
                    "Ignoring status change %s -> %s for trial %s", trial.status.name, status.name, trial_id
                )
                return trial
            result = await self.repository.update_status(trial_id, status)
            if not result.ok:
                self._record_error("update status", result.error)
                return trial
            updated = trial.with_status(status)
            self._trials[trial_id] = updated
            return updated

    async def complete(self, trial_id: str, verdict: str) -> Trial | None:
        async with self._lock:
            trial = await self._current(trial_id)
            if trial is None:
                return None
            if trial.is_terminal:
                return trial
            completed_at = now_ms()
            result = await self.repository.update_verdict(trial_id, verdict, completed_at)
            if not result.ok:
                self._record_error("save verdict", result.error)
                return trial
            updated = replace(
                trial, verdict=verdict, status=TrialStatus.COMPLETED, completed_at=completed_at
            )
            self._trials[trial_id] = updated
            logger.info("Trial %s completed", trial_id)
            return updated

    async def fail(self, trial_id: str, reason: str) -> Trial | None:
        """Mark a trial FAILED, recording the reason as a system verdict interaction.

        Failing an already terminal trial is a no-op.
        """
        async with self._lock:
            trial = await self._current(trial_id)
            if trial is None:
                return None
            if trial.is_terminal:
                return trial

            note = TrialInteraction(
                trial_id=trial_id,
                type=InteractionType.VERDICT,
                speaker=SYSTEM_SPEAKER,
                content=f"Trial failed: {reason}",
                round_number=trial.last_round,
            )
            failed = replace(
                trial.with_interaction(note), status=TrialStatus.FAILED, completed_at=now_ms()
            )
            result = await self.repository.save_interaction(note)
            if result.ok:
                result = await self.repository.save_trial(failed)
            if not result.ok:
                self._record_error("record failure", result.error)
                return trial
            self._trials[trial_id] = failed
            logger.warning("Trial %s failed: %s", trial_id, reason)
            return failed

    async def get_trial(self, trial_id: str) -> Trial | None:
        async with self._lock:
            return await self._current(trial_id)

    async def get_all(self) -> list[Trial]:
        async with self._lock:
            if self._trials:
                return sorted(self._trials.values(), key=lambda t: (t.created_at, t.id))
        result = await self.repository.load_trials()
        if not result.ok:
            self._record_error("load trials", result.error)
            return []
        return list(result.value or [])

    async def _current(self, trial_id: str) -> Trial | None:
        cached = self._trials.get(trial_id)
        if cached is not None:
            return cached
        result = await self.repository.get_trial(trial_id)
        if not result.ok:
            self._record_error("load trial", result.error)
            return None
        if result.value is not None:
            self._trials[trial_id] = result.value
        return result.value

    def _record_error(self, action: str, error: Exception | None) -> None:
        self._last_error = f"Failed to {action}: {error}"
        logger.warning(self._last_error)
