from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass

from jury_trial._defaults import (
    FOLLOW_UP_TIMEOUT_S,
    INITIAL_GATHER_TIMEOUT_S,
    MAX_ROUNDS,
    MODERATOR_SPEAKER,
)
from jury_trial.jury.runner import PersonaRunner
from jury_trial.moderator.agent import Moderator
from jury_trial.persistence.base import PersistenceError
from jury_trial.persistence.memory import InMemoryTrialRepository
from jury_trial.personas.base import AgentResult, Persona
from jury_trial.trial.models import (
    FollowUpQuestion,
    InteractionType,
    Trial,
    TrialInteraction,
    TrialState,
    TrialStatus,
)
from jury_trial.trial.store import TrialStore

logger = logging.getLogger(__name__)

NO_INITIAL_RESPONSES_REASON = "Failed to gather initial responses from personas"
STOPPED_BY_USER_REASON = "Trial stopped by user"

_PROTOCOL_DONE = object()

Emit = Callable[[TrialState], None]


@dataclass(slots=True)
class TrialConfig:
    max_rounds: int = MAX_ROUNDS
    initial_timeout_s: float = INITIAL_GATHER_TIMEOUT_S
    follow_up_timeout_s: float = FOLLOW_UP_TIMEOUT_S


class _TrialStopped(Exception):
    def __init__(self, trial: Trial) -> None:
        super().__init__(trial.id)
        self.trial = trial


class TrialOrchestrator:
    """Runs the deliberation protocol and reports progress as :class:`TrialState` snapshots."""

    def __init__(
        self,
        store: TrialStore | None = None,
        runner: PersonaRunner | None = None,
        moderator: Moderator | None = None,
        config: TrialConfig | None = None,
    ) -> None:
        self.config = config or TrialConfig()
        self.store = store or TrialStore(InMemoryTrialRepository())
        self.runner = runner or PersonaRunner()
        self.moderator = moderator or Moderator(max_rounds=self.config.max_rounds)
        self._active: dict[str, tuple[Persona, ...]] = {}

    # ------------------------------------------------------------------
    # Caller-facing surface
    # ------------------------------------------------------------------

    @property
    def is_loading(self) -> bool:
        return self.store.is_loading

    @property
    def last_error(self) -> str | None:
        return self.store.last_error

    def clear_error(self) -> None:
        self.store.clear_error()

    async def initialize(self) -> list[Trial]:
        return await self.store.initialize()

    async def get_all_trials(self) -> list[Trial]:
        return await self.store.get_all()

    async def get_trial(self, trial_id: str) -> Trial | None:
        return await self.store.get_trial(trial_id)

    async def conduct_trial(
        self,
        question: str,
        personas: Sequence[Persona],
    ) -> AsyncIterator[TrialState]:
        """Run a full trial, yielding a snapshot at every meaningful change.

        The last snapshot has ``is_complete`` set unless the trial could not
        be created at all. Closing the iterator early cancels the protocol.
        """
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self._run_protocol(question, tuple(personas), queue.put_nowait))
        task.add_done_callback(lambda _t: queue.put_nowait(_PROTOCOL_DONE))
        try:
            while True:
                item = await queue.get()
                if item is _PROTOCOL_DONE:
                    break
                yield item
        finally:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def stop_trial(self, trial_id: str) -> Trial | None:
        """Mark a trial FAILED and cancel its in-flight streams.

        A trial that is already terminal is returned unchanged.
        """
        trial = await self.store.fail(trial_id, STOPPED_BY_USER_REASON)
        personas = self._active.get(trial_id)
        if personas:
            cancelled = self.runner.cancel_all(personas)
            logger.info("Stopped trial %s; cancelled %d streams", trial_id, cancelled)
        return trial

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    async def _run_protocol(self, question: str, personas: tuple[Persona, ...], emit: Emit) -> None:
        trial_id: str | None = None
        try:
            trial = await self.store.create_trial(question, personas)
            trial_id = trial.id
            self._active[trial_id] = personas
            emit(TrialState(trial))

            trial = await self._append(
                trial,
                InteractionType.INITIAL_QUESTION,
                MODERATOR_SPEAKER,
                question,
                round_number=1,
            )
            emit(TrialState(trial))

            trial = await self._set_status(trial, TrialStatus.GATHERING_INITIAL_RESPONSES)
            emit(TrialState(trial, frozenset(p.id for p in personas)))

            trial, initial = await self._gather_initial(trial, question, personas, emit)
            if not initial:
                failed = await self.store.fail(trial_id, NO_INITIAL_RESPONSES_REASON)
                emit(TrialState(failed or trial, is_complete=True))
                return

            trial = await self._set_status(trial, TrialStatus.DELIBERATING)
            emit(TrialState(trial))

            trial = await self._deliberate(trial, question, personas, initial, emit)

            trial = await self._set_status(trial, TrialStatus.GENERATING_VERDICT)
            emit(TrialState(trial, frozenset({MODERATOR_SPEAKER})))

            verdict = await self.moderator.synthesize_verdict(question, trial.interactions, personas)
            trial = await self._append(
                trial,
                InteractionType.VERDICT,
                MODERATOR_SPEAKER,
                verdict,
                round_number=trial.last_round,
            )
            completed = await self.store.complete(trial_id, verdict)
            if completed is None or completed.status != TrialStatus.COMPLETED:
                self._raise_if_stopped(completed)
                raise PersistenceError(f"Failed to record verdict for trial {trial_id}")
            emit(TrialState(completed, is_complete=True))

        except _TrialStopped as stopped:
            logger.info("Trial %s ended early with status %s", stopped.trial.id, stopped.trial.status.name)
            self.runner.cancel_all(personas)
            emit(TrialState(stopped.trial, is_complete=True))
        except asyncio.CancelledError:
            self.runner.cancel_all(personas)
            raise
        except Exception as exc:
            logger.exception("Trial protocol failed")
            if trial_id is None:
                return
            failed = await self.store.fail(trial_id, str(exc) or type(exc).__name__)
            if failed is not None:
                emit(TrialState(failed, is_complete=True))
        finally:
            if trial_id is not None:
                self._active.pop(trial_id, None)

    async def _gather_initial(
        self,
        trial: Trial,
        question: str,
        personas: tuple[Persona, ...],
        emit: Emit,
    ) -> tuple[Trial, list[AgentResult]]:
        responded: dict[str, AgentResult] = {}
        thinking = {persona.id for persona in personas}

        async def _harvest() -> None:
            nonlocal trial
            async with aclosing(self.runner.run_many(question, personas)) as snapshots:
                async for snapshot in snapshots:
                    for result in snapshot:
                        if result.is_loading or result.persona_id not in thinking:
                            continue
                        thinking.discard(result.persona_id)
                        if result.succeeded:
                            responded[result.persona_id] = result
                            trial = await self._append(
                                trial,
                                InteractionType.INITIAL_RESPONSE,
                                result.persona_id,
                                result.response,
                                round_number=1,
                            )
                        else:
                            logger.warning(
                                "Persona %s gave no usable initial response: %s",
                                trial.persona_name(result.persona_id),
                                result.error or "empty response",
                            )
                        emit(TrialState(trial, frozenset(thinking)))

        try:
            await asyncio.wait_for(_harvest(), timeout=self.config.initial_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Initial gather for trial %s timed out with %d of %d responses",
                trial.id,
                len(responded),
                len(personas),
            )
        await self._check_stopped(trial.id)
        ordered = [responded[p.id] for p in personas if p.id in responded]
        return trial, ordered

    async def _deliberate(
        self,
        trial: Trial,
        question: str,
        personas: tuple[Persona, ...],
        initial: list[AgentResult],
        emit: Emit,
    ) -> Trial:
        by_id = {persona.id: persona for persona in personas}
        round_number = 2
        while round_number <= self.config.max_rounds:
            emit(TrialState(trial, frozenset({MODERATOR_SPEAKER})))

            proceed = await self.moderator.should_continue(trial.interactions, round_number - 1, personas)
            trial = await self._check_stopped(trial.id) or trial
            if not proceed:
                break

            follow_ups = await self.moderator.generate_follow_ups(question, initial, personas)
            trial = await self._check_stopped(trial.id) or trial
            if not follow_ups:
                break

            targets = frozenset(f.target_persona_id for f in follow_ups if f.target_persona_id in by_id)
            for follow_up in follow_ups:
                trial = await self._append(
                    trial,
                    InteractionType.FOLLOW_UP_QUESTION,
                    MODERATOR_SPEAKER,
                    follow_up.question,
                    round_number=round_number,
                    target_persona=follow_up.target_persona_id,
                )
                emit(TrialState(trial, targets))

            answerable = [f for f in follow_ups if f.target_persona_id in by_id]
            unresolved = len(follow_ups) - len(answerable)
            if unresolved:
                logger.warning("%d follow-up questions target unknown personas", unresolved)
            trial = await self._answer_follow_ups(trial, answerable, by_id, round_number, emit)

            trial = await self.store.get_trial(trial.id) or trial
            emit(TrialState(trial))
            round_number += 1
        return trial

    async def _answer_follow_ups(
        self,
        trial: Trial,
        follow_ups: list[FollowUpQuestion],
        by_id: dict[str, Persona],
        round_number: int,
        emit: Emit,
    ) -> Trial:
        if not follow_ups:
            return trial

        pending = [f.target_persona_id for f in follow_ups]

        async def _answer(follow_up: FollowUpQuestion) -> tuple[FollowUpQuestion, AgentResult | None]:
            final: AgentResult | None = None
            persona = by_id[follow_up.target_persona_id]
            async with aclosing(self.runner.run_one(follow_up.question, persona)) as results:
                async for result in results:
                    final = result
            return follow_up, final

        tasks = [asyncio.create_task(_answer(follow_up)) for follow_up in follow_ups]

        async def _harvest() -> None:
            nonlocal trial
            for next_done in asyncio.as_completed(tasks):
                follow_up, result = await next_done
                pending.remove(follow_up.target_persona_id)
                if result is not None and result.succeeded:
                    trial = await self._append(
                        trial,
                        InteractionType.FOLLOW_UP_RESPONSE,
                        result.persona_id,
                        result.response,
                        round_number=round_number,
                    )
                else:
                    logger.warning(
                        "Persona %s gave no usable follow-up response: %s",
                        trial.persona_name(follow_up.target_persona_id),
                        result.error if result is not None else "no result",
                    )
                emit(TrialState(trial, frozenset(pending)))

        timeout = self.config.follow_up_timeout_s * len(follow_ups)
        try:
            await asyncio.wait_for(_harvest(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Follow-ups for trial %s round %d timed out; %d still pending",
                trial.id,
                round_number,
                len(pending),
            )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._check_stopped(trial.id)
        return trial

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    async def _append(
        self,
        trial: Trial,
        interaction_type: InteractionType,
        speaker: str,
        content: str,
        round_number: int,
        target_persona: str | None = None,
    ) -> Trial:
        interaction = TrialInteraction(
            trial_id=trial.id,
            type=interaction_type,
            speaker=speaker,
            content=content,
            round_number=round_number,
            target_persona=target_persona,
        )
        updated = await self.store.add_interaction(trial.id, interaction)
        if updated is not None:
            return updated
        # Not recorded: either the trial went terminal or the write failed.
        current = await self._check_stopped(trial.id)
        logger.warning("Interaction %s for trial %s was not recorded", interaction_type.name, trial.id)
        return current or trial

    async def _set_status(self, trial: Trial, status: TrialStatus) -> Trial:
        updated = await self.store.update_status(trial.id, status)
        self._raise_if_stopped(updated)
        return updated or trial

    async def _check_stopped(self, trial_id: str) -> Trial | None:
        current = await self.store.get_trial(trial_id)
        self._raise_if_stopped(current)
        return current

    @staticmethod
    def _raise_if_stopped(trial: Trial | None) -> None:
        if trial is not None and trial.is_terminal:
            raise _TrialStopped(trial)
