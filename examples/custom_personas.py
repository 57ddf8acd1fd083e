"""Custom personas, SQLite history and an early stop.

Requires OPENAI_API_KEY in your environment.
"""
from __future__ import annotations

import asyncio

from jury_trial import (
    Moderator,
    Persona,
    PersonaRoster,
    SQLiteTrialRepository,
    TrialConfig,
    TrialOrchestrator,
    TrialStatus,
    TrialStore,
)


async def main() -> None:
    roster = PersonaRoster(
        [
            Persona(
                name="The Lawyer",
                description="Reads every clause twice.",
                system_instruction="You are a cautious commercial lawyer. Point out liability first.",
            ),
            Persona(
                name="The Operator",
                description="Has run support teams for a decade.",
                system_instruction="You are an operations lead. Ask who handles the edge cases at 3am.",
            ),
        ]
    )

    repository = SQLiteTrialRepository("trials.db")
    orchestrator = TrialOrchestrator(
        store=TrialStore(repository),
        moderator=Moderator(max_rounds=3),
        config=TrialConfig(max_rounds=3, follow_up_timeout_s=45),
    )

    async for state in orchestrator.conduct_trial(
        "Should we let customers cancel contracts from inside the app?",
        roster.snapshot(),
    ):
        trial = state.trial
        thinking = ", ".join(sorted(trial.persona_name(s) for s in state.currently_thinking))
        print(f"{trial.status.name:<28} interactions={len(trial.interactions):<3} thinking: {thinking}")
        # Stop once deliberation has produced a couple of follow-up rounds.
        if trial.last_round >= 3 and trial.status == TrialStatus.DELIBERATING:
            await orchestrator.stop_trial(trial.id)

    for trial in await orchestrator.get_all_trials():
        print(f"{trial.id}  {trial.status.name:<10} {trial.original_question}")
    repository.close()


if __name__ == "__main__":
    asyncio.run(main())
