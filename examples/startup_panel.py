"""Put a product question to the startup panel and print the transcript live.

Requires OPENAI_API_KEY in your environment.
"""
from __future__ import annotations

import asyncio

from jury_trial import PersonaRegistry, TrialOrchestrator


async def main() -> None:
    orchestrator = TrialOrchestrator()
    printed = 0

    async for state in orchestrator.conduct_trial(
        "Should we add a subscription tier to our budgeting app?",
        PersonaRegistry.startup_panel(),
    ):
        trial = state.trial
        for interaction in trial.interactions[printed:]:
            speaker = trial.persona_name(interaction.speaker)
            print(f"[{interaction.round_number}] {speaker} ({interaction.type.name}):")
            print(f"    {interaction.content[:300]}\n")
        printed = len(trial.interactions)

    print(f"Status:  {trial.status.name}")
    print(f"Verdict: {(trial.verdict or '')[:500]}")


if __name__ == "__main__":
    asyncio.run(main())
