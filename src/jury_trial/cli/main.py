from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer

from jury_trial._defaults import DEFAULT_MODEL, MAX_ROUNDS, STREAM_CHUNK_DELAY_S
from jury_trial.jury.runner import PersonaRunner
from jury_trial.llm.client import LiteLLMClient
from jury_trial.moderator.agent import Moderator, speaker_label
from jury_trial.persistence.base import TrialRepository
from jury_trial.persistence.memory import InMemoryTrialRepository
from jury_trial.persistence.sqlite import SQLiteTrialRepository
from jury_trial.personas.base import Persona
from jury_trial.personas.registry import PersonaRegistry
from jury_trial.streaming.streamer import ResponseStreamer
from jury_trial.trial.models import Trial, TrialInteraction
from jury_trial.trial.orchestrator import TrialConfig, TrialOrchestrator
from jury_trial.trial.store import TrialStore
from jury_trial.utils import json_serializable

app = typer.Typer(name="jury-trial", help="Multi-persona jury deliberation over a single question.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _apply_persona_model(personas: list[Persona], model: str | None) -> list[Persona]:
    if not model:
        return personas
    return [replace(p, model=model) for p in personas]


def _select_personas(source: str, model: str | None = None) -> list[Persona]:
    key = source.strip()
    if key.lower() == "startup":
        return _apply_persona_model(PersonaRegistry.startup_panel(), model)

    path = Path(key)
    if not path.is_file():
        raise typer.BadParameter(f"Unsupported personas set or missing file: {source}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"Personas file is not valid JSON: {exc}") from exc
    if not isinstance(raw, list) or not raw:
        raise typer.BadParameter("Personas file must contain a non-empty JSON array.")
    try:
        personas = PersonaRegistry.custom(raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise typer.BadParameter(f"Invalid persona entry: {exc}") from exc
    return _apply_persona_model(personas, model)


def _open_repository(db: Path | None) -> TrialRepository:
    if db is None:
        return InMemoryTrialRepository()
    return SQLiteTrialRepository(db)


def _open_existing_repository(db: Path) -> SQLiteTrialRepository:
    # Reading commands must not create an empty database for a mistyped path.
    if not db.is_file():
        raise typer.BadParameter(f"No trial database at {db}")
    return SQLiteTrialRepository(db)


def _close_repository(repository: TrialRepository) -> None:
    if isinstance(repository, SQLiteTrialRepository):
        repository.close()


def _format_interaction(interaction: TrialInteraction, trial: Trial) -> str:
    speaker = speaker_label(interaction.speaker, trial.personas)
    header = f"[round {interaction.round_number}] {speaker} ({interaction.type.name})"
    if interaction.target_persona:
        header += f" -> {speaker_label(interaction.target_persona, trial.personas)}"
    return f"{header}\n{interaction.content}\n"


async def _run_trial(orchestrator: TrialOrchestrator, question: str, personas: list[Persona]) -> Trial | None:
    seen: set[str] = set()
    last: Trial | None = None
    async for state in orchestrator.conduct_trial(question, personas):
        last = state.trial
        for interaction in state.trial.interactions:
            if interaction.id in seen:
                continue
            seen.add(interaction.id)
            typer.echo(_format_interaction(interaction, state.trial))
        if state.currently_thinking and not state.is_complete:
            names = sorted(speaker_label(s, state.trial.personas) for s in state.currently_thinking)
            typer.echo(f"... thinking: {', '.join(names)}", err=True)
    return last


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    question: str = typer.Argument(..., help="Question put to the jury"),
    personas: str = typer.Option("startup", help="Persona set name or path to a JSON persona list"),
    db: Optional[Path] = typer.Option(None, help="SQLite database file for trial history"),
    model: Optional[str] = typer.Option(None, help="Override model for all personas and the moderator"),
    max_rounds: int = typer.Option(MAX_ROUNDS, min=1, help="Deliberation round ceiling"),
    no_stream_delay: bool = typer.Option(False, help="Disable the delay between streamed chunks"),
    verbose: bool = typer.Option(False, help="Enable debug logging"),
) -> None:
    """Conduct a trial and print the transcript as it unfolds."""
    _configure_logging(verbose)
    selected = _select_personas(personas, model)
    llm_client = LiteLLMClient()
    streamer = ResponseStreamer(
        llm_client=llm_client,
        chunk_delay=0.0 if no_stream_delay else STREAM_CHUNK_DELAY_S,
    )
    config = TrialConfig(max_rounds=max_rounds)
    repository = _open_repository(db)
    orchestrator = TrialOrchestrator(
        store=TrialStore(repository),
        runner=PersonaRunner(streamer=streamer),
        moderator=Moderator(model=model or DEFAULT_MODEL, llm_client=llm_client, max_rounds=max_rounds),
        config=config,
    )

    try:
        trial = asyncio.run(_run_trial(orchestrator, question, selected))
    finally:
        _close_repository(repository)
    if trial is None:
        typer.echo(f"Trial could not be started: {orchestrator.last_error or 'unknown error'}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Trial {trial.id} finished with status {trial.status.name}")
    if trial.verdict is None:
        raise typer.Exit(code=1)


@app.command()
def history(
    db: Path = typer.Option(..., help="SQLite database file"),
) -> None:
    """List stored trials."""
    repository = _open_existing_repository(db)
    store = TrialStore(repository)
    try:
        trials = asyncio.run(store.initialize())
    finally:
        repository.close()
    if store.last_error:
        typer.echo(store.last_error, err=True)
        raise typer.Exit(code=1)
    for trial in trials:
        typer.echo(f"{trial.id}\t{trial.status.name}\t{trial.original_question}")


@app.command()
def show(
    trial_id: str = typer.Argument(..., help="Trial id"),
    db: Path = typer.Option(..., help="SQLite database file"),
    as_json: bool = typer.Option(False, "--json", help="Emit the trial as JSON"),
) -> None:
    """Print one trial's transcript."""
    repository = _open_existing_repository(db)
    store = TrialStore(repository)
    try:
        trial = asyncio.run(store.get_trial(trial_id))
    finally:
        repository.close()
    if trial is None:
        typer.echo(store.last_error or f"Trial not found: {trial_id}", err=True)
        raise typer.Exit(code=1)
    if as_json:
        typer.echo(json.dumps(trial, default=json_serializable, ensure_ascii=True))
        return
    typer.echo(f"Question: {trial.original_question}")
    typer.echo(f"Status: {trial.status.name}\n")
    for interaction in trial.interactions:
        typer.echo(_format_interaction(interaction, trial))


@app.command(name="personas")
def list_personas() -> None:
    """Print the preset startup panel."""
    for persona in PersonaRegistry.startup_panel():
        typer.echo(f"{persona.name}: {persona.description}")


def main(argv: list[str] | None = None) -> None:
    if argv is not None:
        app(standalone_mode=False, args=argv)
    else:
        app()


if __name__ == "__main__":
    main()
