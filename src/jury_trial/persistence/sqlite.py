"""SQLite implementation of the trial persistence port.

One connection per repository, shared across worker threads and guarded by
a lock; every call runs on a worker thread through :func:`asyncio.to_thread`.
Interactions keep their insertion order through an autoincrement ``seq``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable

from jury_trial.personas.base import Persona
from jury_trial.trial.models import InteractionType, Trial, TrialInteraction, TrialStatus

from .base import Result

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS trials (
    id TEXT PRIMARY KEY,
    original_question TEXT NOT NULL,
    personas TEXT NOT NULL,
    status TEXT NOT NULL,
    verdict TEXT,
    created_at INTEGER NOT NULL,
    completed_at INTEGER
);
CREATE TABLE IF NOT EXISTS trial_interactions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    trial_id TEXT NOT NULL,
    type TEXT NOT NULL,
    speaker TEXT NOT NULL,
    content TEXT NOT NULL,
    target_persona TEXT,
    timestamp INTEGER NOT NULL,
    round_number INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_trial_interactions_trial ON trial_interactions (trial_id, seq);
"""

_UPSERT_TRIAL = """
INSERT OR REPLACE INTO trials (id, original_question, personas, status, verdict, created_at, completed_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
"""

_UPSERT_INTERACTION = """
INSERT INTO trial_interactions (id, trial_id, type, speaker, content, target_persona, timestamp, round_number)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    type = excluded.type,
    speaker = excluded.speaker,
    content = excluded.content,
    target_persona = excluded.target_persona,
    timestamp = excluded.timestamp,
    round_number = excluded.round_number
"""


def serialize_personas(personas: tuple[Persona, ...] | list[Persona]) -> str:
    return json.dumps([persona.to_dict() for persona in personas], ensure_ascii=True)


def deserialize_personas(raw: str) -> tuple[Persona, ...]:
    return tuple(Persona.from_dict(item) for item in json.loads(raw))


class SQLiteTrialRepository:
    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    async def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Result:
        def _locked() -> Any:
            with self._lock:
                try:
                    value = fn(self._conn)
                    self._conn.commit()
                    return value
                except Exception:
                    self._conn.rollback()
                    raise

        try:
            return Result.success(await asyncio.to_thread(_locked))
        except Exception as exc:
            logger.warning("SQLite operation on %s failed: %s", self.path, exc)
            return Result.failure(exc)

    async def save_trial(self, trial: Trial) -> Result[None]:
        def _save(conn: sqlite3.Connection) -> None:
            conn.execute(_UPSERT_TRIAL, _trial_row(trial))
            for interaction in trial.interactions:
                conn.execute(_UPSERT_INTERACTION, _interaction_row(interaction))

        return await self._run(_save)

    async def load_trials(self) -> Result[list[Trial]]:
        def _load(conn: sqlite3.Connection) -> list[Trial]:
            rows = conn.execute("SELECT * FROM trials ORDER BY created_at, id").fetchall()
            return [_trial_from_row(row, _select_interactions(conn, row["id"])) for row in rows]

        return await self._run(_load)

    async def get_trial(self, trial_id: str) -> Result[Trial]:
        def _get(conn: sqlite3.Connection) -> Trial | None:
            row = conn.execute("SELECT * FROM trials WHERE id = ?", (trial_id,)).fetchone()
            if row is None:
                return None
            return _trial_from_row(row, _select_interactions(conn, trial_id))

        return await self._run(_get)

    async def save_interaction(self, interaction: TrialInteraction) -> Result[None]:
        def _save(conn: sqlite3.Connection) -> None:
            conn.execute(_UPSERT_INTERACTION, _interaction_row(interaction))

        return await self._run(_save)

    async def load_interactions(self, trial_id: str) -> Result[list[TrialInteraction]]:
        return await self._run(lambda conn: _select_interactions(conn, trial_id))

    async def update_status(self, trial_id: str, status: TrialStatus) -> Result[None]:
        def _update(conn: sqlite3.Connection) -> None:
            cursor = conn.execute("UPDATE trials SET status = ? WHERE id = ?", (status.name, trial_id))
            if cursor.rowcount == 0:
                raise KeyError(trial_id)

        return await self._run(_update)

    async def update_verdict(self, trial_id: str, verdict: str, completed_at: int) -> Result[None]:
        def _update(conn: sqlite3.Connection) -> None:
            cursor = conn.execute(
                "UPDATE trials SET verdict = ?, status = ?, completed_at = ? WHERE id = ?",
                (verdict, TrialStatus.COMPLETED.name, completed_at, trial_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(trial_id)

        return await self._run(_update)

    async def clear_interactions(self, trial_id: str) -> Result[None]:
        def _clear(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM trial_interactions WHERE trial_id = ?", (trial_id,))

        return await self._run(_clear)


def _trial_row(trial: Trial) -> tuple:
    return (
        trial.id,
        trial.original_question,
        serialize_personas(trial.personas),
        trial.status.name,
        trial.verdict,
        trial.created_at,
        trial.completed_at,
    )


def _interaction_row(interaction: TrialInteraction) -> tuple:
    return (
        interaction.id,
        interaction.trial_id,
        interaction.type.name,
        interaction.speaker,
        interaction.content,
        interaction.target_persona,
        interaction.timestamp,
        interaction.round_number,
    )


def _select_interactions(conn: sqlite3.Connection, trial_id: str) -> list[TrialInteraction]:
    rows = conn.execute(
        "SELECT * FROM trial_interactions WHERE trial_id = ? ORDER BY seq", (trial_id,)
    ).fetchall()
    return [
        TrialInteraction(
            id=row["id"],
            trial_id=row["trial_id"],
            type=InteractionType[row["type"]],
            speaker=row["speaker"],
            content=row["content"],
            target_persona=row["target_persona"],
            timestamp=int(row["timestamp"]),
            round_number=int(row["round_number"]),
        )
        for row in rows
    ]


def _trial_from_row(row: sqlite3.Row, interactions: list[TrialInteraction]) -> Trial:
    return Trial(
        id=row["id"],
        original_question=row["original_question"],
        personas=deserialize_personas(row["personas"]),
        interactions=tuple(interactions),
        status=TrialStatus[row["status"]],
        verdict=row["verdict"],
        created_at=int(row["created_at"]),
        completed_at=int(row["completed_at"]) if row["completed_at"] is not None else None,
    )
