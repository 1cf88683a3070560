"""
Evaluation Archive – SQLite Persistence
=======================================
Optional external store for the feedback engine.  Every evaluated
statement (scores, feedback summary, weight adjustments) is written to a
local SQLite database so a later process can browse past discussions or
replay them into a fresh :class:`HistoryStore`.

All operations are async via ``aiosqlite``.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from rtfe.history import HistoryStore
from rtfe.schemas import (
    DiscussionPhase,
    EvaluationContext,
    EvaluationRecord,
    FeedbackResult,
    QualityScores,
)

logger = logging.getLogger(__name__)

_DEFAULT_DB = Path(os.getenv("RTFE_ARCHIVE_DB", "rtfe_archive.db"))

_SCHEMA = """
CREATE TABLE IF NOT EXISTS evaluations (
    id             TEXT PRIMARY KEY,
    participant_id TEXT NOT NULL,
    topic          TEXT NOT NULL,
    phase          TEXT NOT NULL,
    turn_number    INTEGER NOT NULL,
    utterance      TEXT NOT NULL,
    overall_score  REAL NOT NULL,
    scores         TEXT NOT NULL,          -- JSON object
    feedback       TEXT NOT NULL,          -- JSON object
    is_fallback    INTEGER NOT NULL,       -- 0/1
    created_at     TEXT NOT NULL,          -- ISO-8601
    recorded_at    REAL NOT NULL           -- unix timestamp of the evaluation
);

CREATE TABLE IF NOT EXISTS weight_adjustments (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    evaluation_id   TEXT NOT NULL REFERENCES evaluations(id) ON DELETE CASCADE,
    participant_id  TEXT NOT NULL,
    current_weight  REAL NOT NULL,
    adjusted_weight REAL NOT NULL,
    reason          TEXT NOT NULL,
    confidence      REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_eval_participant ON evaluations(participant_id);
CREATE INDEX IF NOT EXISTS idx_adjust_eval ON weight_adjustments(evaluation_id);
"""


class EvaluationArchive:
    """Async SQLite store for evaluated statements.

    Parameters
    ----------
    db_path : str or Path
        Path to the SQLite file.  Created automatically on first use.
        Defaults to ``rtfe_archive.db`` in the working directory
        (overridable via ``RTFE_ARCHIVE_DB`` env var).
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = str(db_path or _DEFAULT_DB)
        self._initialised = False

    async def _ensure_schema(self) -> None:
        if self._initialised:
            return
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
        self._initialised = True
        logger.info("Evaluation archive ready: %s", self._db_path)

    # ------------------------------------------------------------------ #
    #  Write
    # ------------------------------------------------------------------ #

    async def save_evaluation(self, ctx: EvaluationContext, result: FeedbackResult) -> str:
        """Persist one evaluated statement.  Returns the generated ID."""
        await self._ensure_schema()
        evaluation_id = uuid.uuid4().hex[:12]
        now = datetime.now(timezone.utc).isoformat()
        feedback = {
            "feedback": result.feedback.feedback,
            "improvements": result.feedback.improvements,
            "next_guidance": result.next_guidance,
            "recommendations": result.recommendations,
        }

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO evaluations (id, participant_id, topic, phase, turn_number, "
                "utterance, overall_score, scores, feedback, is_fallback, created_at, recorded_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    evaluation_id,
                    ctx.participant_id,
                    ctx.topic,
                    ctx.phase.value,
                    ctx.turn_number,
                    ctx.utterance,
                    result.scores.overall_score,
                    json.dumps(result.scores.to_dict()),
                    json.dumps(feedback, default=str),
                    1 if result.is_fallback else 0,
                    now,
                    result.timestamp,
                ),
            )

            for pid, adj in result.optimization.weight_adjustments.items():
                await db.execute(
                    "INSERT INTO weight_adjustments "
                    "(evaluation_id, participant_id, current_weight, adjusted_weight, reason, confidence) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        evaluation_id,
                        pid,
                        adj.current_weight,
                        adj.adjusted_weight,
                        adj.reason,
                        adj.confidence,
                    ),
                )

            await db.commit()

        logger.debug("Archived evaluation %s for %s", evaluation_id, ctx.participant_id)
        return evaluation_id

    # ------------------------------------------------------------------ #
    #  Read
    # ------------------------------------------------------------------ #

    async def list_evaluations(
        self,
        participant_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Return a paginated list of evaluations (newest first)."""
        await self._ensure_schema()
        query = (
            "SELECT id, participant_id, topic, phase, turn_number, overall_score, "
            "is_fallback, created_at FROM evaluations"
        )
        params: tuple[Any, ...] = ()
        if participant_id is not None:
            query += " WHERE participant_id = ?"
            params = (participant_id,)
        query += " ORDER BY recorded_at DESC, rowid DESC LIMIT ? OFFSET ?"

        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, (*params, limit, offset))
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    async def get_evaluation(self, evaluation_id: str) -> dict[str, Any] | None:
        """Return full details of one evaluation, including weight adjustments."""
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row

            cursor = await db.execute("SELECT * FROM evaluations WHERE id = ?", (evaluation_id,))
            row = await cursor.fetchone()
            if not row:
                return None
            result = dict(row)
            result["scores"] = json.loads(result["scores"])
            result["feedback"] = json.loads(result["feedback"])
            result["is_fallback"] = bool(result["is_fallback"])

            cursor = await db.execute(
                "SELECT participant_id, current_weight, adjusted_weight, reason, confidence "
                "FROM weight_adjustments WHERE evaluation_id = ? ORDER BY id",
                (evaluation_id,),
            )
            result["weight_adjustments"] = [dict(r) for r in await cursor.fetchall()]

        return result

    async def count_evaluations(self) -> int:
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM evaluations")
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def restore_into(self, history: HistoryStore, limit_per_participant: int = 50) -> int:
        """Replay archived evaluations into *history*, oldest first.

        Fallback evaluations are skipped.  The last archived adjusted weight
        of each participant is restored too.  Returns the number of records
        replayed.
        """
        await self._ensure_schema()
        replayed = 0
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT DISTINCT participant_id FROM evaluations WHERE is_fallback = 0"
            )
            participants = [r["participant_id"] for r in await cursor.fetchall()]

            for pid in participants:
                cursor = await db.execute(
                    "SELECT * FROM (SELECT rowid AS seq, utterance, topic, phase, turn_number, "
                    "scores, recorded_at FROM evaluations WHERE participant_id = ? AND is_fallback = 0 "
                    "ORDER BY recorded_at DESC, rowid DESC LIMIT ?) ORDER BY recorded_at ASC, seq ASC",
                    (pid, limit_per_participant),
                )
                for row in await cursor.fetchall():
                    history.record(
                        pid,
                        EvaluationRecord(
                            utterance=row["utterance"],
                            scores=QualityScores.from_dict(json.loads(row["scores"])),
                            turn_number=row["turn_number"],
                            topic=row["topic"],
                            phase=DiscussionPhase(row["phase"]),
                            timestamp=row["recorded_at"],
                        ),
                    )
                    replayed += 1

                cursor = await db.execute(
                    "SELECT adjusted_weight FROM weight_adjustments "
                    "WHERE participant_id = ? ORDER BY id DESC LIMIT 1",
                    (pid,),
                )
                weight_row = await cursor.fetchone()
                if weight_row is not None:
                    history.set_weight(pid, weight_row["adjusted_weight"])

        logger.info("Restored %d archived evaluations for %d participants", replayed, len(participants))
        return replayed

    # ------------------------------------------------------------------ #
    #  Delete
    # ------------------------------------------------------------------ #

    async def delete_evaluation(self, evaluation_id: str) -> bool:
        """Delete one evaluation and its adjustments. Returns True if found."""
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                "DELETE FROM weight_adjustments WHERE evaluation_id = ?", (evaluation_id,)
            )
            cursor = await db.execute("DELETE FROM evaluations WHERE id = ?", (evaluation_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def clear_all(self) -> int:
        """Delete every evaluation. Returns the number deleted."""
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM evaluations")
            row = await cursor.fetchone()
            count = row[0] if row else 0
            await db.execute("DELETE FROM weight_adjustments")
            await db.execute("DELETE FROM evaluations")
            await db.commit()
            return count
