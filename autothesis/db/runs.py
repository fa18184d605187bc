"""Runs, iterations and run events."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_time, parse_time_opt


@dataclass
class Run:
    id: str
    ticker: str
    question: str
    status: str
    created_at: datetime
    updated_at: datetime
    final_iteration_number: int | None = None
    final_memo_markdown: str | None = None
    final_memo_html: str | None = None
    summary: str | None = None


@dataclass
class Iteration:
    id: str
    run_id: str
    iteration_number: int
    status: str
    plan_markdown: str | None
    draft_markdown: str | None
    critique_markdown: str | None
    evaluation_json: str | None
    created_at: datetime
    updated_at: datetime


@dataclass
class EventRecord:
    id: str
    run_id: str
    iteration_id: str | None
    event_type: str
    message: str
    payload_json: str | None
    created_at: datetime


def run_from_row(row: sqlite3.Row) -> Run:
    """Build a :class:`Run` from a row holding the ``runs`` columns."""
    return Run(
        id=row["id"],
        ticker=row["ticker"],
        question=row["question"],
        status=row["status"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
        final_iteration_number=row["final_iteration_number"],
        final_memo_markdown=row["final_memo_markdown"],
        final_memo_html=row["final_memo_html"],
        summary=row["summary"],
    )


def _iteration_from_row(row: sqlite3.Row) -> Iteration:
    return Iteration(
        id=row["id"],
        run_id=row["run_id"],
        iteration_number=row["iteration_number"],
        status=row["status"],
        plan_markdown=row["plan_markdown"],
        draft_markdown=row["draft_markdown"],
        critique_markdown=row["critique_markdown"],
        evaluation_json=row["evaluation_json"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


def _event_from_row(row: sqlite3.Row) -> EventRecord:
    return EventRecord(
        id=row["id"],
        run_id=row["run_id"],
        iteration_id=row["iteration_id"],
        event_type=row["event_type"],
        message=row["message"],
        payload_json=row["payload_json"],
        created_at=parse_time(row["created_at"]),
    )


def _score_from_json(raw: str | None) -> float | None:
    """Extract a numeric ``score`` from an evaluation JSON object, if any."""
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(value, dict):
        return None
    score = value.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return None
    return float(score)


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


def _now() -> str:
    return encode_time(datetime.now(timezone.utc))


_ITERATION_FIELDS = frozenset(
    {"plan_markdown", "draft_markdown", "critique_markdown", "evaluation_json"}
)


class RunRepository:
    """Persistence for research runs, their iterations and event logs."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def create_run(self, ticker: str, question: str) -> Run:
        """Insert a new queued run and return it as stored."""
        run_id = str(uuid.uuid4())
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO runs (id, ticker, question, status, created_at, updated_at,
                    final_iteration_number, final_memo_markdown, final_memo_html, summary)
                VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, NULL, NULL)
                """,
                (run_id, ticker, question, "queued", now, now),
            )
        run = self.get_run(run_id)
        if run is None:
            raise LookupError("created run missing after insert")
        return run

    def list_runs(self, limit: int) -> list[Run]:
        """Return up to ``limit`` runs, newest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM runs ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [run_from_row(row) for row in rows]

    def get_run(self, run_id: str) -> Run | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return None if row is None else run_from_row(row)

    def get_run_status(self, run_id: str) -> str | None:
        """Return only the status column of a run, or ``None`` if absent."""
        with self._db.connection() as conn:
            row = conn.execute("SELECT status FROM runs WHERE id = ?", (run_id,)).fetchone()
        return None if row is None else row["status"]

    def set_run_status(self, run_id: str, status: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE runs SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), run_id),
            )

    def finalize_run(
        self,
        run_id: str,
        final_iteration_number: int,
        final_memo_markdown: str,
        final_memo_html: str,
        summary: str | None,
    ) -> None:
        """Mark a run completed and store its final memo."""
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE runs
                SET status = ?, updated_at = ?, final_iteration_number = ?,
                    final_memo_markdown = ?, final_memo_html = ?, summary = ?
                WHERE id = ?
                """,
                (
                    "completed",
                    _now(),
                    final_iteration_number,
                    final_memo_markdown,
                    final_memo_html,
                    summary,
                    run_id,
                ),
            )

    def reset_run_for_retry(self, run_id: str) -> None:
        """Drop everything a run produced and put it back in the queue."""
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM source_annotations WHERE run_id = ?", (run_id,))
            conn.execute("DELETE FROM iterations WHERE run_id = ?", (run_id,))
            conn.execute("DELETE FROM sources WHERE run_id = ?", (run_id,))
            conn.execute("DELETE FROM events WHERE run_id = ?", (run_id,))
            conn.execute(
                """
                UPDATE runs
                SET status = ?, updated_at = ?, final_iteration_number = NULL,
                    final_memo_markdown = NULL, final_memo_html = NULL, summary = NULL
                WHERE id = ?
                """,
                ("queued", _now(), run_id),
            )

    def create_iteration(self, run_id: str, iteration_number: int) -> Iteration:
        """Insert a running iteration for a run and return it as stored."""
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO iterations (id, run_id, iteration_number, status, plan_markdown,
                    draft_markdown, critique_markdown, evaluation_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, NULL, NULL, NULL, NULL, ?, ?)
                """,
                (str(uuid.uuid4()), run_id, iteration_number, "running", now, now),
            )
        iteration = self.get_iteration_by_number(run_id, iteration_number)
        if iteration is None:
            raise LookupError("created iteration missing after insert")
        return iteration

    def get_iteration_by_number(self, run_id: str, iteration_number: int) -> Iteration | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM iterations WHERE run_id = ? AND iteration_number = ?",
                (run_id, iteration_number),
            ).fetchone()
        return None if row is None else _iteration_from_row(row)

    def list_iterations(self, run_id: str) -> list[Iteration]:
        """Return a run's iterations in ascending iteration order."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM iterations WHERE run_id = ? ORDER BY iteration_number ASC",
                (run_id,),
            ).fetchall()
        return [_iteration_from_row(row) for row in rows]

    def update_iteration_plan(self, iteration_id: str, plan_markdown: str) -> None:
        self._update_iteration_field(iteration_id, "plan_markdown", plan_markdown)

    def update_iteration_draft(self, iteration_id: str, draft_markdown: str) -> None:
        self._update_iteration_field(iteration_id, "draft_markdown", draft_markdown)

    def update_iteration_critique(self, iteration_id: str, critique_markdown: str) -> None:
        self._update_iteration_field(iteration_id, "critique_markdown", critique_markdown)

    def update_iteration_evaluation(self, iteration_id: str, evaluation_json: str) -> None:
        self._update_iteration_field(iteration_id, "evaluation_json", evaluation_json)

    def set_iteration_status(self, iteration_id: str, status: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE iterations SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), iteration_id),
            )

    def insert_event(
        self,
        run_id: str,
        iteration_id: str | None,
        event_type: str,
        message: str,
        payload_json: str | None,
    ) -> EventRecord:
        """Append an event to a run's log."""
        event = EventRecord(
            id=str(uuid.uuid4()),
            run_id=run_id,
            iteration_id=iteration_id,
            event_type=event_type,
            message=message,
            payload_json=payload_json,
            created_at=datetime.now(timezone.utc),
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO events
                    (id, run_id, iteration_id, event_type, message, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.run_id,
                    event.iteration_id,
                    event.event_type,
                    event.message,
                    event.payload_json,
                    encode_time(event.created_at),
                ),
            )
        return event

    def list_events(self, run_id: str) -> list[EventRecord]:
        """Return a run's events, oldest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE run_id = ? ORDER BY created_at ASC", (run_id,)
            ).fetchall()
        return [_event_from_row(row) for row in rows]

    def list_runs_for_ticker(self, ticker: str, limit: int) -> list[Run]:
        """Return up to ``limit`` runs for one ticker, newest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM runs WHERE ticker = ? ORDER BY created_at DESC LIMIT ?",
                (ticker, limit),
            ).fetchall()
        return [run_from_row(row) for row in rows]

    def get_latest_iteration_evaluation_score(self, run_id: str) -> float | None:
        """Score from the newest evaluated iteration, if it carries one."""
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT evaluation_json FROM iterations
                WHERE run_id = ? AND evaluation_json IS NOT NULL
                ORDER BY iteration_number DESC
                LIMIT 1
                """,
                (run_id,),
            ).fetchone()
        return None if row is None else _score_from_json(row["evaluation_json"])

    def get_latest_source_timestamp_for_run(self, run_id: str) -> datetime | None:
        """Most recent publish (or, failing that, creation) time among a run's sources."""
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(published_at, created_at) AS ts FROM sources
                WHERE run_id = ?
                ORDER BY COALESCE(published_at, created_at) DESC
                LIMIT 1
                """,
                (run_id,),
            ).fetchone()
        return None if row is None else parse_time(row["ts"])

    def latest_scores_for_runs(self, run_ids: Sequence[str]) -> dict[str, float]:
        """Map run id to the score of its newest evaluated iteration.

        Runs without a scored evaluation are left out.
        """
        if not run_ids:
            return {}
        sql = f"""
            SELECT i.run_id, i.evaluation_json
            FROM iterations i
            INNER JOIN (
                SELECT run_id, MAX(iteration_number) AS max_n
                FROM iterations
                WHERE run_id IN ({_placeholders(len(run_ids))}) AND evaluation_json IS NOT NULL
                GROUP BY run_id
            ) latest ON latest.run_id = i.run_id AND latest.max_n = i.iteration_number
        """
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(run_ids)).fetchall()
        scores: dict[str, float] = {}
        for row in rows:
            score = _score_from_json(row["evaluation_json"])
            if score is not None:
                scores[row["run_id"]] = score
        return scores

    def latest_source_timestamps_for_runs(
        self, run_ids: Sequence[str]
    ) -> dict[str, datetime]:
        """Map run id to its most recent source timestamp."""
        if not run_ids:
            return {}
        sql = f"""
            SELECT run_id, MAX(COALESCE(published_at, created_at)) AS latest
            FROM sources
            WHERE run_id IN ({_placeholders(len(run_ids))})
            GROUP BY run_id
        """
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(run_ids)).fetchall()
        stamps: dict[str, datetime] = {}
        for row in rows:
            parsed = parse_time_opt(row["latest"])
            if parsed is not None:
                stamps[row["run_id"]] = parsed
        return stamps

    def recent_runs_for_tickers(
        self, tickers: Sequence[str], limit: int
    ) -> dict[str, list[Run]]:
        """Map each ticker to up to ``limit`` of its runs, newest first."""
        if not tickers or limit <= 0:
            return {}
        sql = f"""
            SELECT id, ticker, question, status, created_at, updated_at,
                   final_iteration_number, final_memo_markdown, final_memo_html, summary
            FROM (
                SELECT r.*,
                       ROW_NUMBER() OVER (PARTITION BY ticker ORDER BY created_at DESC) AS rn
                FROM runs r
                WHERE ticker IN ({_placeholders(len(tickers))})
            ) WHERE rn <= ?
            ORDER BY ticker, created_at DESC
        """
        with self._db.connection() as conn:
            rows = conn.execute(sql, (*tickers, limit)).fetchall()
        grouped: dict[str, list[Run]] = {}
        for row in rows:
            run = run_from_row(row)
            grouped.setdefault(run.ticker, []).append(run)
        return grouped

    def latest_runs_for_tickers(self, tickers: Sequence[str]) -> dict[str, Run]:
        """Map each ticker to its single most recent run."""
        if not tickers:
            return {}
        sql = f"""
            SELECT r.* FROM runs r
            INNER JOIN (
                SELECT ticker, MAX(created_at) AS max_created_at
                FROM runs
                WHERE ticker IN ({_placeholders(len(tickers))})
                GROUP BY ticker
            ) latest ON latest.ticker = r.ticker AND latest.max_created_at = r.created_at
        """
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(tickers)).fetchall()
        latest: dict[str, Run] = {}
        for row in rows:
            run = run_from_row(row)
            latest[run.ticker] = run
        return latest

    def _update_iteration_field(self, iteration_id: str, field_name: str, value: str) -> None:
        if field_name not in _ITERATION_FIELDS:
            raise ValueError(f"unknown iteration field: {field_name}")
        with self._db.connection() as conn:
            conn.execute(
                f"UPDATE iterations SET {field_name} = ?, updated_at = ? WHERE id = ?",
                (value, _now(), iteration_id),
            )