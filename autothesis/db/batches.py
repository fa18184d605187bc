"""Batch jobs: the same research question run against a set of tickers."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_time
from autothesis.db.runs import Run


@dataclass
class BatchJob:
    id: str
    name: str
    question_template: str
    status: str
    summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass
class BatchJobRun:
    id: str
    batch_job_id: str
    run_id: str
    ticker: str
    sort_order: int
    created_at: datetime


@dataclass
class BatchJobRunWithDetails:
    """A batch membership together with its run, if the run still exists."""

    id: str
    batch_job_id: str
    run_id: str
    ticker: str
    sort_order: int
    created_at: datetime
    run: Run | None


def _now() -> str:
    return encode_time(datetime.now(timezone.utc))


def _batch_job_from_row(row: sqlite3.Row) -> BatchJob:
    return BatchJob(
        id=row["id"],
        name=row["name"],
        question_template=row["question_template"],
        status=row["status"],
        summary=row["summary"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


def _details_from_row(row: sqlite3.Row) -> BatchJobRunWithDetails:
    run = None
    if row["run_id"] is not None:
        run = Run(
            id=row["run_id"],
            ticker=row["run_ticker"],
            question=row["run_question"],
            status=row["run_status"],
            created_at=parse_time(row["run_created_at"]),
            updated_at=parse_time(row["run_updated_at"]),
            final_iteration_number=row["run_final_iteration_number"],
            final_memo_markdown=row["run_final_memo_markdown"],
            final_memo_html=row["run_final_memo_html"],
            summary=row["run_summary"],
        )
    return BatchJobRunWithDetails(
        id=row["bjr_id"],
        batch_job_id=row["bjr_batch_job_id"],
        run_id=row["bjr_run_id"],
        ticker=row["bjr_ticker"],
        sort_order=row["bjr_sort_order"],
        created_at=parse_time(row["bjr_created_at"]),
        run=run,
    )


_LIST_RUNS_SQL = """
    SELECT
        bjr.id AS bjr_id,
        bjr.batch_job_id AS bjr_batch_job_id,
        bjr.run_id AS bjr_run_id,
        bjr.ticker AS bjr_ticker,
        bjr.sort_order AS bjr_sort_order,
        bjr.created_at AS bjr_created_at,
        r.id AS run_id,
        r.ticker AS run_ticker,
        r.question AS run_question,
        r.status AS run_status,
        r.created_at AS run_created_at,
        r.updated_at AS run_updated_at,
        r.final_iteration_number AS run_final_iteration_number,
        r.final_memo_markdown AS run_final_memo_markdown,
        r.final_memo_html AS run_final_memo_html,
        r.summary AS run_summary
    FROM batch_job_runs bjr
    LEFT JOIN runs r ON bjr.run_id = r.id
    WHERE bjr.batch_job_id = ?
    ORDER BY bjr.sort_order ASC, bjr.created_at ASC
"""


class BatchRepository:
    """Persistence for batch jobs and the runs that belong to them."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def create_batch_job(self, name: str, question_template: str) -> BatchJob:
        """Insert a batch job in the ``building`` state and return it as stored."""
        job_id = str(uuid.uuid4())
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO batch_jobs
                    (id, name, question_template, status, summary, created_at, updated_at)
                VALUES (?, ?, ?, ?, NULL, ?, ?)
                """,
                (job_id, name, question_template, "building", now, now),
            )
        job = self.get_batch_job(job_id)
        if job is None:
            raise LookupError("created batch job missing after insert")
        return job

    def get_batch_job(self, batch_job_id: str) -> BatchJob | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM batch_jobs WHERE id = ?", (batch_job_id,)
            ).fetchone()
        return None if row is None else _batch_job_from_row(row)

    def list_batch_jobs(self, limit: int) -> list[BatchJob]:
        """Return up to ``limit`` batch jobs, newest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM batch_jobs ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_batch_job_from_row(row) for row in rows]

    def add_run_to_batch_job(
        self, batch_job_id: str, run_id: str, ticker: str, sort_order: int
    ) -> BatchJobRun:
        member = BatchJobRun(
            id=str(uuid.uuid4()),
            batch_job_id=batch_job_id,
            run_id=run_id,
            ticker=ticker,
            sort_order=sort_order,
            created_at=datetime.now(timezone.utc),
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO batch_job_runs
                    (id, batch_job_id, run_id, ticker, sort_order, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    member.id,
                    member.batch_job_id,
                    member.run_id,
                    member.ticker,
                    member.sort_order,
                    encode_time(member.created_at),
                ),
            )
        return member

    def list_batch_job_runs(self, batch_job_id: str) -> list[BatchJobRunWithDetails]:
        """Return a batch's runs in sort order, each joined with its run row."""
        with self._db.connection() as conn:
            rows = conn.execute(_LIST_RUNS_SQL, (batch_job_id,)).fetchall()
        return [_details_from_row(row) for row in rows]

    def list_batch_job_ids_for_run(self, run_id: str) -> list[str]:
        """Return the ids of every batch job that contains a run."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT batch_job_id FROM batch_job_runs WHERE run_id = ?", (run_id,)
            ).fetchall()
        return [row["batch_job_id"] for row in rows]

    def update_batch_job_status(self, batch_job_id: str, status: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE batch_jobs SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), batch_job_id),
            )

    def finalize_batch_job(
        self, batch_job_id: str, status: str, summary: str | None
    ) -> None:
        """Set a batch job's final status and summary."""
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE batch_jobs SET status = ?, summary = ?, updated_at = ? WHERE id = ?",
                (status, summary, _now(), batch_job_id),
            )