"""Comparisons: several research runs set side by side."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_time
from autothesis.db.runs import Run


@dataclass
class Comparison:
    id: str
    name: str
    question: str
    status: str
    created_at: datetime
    updated_at: datetime
    final_comparison_html: str | None
    summary: str | None


@dataclass
class ComparisonRun:
    id: str
    comparison_id: str
    run_id: str
    ticker: str
    sort_order: int
    created_at: datetime


@dataclass
class ComparisonRunWithDetails:
    """A comparison membership together with its run, if the run still exists."""

    id: str
    comparison_id: str
    run_id: str
    ticker: str
    sort_order: int
    created_at: datetime
    run: Run | None


def _now() -> str:
    return encode_time(datetime.now(timezone.utc))


def _comparison_from_row(row: sqlite3.Row) -> Comparison:
    return Comparison(
        id=row["id"],
        name=row["name"],
        question=row["question"],
        status=row["status"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
        final_comparison_html=row["final_comparison_html"],
        summary=row["summary"],
    )


def _details_from_row(row: sqlite3.Row) -> ComparisonRunWithDetails:
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
    return ComparisonRunWithDetails(
        id=row["cr_id"],
        comparison_id=row["cr_comparison_id"],
        run_id=row["cr_run_id"],
        ticker=row["cr_ticker"],
        sort_order=row["cr_sort_order"],
        created_at=parse_time(row["cr_created_at"]),
        run=run,
    )


_LIST_RUNS_SQL = """
    SELECT
        cr.id AS cr_id,
        cr.comparison_id AS cr_comparison_id,
        cr.run_id AS cr_run_id,
        cr.ticker AS cr_ticker,
        cr.sort_order AS cr_sort_order,
        cr.created_at AS cr_created_at,
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
    FROM comparison_runs cr
    LEFT JOIN runs r ON cr.run_id = r.id
    WHERE cr.comparison_id = ?
    ORDER BY cr.sort_order ASC, cr.created_at ASC
"""


class ComparisonRepository:
    """Persistence for comparisons and the runs they compare."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def create_comparison(self, name: str, question: str) -> Comparison:
        """Insert a comparison in the ``building`` state and return it as stored."""
        comparison_id = str(uuid.uuid4())
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO comparisons
                    (id, name, question, status, created_at, updated_at,
                     final_comparison_html, summary)
                VALUES (?, ?, ?, 'building', ?, ?, NULL, NULL)
                """,
                (comparison_id, name, question, now, now),
            )
        comparison = self.get_comparison(comparison_id)
        if comparison is None:
            raise LookupError("created comparison missing after insert")
        return comparison

    def get_comparison(self, comparison_id: str) -> Comparison | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM comparisons WHERE id = ?", (comparison_id,)
            ).fetchone()
        return None if row is None else _comparison_from_row(row)

    def list_comparisons(self, limit: int) -> list[Comparison]:
        """Return up to ``limit`` comparisons, newest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM comparisons ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_comparison_from_row(row) for row in rows]

    def add_run_to_comparison(
        self, comparison_id: str, run_id: str, ticker: str, sort_order: int
    ) -> ComparisonRun:
        member = ComparisonRun(
            id=str(uuid.uuid4()),
            comparison_id=comparison_id,
            run_id=run_id,
            ticker=ticker,
            sort_order=sort_order,
            created_at=datetime.now(timezone.utc),
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO comparison_runs
                    (id, comparison_id, run_id, ticker, sort_order, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    member.id,
                    member.comparison_id,
                    member.run_id,
                    member.ticker,
                    member.sort_order,
                    encode_time(member.created_at),
                ),
            )
        return member

    def list_comparison_runs(self, comparison_id: str) -> list[ComparisonRunWithDetails]:
        """Return a comparison's runs in sort order, each joined with its run row."""
        with self._db.connection() as conn:
            rows = conn.execute(_LIST_RUNS_SQL, (comparison_id,)).fetchall()
        return [_details_from_row(row) for row in rows]

    def list_comparison_ids_for_run(self, run_id: str) -> list[str]:
        """Return the ids of every comparison that contains a run."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT comparison_id FROM comparison_runs WHERE run_id = ?", (run_id,)
            ).fetchall()
        return [row["comparison_id"] for row in rows]

    def update_comparison_status(self, comparison_id: str, status: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE comparisons SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), comparison_id),
            )

    def finalize_comparison(
        self,
        comparison_id: str,
        status: str,
        final_comparison_html: str,
        summary: str | None,
    ) -> None:
        """Store a comparison's final status, rendered HTML and summary."""
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE comparisons
                SET status = ?, updated_at = ?, final_comparison_html = ?, summary = ?
                WHERE id = ?
                """,
                (status, _now(), final_comparison_html, summary, comparison_id),
            )

    def delete_comparison(self, comparison_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute("DELETE FROM comparisons WHERE id = ?", (comparison_id,))