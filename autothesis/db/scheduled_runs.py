"""Scheduled refresh runs driven by watchlists with a refresh interval.

The watchlist row carries the schedule columns, so the schedule methods
update ``watchlists``; ``scheduled_runs`` keeps one record per execution.
"""

from __future__ import annotations

import enum
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_time, parse_time_opt

MAX_BACKOFF_HOURS = 24
"""Upper bound on the retry delay after consecutive refresh failures."""

_MAX_BACKOFF_SHIFT = 10


class RunStatus(enum.Enum):
    """Lifecycle states of a research run."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: str) -> RunStatus | None:
        """Return the status named by ``value``, or ``None`` if unknown."""
        try:
            return cls(value)
        except ValueError:
            return None

    def __str__(self) -> str:
        return self.value


@dataclass
class ScheduledRun:
    id: str
    watchlist_id: str
    ticker: str
    run_id: str
    scheduled_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    status: str
    created_at: datetime
    error_message: str | None


@dataclass
class WatchlistSchedule:
    watchlist_id: str
    refresh_enabled: bool
    refresh_interval_hours: int
    last_refresh_at: datetime | None
    next_refresh_at: datetime | None
    refresh_template_id: str | None
    consecutive_failures: int
    last_failure_at: datetime | None
    last_failure_reason: str | None


def backoff_hours(interval_hours: int, consecutive_failures: int) -> int:
    """Hours to wait after ``consecutive_failures`` failures in a row.

    The interval doubles with each failure, is capped at
    :data:`MAX_BACKOFF_HOURS`, and is never less than one hour.
    """
    shift = min(max(consecutive_failures, 0), _MAX_BACKOFF_SHIFT)
    hours = min(interval_hours * (1 << shift), MAX_BACKOFF_HOURS)
    return max(hours, 1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _optional_time(raw: str | None) -> datetime | None:
    return None if raw is None else parse_time_opt(raw)


def _scheduled_run_from_row(row: sqlite3.Row) -> ScheduledRun:
    return ScheduledRun(
        id=row["id"],
        watchlist_id=row["watchlist_id"],
        ticker=row["ticker"],
        run_id=row["run_id"],
        scheduled_at=parse_time(row["scheduled_at"]),
        started_at=_optional_time(row["started_at"]),
        completed_at=_optional_time(row["completed_at"]),
        status=row["status"],
        created_at=parse_time(row["created_at"]),
        error_message=row["error_message"],
    )


def _schedule_from_row(row: sqlite3.Row, watchlist_id: str) -> WatchlistSchedule:
    return WatchlistSchedule(
        watchlist_id=watchlist_id,
        refresh_enabled=row["refresh_enabled"] > 0,
        refresh_interval_hours=row["refresh_interval_hours"],
        last_refresh_at=_optional_time(row["last_refresh_at"]),
        next_refresh_at=_optional_time(row["next_refresh_at"]),
        refresh_template_id=row["refresh_template_id"],
        consecutive_failures=row["consecutive_failures"],
        last_failure_at=_optional_time(row["last_failure_at"]),
        last_failure_reason=row["last_failure_reason"],
    )


class ScheduledRunRepository:
    """Persistence for watchlist refresh schedules and their executions."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def get_watchlist_schedule(self, watchlist_id: str) -> WatchlistSchedule | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, refresh_enabled, refresh_interval_hours, last_refresh_at,
                       next_refresh_at, refresh_template_id, consecutive_failures,
                       last_failure_at, last_failure_reason
                FROM watchlists WHERE id = ?
                """,
                (watchlist_id,),
            ).fetchone()
        return None if row is None else _schedule_from_row(row, row["id"])

    def update_watchlist_schedule(
        self,
        watchlist_id: str,
        enabled: bool,
        interval_hours: int,
        template_id: str | None,
    ) -> None:
        """Set a watchlist's schedule; enabling it schedules the first refresh."""
        now = _utcnow()
        next_refresh_at = (
            encode_time(now + timedelta(hours=interval_hours)) if enabled else None
        )
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE watchlists SET refresh_enabled = ?, refresh_interval_hours = ?, "
                "refresh_template_id = ?, next_refresh_at = ?, updated_at = ? WHERE id = ?",
                (
                    1 if enabled else 0,
                    interval_hours,
                    template_id,
                    next_refresh_at,
                    encode_time(now),
                    watchlist_id,
                ),
            )

    def record_watchlist_refresh_success(self, watchlist_id: str, interval_hours: int) -> None:
        """Clear the failure counter and schedule the next refresh one interval out."""
        now = _utcnow()
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE watchlists SET
                    last_refresh_at = ?,
                    next_refresh_at = ?,
                    consecutive_failures = 0,
                    last_failure_at = NULL,
                    last_failure_reason = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    encode_time(now),
                    encode_time(now + timedelta(hours=interval_hours)),
                    encode_time(now),
                    watchlist_id,
                ),
            )

    def record_watchlist_refresh_failure(
        self, watchlist_id: str, interval_hours: int, reason: str
    ) -> datetime:
        """Count a failed refresh and push the next attempt out with backoff.

        Returns the newly scheduled time of the next refresh.
        """
        now = _utcnow()
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT consecutive_failures FROM watchlists WHERE id = ?",
                (watchlist_id,),
            ).fetchone()
            current = row[0] if row is not None and row[0] is not None else 0
            failures = current + 1
            next_refresh_at = now + timedelta(hours=backoff_hours(interval_hours, failures))
            conn.execute(
                """
                UPDATE watchlists SET
                    consecutive_failures = ?,
                    last_failure_at = ?,
                    last_failure_reason = ?,
                    next_refresh_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    failures,
                    encode_time(now),
                    reason,
                    encode_time(next_refresh_at),
                    encode_time(now),
                    watchlist_id,
                ),
            )
        return next_refresh_at

    def mark_watchlist_refreshed(self, watchlist_id: str, interval_hours: int) -> None:
        """Same as :meth:`record_watchlist_refresh_success`."""
        self.record_watchlist_refresh_success(watchlist_id, interval_hours)

    def reap_stuck_scheduled_runs(self) -> int:
        """Close scheduled runs whose underlying run has already finished.

        Returns the number of scheduled runs updated.
        """
        now = encode_time(_utcnow())
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT sr.id, r.status
                FROM scheduled_runs sr
                JOIN runs r ON r.id = sr.run_id
                WHERE sr.status IN ('pending', 'running')
                  AND r.status IN ('completed', 'failed', 'cancelled')
                """
            ).fetchall()
            for scheduled_run_id, run_status in rows:
                terminal = RunStatus.parse(run_status) or RunStatus.FAILED
                if terminal is RunStatus.COMPLETED:
                    new_status, message = "completed", None
                else:
                    new_status = (
                        "cancelled" if terminal is RunStatus.CANCELLED else "failed"
                    )
                    message = f"reaped: underlying run ended as {terminal}"
                conn.execute(
                    """
                    UPDATE scheduled_runs
                    SET status = ?, completed_at = COALESCE(completed_at, ?),
                        error_message = COALESCE(error_message, ?)
                    WHERE id = ?
                    """,
                    (new_status, now, message, scheduled_run_id),
                )
        return len(rows)

    def create_scheduled_run(self, watchlist_id: str, ticker: str, run_id: str) -> ScheduledRun:
        """Record a pending scheduled execution of ``run_id``."""
        now = _utcnow()
        scheduled = ScheduledRun(
            id=str(uuid.uuid4()),
            watchlist_id=watchlist_id,
            ticker=ticker,
            run_id=run_id,
            scheduled_at=now,
            started_at=None,
            completed_at=None,
            status="pending",
            created_at=now,
            error_message=None,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO scheduled_runs
                    (id, watchlist_id, ticker, run_id, scheduled_at, started_at,
                     completed_at, status, created_at)
                VALUES (?, ?, ?, ?, ?, NULL, NULL, ?, ?)
                """,
                (
                    scheduled.id,
                    scheduled.watchlist_id,
                    scheduled.ticker,
                    scheduled.run_id,
                    encode_time(scheduled.scheduled_at),
                    scheduled.status,
                    encode_time(scheduled.created_at),
                ),
            )
        return scheduled

    def update_scheduled_run_started(self, scheduled_run_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE scheduled_runs SET started_at = ?, status = 'running' WHERE id = ?",
                (encode_time(_utcnow()), scheduled_run_id),
            )

    def update_scheduled_run_completed(
        self, scheduled_run_id: str, success: bool, error_message: str | None
    ) -> None:
        status = "completed" if success else "failed"
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE scheduled_runs SET completed_at = ?, status = ?, error_message = ? "
                "WHERE id = ?",
                (encode_time(_utcnow()), status, error_message, scheduled_run_id),
            )

    def list_scheduled_runs(self, watchlist_id: str, limit: int) -> list[ScheduledRun]:
        """Return up to ``limit`` executions for a watchlist, newest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scheduled_runs WHERE watchlist_id = ? "
                "ORDER BY scheduled_at DESC LIMIT ?",
                (watchlist_id, limit),
            ).fetchall()
        return [_scheduled_run_from_row(row) for row in rows]

    def get_pending_scheduled_run_for_ticker(
        self, watchlist_id: str, ticker: str
    ) -> ScheduledRun | None:
        """Return the pending or running execution for a ticker, if any."""
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_runs WHERE watchlist_id = ? AND ticker = ? "
                "AND status IN ('pending', 'running')",
                (watchlist_id, ticker),
            ).fetchone()
        return None if row is None else _scheduled_run_from_row(row)