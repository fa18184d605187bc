import uuid
from datetime import datetime, timedelta, timezone

import pytest

from autothesis.db.core import DatabaseCore, encode_time
from autothesis.db.runs import RunRepository
from autothesis.db.scheduled_runs import (
    MAX_BACKOFF_HOURS,
    RunStatus,
    ScheduledRunRepository,
    backoff_hours,
)

_FALLBACK_SCHEMA = """
CREATE TABLE IF NOT EXISTS watchlists (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    refresh_enabled INTEGER NOT NULL DEFAULT 0,
    refresh_interval_hours INTEGER NOT NULL DEFAULT 24,
    last_refresh_at TEXT,
    next_refresh_at TEXT,
    refresh_template_id TEXT,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_failure_at TEXT,
    last_failure_reason TEXT
);
CREATE TABLE IF NOT EXISTS scheduled_runs (
    id TEXT PRIMARY KEY,
    watchlist_id TEXT NOT NULL,
    ticker TEXT NOT NULL,
    run_id TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    error_message TEXT
);
"""


@pytest.fixture
def db(tmp_path):
    core = DatabaseCore(f"sqlite://{tmp_path / 'sched.db'}")
    with core.connection() as conn:
        conn.executescript(_FALLBACK_SCHEMA)
    return core


@pytest.fixture
def repo(db):
    return ScheduledRunRepository(db)


def _insert_watchlist(db):
    watchlist_id = str(uuid.uuid4())
    now = encode_time(datetime.now(timezone.utc))
    with db.connection() as conn:
        columns = conn.execute("PRAGMA table_info(watchlists)").fetchall()
        values = {"id": watchlist_id}
        for column in columns:
            name, col_type, notnull, default, pk = (
                column[1], (column[2] or "").upper(), column[3], column[4], column[5]
            )
            if name in values or pk or not notnull or default is not None:
                continue
            if "INT" in col_type:
                values[name] = 0
            elif "REAL" in col_type or "FLOA" in col_type:
                values[name] = 0.0
            elif name.endswith("_at"):
                values[name] = now
            else:
                values[name] = f"{name}-{uuid.uuid4().hex}"
        names = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        conn.execute(
            f"INSERT INTO watchlists ({names}) VALUES ({marks})", tuple(values.values())
        )
    return watchlist_id


def _close(a, b):
    return abs((a - b).total_seconds()) < 1


def test_backoff_caps_at_maximum():
    assert backoff_hours(6, 10) == MAX_BACKOFF_HOURS
    assert backoff_hours(1000, 1) == MAX_BACKOFF_HOURS


def test_backoff_never_below_one_hour():
    assert backoff_hours(0, 1) == 1
    assert backoff_hours(-5, 3) == 1


def test_backoff_doubles_per_failure():
    assert backoff_hours(1, 1) == 2
    assert backoff_hours(1, 2) == 2 * backoff_hours(1, 1)


@pytest.mark.parametrize("interval", [1, 2, 3, 12])
def test_backoff_is_monotonic_and_bounded(interval):
    values = [backoff_hours(interval, failures) for failures in range(0, 15)]
    assert values == sorted(values)
    assert all(1 <= value <= MAX_BACKOFF_HOURS for value in values)


def test_run_status_parse_and_display():
    assert RunStatus.parse("completed") is RunStatus.COMPLETED
    assert RunStatus.parse("cancelled") is RunStatus.CANCELLED
    assert RunStatus.parse("bogus") is None
    assert str(RunStatus.FAILED) == "failed"


def test_schedule_missing_watchlist(repo):
    assert repo.get_watchlist_schedule("missing") is None


def test_enable_schedule_sets_next_refresh(db, repo):
    watchlist_id = _insert_watchlist(db)
    before = datetime.now(timezone.utc)
    repo.update_watchlist_schedule(watchlist_id, True, 6, None)
    after = datetime.now(timezone.utc)
    schedule = repo.get_watchlist_schedule(watchlist_id)
    assert schedule.watchlist_id == watchlist_id
    assert schedule.refresh_enabled is True
    assert schedule.refresh_interval_hours == 6
    assert schedule.refresh_template_id is None
    low = before + timedelta(hours=6) - timedelta(seconds=1)
    high = after + timedelta(hours=6) + timedelta(seconds=1)
    assert low <= schedule.next_refresh_at <= high


def test_disable_schedule_clears_next_refresh(db, repo):
    watchlist_id = _insert_watchlist(db)
    repo.update_watchlist_schedule(watchlist_id, True, 6, None)
    repo.update_watchlist_schedule(watchlist_id, False, 6, None)
    schedule = repo.get_watchlist_schedule(watchlist_id)
    assert schedule.refresh_enabled is False
    assert schedule.next_refresh_at is None


def test_failure_increments_and_backs_off(db, repo):
    watchlist_id = _insert_watchlist(db)
    repo.update_watchlist_schedule(watchlist_id, True, 2, None)
    before = datetime.now(timezone.utc)
    next_at = repo.record_watchlist_refresh_failure(watchlist_id, 2, "boom")
    schedule = repo.get_watchlist_schedule(watchlist_id)
    assert schedule.consecutive_failures == 1
    assert schedule.last_failure_reason == "boom"
    assert schedule.last_failure_at is not None
    assert _close(schedule.next_refresh_at, next_at)
    expected = before + timedelta(hours=backoff_hours(2, 1))
    assert abs((next_at - expected).total_seconds()) < 5

    repo.record_watchlist_refresh_failure(watchlist_id, 2, "again")
    schedule = repo.get_watchlist_schedule(watchlist_id)
    assert schedule.consecutive_failures == 2
    assert schedule.last_failure_reason == "again"


def test_success_clears_failures(db, repo):
    watchlist_id = _insert_watchlist(db)
    repo.record_watchlist_refresh_failure(watchlist_id, 3, "boom")
    repo.record_watchlist_refresh_success(watchlist_id, 3)
    schedule = repo.get_watchlist_schedule(watchlist_id)
    assert schedule.consecutive_failures == 0
    assert schedule.last_failure_reason is None
    assert schedule.last_failure_at is None
    assert schedule.last_refresh_at is not None
    assert _close(schedule.next_refresh_at - schedule.last_refresh_at, schedule.last_refresh_at
                  + timedelta(hours=3) - schedule.last_refresh_at) or (
        abs((schedule.next_refresh_at - schedule.last_refresh_at) - timedelta(hours=3))
        < timedelta(seconds=1)
    )


def test_mark_watchlist_refreshed_resets_failures(db, repo):
    watchlist_id = _insert_watchlist(db)
    repo.record_watchlist_refresh_failure(watchlist_id, 1, "boom")
    repo.mark_watchlist_refreshed(watchlist_id, 1)
    schedule = repo.get_watchlist_schedule(watchlist_id)
    assert schedule.consecutive_failures == 0
    assert schedule.last_refresh_at is not None


def test_scheduled_run_lifecycle(db, repo):
    watchlist_id = _insert_watchlist(db)
    run = RunRepository(db).create_run("AAPL", "question")
    scheduled = repo.create_scheduled_run(watchlist_id, "AAPL", run.id)
    assert scheduled.status == "pending"

    pending = repo.get_pending_scheduled_run_for_ticker(watchlist_id, "AAPL")
    assert pending.id == scheduled.id
    assert pending.started_at is None

    repo.update_scheduled_run_started(scheduled.id)
    running = repo.get_pending_scheduled_run_for_ticker(watchlist_id, "AAPL")
    assert running.status == "running"
    assert running.started_at is not None

    repo.update_scheduled_run_completed(scheduled.id, True, None)
    assert repo.get_pending_scheduled_run_for_ticker(watchlist_id, "AAPL") is None
    [done] = repo.list_scheduled_runs(watchlist_id, 10)
    assert done.status == "completed"
    assert done.completed_at is not None
    assert done.run_id == run.id


def test_scheduled_run_failure_keeps_message(db, repo):
    watchlist_id = _insert_watchlist(db)
    run = RunRepository(db).create_run("MSFT", "question")
    scheduled = repo.create_scheduled_run(watchlist_id, "MSFT", run.id)
    repo.update_scheduled_run_completed(scheduled.id, False, "provider down")
    [record] = repo.list_scheduled_runs(watchlist_id, 10)
    assert record.status == "failed"
    assert record.error_message == "provider down"


def test_list_scheduled_runs_respects_limit(db, repo):
    watchlist_id = _insert_watchlist(db)
    runs = RunRepository(db)
    for ticker in ["A", "B", "C"]:
        run = runs.create_run(ticker, "question")
        repo.create_scheduled_run(watchlist_id, ticker, run.id)
    assert len(repo.list_scheduled_runs(watchlist_id, 2)) == 2
    assert {r.ticker for r in repo.list_scheduled_runs(watchlist_id, 10)} == {"A", "B", "C"}


def test_reap_stuck_scheduled_runs(db, repo):
    watchlist_id = _insert_watchlist(db)
    runs = RunRepository(db)
    ok_run = runs.create_run("OK", "question")
    bad_run = runs.create_run("BAD", "question")
    live_run = runs.create_run("LIVE", "question")
    repo.create_scheduled_run(watchlist_id, "OK", ok_run.id)
    repo.create_scheduled_run(watchlist_id, "BAD", bad_run.id)
    repo.create_scheduled_run(watchlist_id, "LIVE", live_run.id)
    runs.set_run_status(ok_run.id, "completed")
    runs.set_run_status(bad_run.id, "failed")

    assert repo.reap_stuck_scheduled_runs() == 2
    by_ticker = {r.ticker: r for r in repo.list_scheduled_runs(watchlist_id, 10)}
    assert by_ticker["OK"].status == "completed"
    assert by_ticker["OK"].error_message is None
    assert by_ticker["BAD"].status == "failed"
    assert by_ticker["BAD"].error_message == "reaped: underlying run ended as failed"
    assert by_ticker["LIVE"].status == "pending"
    assert repo.reap_stuck_scheduled_runs() == 0