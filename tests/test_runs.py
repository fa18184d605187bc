import sqlite3
import uuid
from datetime import datetime, timezone

import pytest

from autothesis.db.core import DatabaseCore, encode_time
from autothesis.db.runs import RunRepository, run_from_row


@pytest.fixture
def db():
    core = DatabaseCore(":memory:")
    yield core
    core.close()


@pytest.fixture
def repo(db):
    return RunRepository(db)


def _set_created(db, run_id, when):
    with db.connection() as conn:
        conn.execute(
            "UPDATE runs SET created_at = ? WHERE id = ?", (encode_time(when), run_id)
        )


def _add_source(db, run_id, created_at, published_at=None, iteration_id=None):
    source_id = str(uuid.uuid4())
    with db.connection() as conn:
        conn.execute(
            """
            INSERT INTO sources (id, run_id, iteration_id, url, published_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                source_id,
                run_id,
                iteration_id,
                "https://example.com/a",
                None if published_at is None else encode_time(published_at),
                encode_time(created_at),
            ),
        )
    return source_id


def test_create_and_get_run_round_trip(repo):
    run = repo.create_run("AAPL", "Why?")
    assert run.status == "queued"
    assert run.ticker == "AAPL"
    assert run.question == "Why?"
    assert run.final_iteration_number is None
    assert run.summary is None
    assert repo.get_run(run.id) == run


def test_get_missing_run_and_status(repo):
    assert repo.get_run("nope") is None
    assert repo.get_run_status("nope") is None


def test_set_run_status(repo):
    run = repo.create_run("MSFT", "q")
    repo.set_run_status(run.id, "running")
    assert repo.get_run_status(run.id) == "running"
    assert repo.get_run(run.id).updated_at >= run.updated_at


def test_finalize_run(repo):
    run = repo.create_run("MSFT", "q")
    repo.finalize_run(run.id, 2, "# memo", "<h1>memo</h1>", "short")
    stored = repo.get_run(run.id)
    assert stored.status == "completed"
    assert stored.final_iteration_number == 2
    assert stored.final_memo_markdown == "# memo"
    assert stored.final_memo_html == "<h1>memo</h1>"
    assert stored.summary == "short"


def test_list_runs_newest_first_with_limit(db, repo):
    first = repo.create_run("A", "q")
    second = repo.create_run("B", "q")
    third = repo.create_run("C", "q")
    _set_created(db, first.id, datetime(2024, 1, 1, tzinfo=timezone.utc))
    _set_created(db, second.id, datetime(2024, 1, 2, tzinfo=timezone.utc))
    _set_created(db, third.id, datetime(2024, 1, 3, tzinfo=timezone.utc))
    assert [r.id for r in repo.list_runs(10)] == [third.id, second.id, first.id]
    assert [r.id for r in repo.list_runs(2)] == [third.id, second.id]


def test_list_runs_for_ticker(db, repo):
    old = repo.create_run("AAPL", "q")
    new = repo.create_run("AAPL", "q")
    repo.create_run("MSFT", "q")
    _set_created(db, old.id, datetime(2024, 1, 1, tzinfo=timezone.utc))
    _set_created(db, new.id, datetime(2024, 2, 1, tzinfo=timezone.utc))
    assert [r.id for r in repo.list_runs_for_ticker("AAPL", 10)] == [new.id, old.id]
    assert [r.id for r in repo.list_runs_for_ticker("AAPL", 1)] == [new.id]


def test_iterations_lifecycle(repo):
    run = repo.create_run("AAPL", "q")
    second = repo.create_iteration(run.id, 2)
    first = repo.create_iteration(run.id, 1)
    assert first.status == "running"
    assert first.plan_markdown is None
    assert [i.id for i in repo.list_iterations(run.id)] == [first.id, second.id]

    repo.update_iteration_plan(first.id, "plan")
    repo.update_iteration_draft(first.id, "draft")
    repo.update_iteration_critique(first.id, "critique")
    repo.update_iteration_evaluation(first.id, '{"score": 5}')
    repo.set_iteration_status(first.id, "completed")

    stored = repo.get_iteration_by_number(run.id, 1)
    assert stored.plan_markdown == "plan"
    assert stored.draft_markdown == "draft"
    assert stored.critique_markdown == "critique"
    assert stored.evaluation_json == '{"score": 5}'
    assert stored.status == "completed"
    assert repo.get_iteration_by_number(run.id, 3) is None


def test_duplicate_iteration_number_rejected(repo):
    run = repo.create_run("AAPL", "q")
    repo.create_iteration(run.id, 1)
    with pytest.raises(sqlite3.IntegrityError):
        repo.create_iteration(run.id, 1)


def test_events_round_trip(repo):
    run = repo.create_run("AAPL", "q")
    iteration = repo.create_iteration(run.id, 1)
    first = repo.insert_event(run.id, None, "started", "Run started", None)
    second = repo.insert_event(run.id, iteration.id, "plan", "Planned", '{"k": 1}')
    events = repo.list_events(run.id)
    assert [e.id for e in events] == [first.id, second.id]
    assert events[1].iteration_id == iteration.id
    assert events[1].payload_json == '{"k": 1}'
    assert events[0].iteration_id is None


def test_reset_run_for_retry_clears_children(db, repo):
    run = repo.create_run("AAPL", "q")
    iteration = repo.create_iteration(run.id, 1)
    repo.insert_event(run.id, iteration.id, "x", "m", None)
    _add_source(db, run.id, datetime(2024, 1, 1, tzinfo=timezone.utc), iteration_id=iteration.id)
    repo.finalize_run(run.id, 1, "md", "html", "s")

    repo.reset_run_for_retry(run.id)

    stored = repo.get_run(run.id)
    assert stored.status == "queued"
    assert stored.final_iteration_number is None
    assert stored.final_memo_markdown is None
    assert stored.final_memo_html is None
    assert stored.summary is None
    assert repo.list_iterations(run.id) == []
    assert repo.list_events(run.id) == []
    assert repo.get_latest_source_timestamp_for_run(run.id) is None


def test_latest_iteration_evaluation_score(repo):
    run = repo.create_run("AAPL", "q")
    assert repo.get_latest_iteration_evaluation_score(run.id) is None
    first = repo.create_iteration(run.id, 1)
    second = repo.create_iteration(run.id, 2)
    repo.update_iteration_evaluation(first.id, '{"score": 6.5}')
    assert repo.get_latest_iteration_evaluation_score(run.id) == 6.5
    repo.update_iteration_evaluation(second.id, '{"score": 8}')
    assert repo.get_latest_iteration_evaluation_score(run.id) == 8.0


@pytest.mark.parametrize("payload", ["not json", '{"other": 1}', '{"score": "high"}', "[1]"])
def test_latest_score_ignores_unusable_payloads(repo, payload):
    run = repo.create_run("AAPL", "q")
    iteration = repo.create_iteration(run.id, 1)
    repo.update_iteration_evaluation(iteration.id, payload)
    assert repo.get_latest_iteration_evaluation_score(run.id) is None
    assert repo.latest_scores_for_runs([run.id]) == {}


def test_latest_scores_for_runs(repo):
    assert repo.latest_scores_for_runs([]) == {}
    a = repo.create_run("A", "q")
    b = repo.create_run("B", "q")
    c = repo.create_run("C", "q")
    a1 = repo.create_iteration(a.id, 1)
    a2 = repo.create_iteration(a.id, 2)
    repo.update_iteration_evaluation(a1.id, '{"score": 3}')
    repo.update_iteration_evaluation(a2.id, '{"score": 9.5}')
    b1 = repo.create_iteration(b.id, 1)
    repo.update_iteration_evaluation(b1.id, '{"score": 4}')
    repo.create_iteration(c.id, 1)
    assert repo.latest_scores_for_runs([a.id, b.id, c.id]) == {a.id: 9.5, b.id: 4.0}


def test_latest_source_timestamp_prefers_published(db, repo):
    run = repo.create_run("AAPL", "q")
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    published = datetime(2024, 3, 1, tzinfo=timezone.utc)
    _add_source(db, run.id, created)
    _add_source(db, run.id, created, published_at=published)
    assert repo.get_latest_source_timestamp_for_run(run.id) == published


def test_latest_source_timestamps_for_runs(db, repo):
    assert repo.latest_source_timestamps_for_runs([]) == {}
    a = repo.create_run("A", "q")
    b = repo.create_run("B", "q")
    c = repo.create_run("C", "q")
    a_late = datetime(2024, 5, 1, tzinfo=timezone.utc)
    b_time = datetime(2024, 2, 1, tzinfo=timezone.utc)
    _add_source(db, a.id, datetime(2024, 1, 1, tzinfo=timezone.utc))
    _add_source(db, a.id, a_late)
    _add_source(db, b.id, b_time)
    assert repo.latest_source_timestamps_for_runs([a.id, b.id, c.id]) == {
        a.id: a_late,
        b.id: b_time,
    }


def test_recent_runs_for_tickers(db, repo):
    assert repo.recent_runs_for_tickers([], 2) == {}
    runs = [repo.create_run("AAPL", "q") for _ in range(3)]
    msft = repo.create_run("MSFT", "q")
    repo.create_run("GOOG", "q")
    for day, run in enumerate(runs, start=1):
        _set_created(db, run.id, datetime(2024, 1, day, tzinfo=timezone.utc))
    assert repo.recent_runs_for_tickers(["AAPL"], 0) == {}

    result = repo.recent_runs_for_tickers(["AAPL", "MSFT"], 2)
    assert set(result) == {"AAPL", "MSFT"}
    assert [r.id for r in result["AAPL"]] == [runs[2].id, runs[1].id]
    assert [r.id for r in result["MSFT"]] == [msft.id]


def test_latest_runs_for_tickers(db, repo):
    assert repo.latest_runs_for_tickers([]) == {}
    old = repo.create_run("AAPL", "q")
    new = repo.create_run("AAPL", "q")
    msft = repo.create_run("MSFT", "q")
    _set_created(db, old.id, datetime(2024, 1, 1, tzinfo=timezone.utc))
    _set_created(db, new.id, datetime(2024, 6, 1, tzinfo=timezone.utc))
    result = repo.latest_runs_for_tickers(["AAPL", "MSFT", "TSLA"])
    assert {ticker: run.id for ticker, run in result.items()} == {
        "AAPL": new.id,
        "MSFT": msft.id,
    }


def test_run_from_row(db, repo):
    run = repo.create_run("NVDA", "q")
    with db.connection() as conn:
        row = conn.execute("SELECT * FROM runs WHERE id = ?", (run.id,)).fetchone()
    assert run_from_row(row) == run