import pytest

from autothesis.db.comparisons import ComparisonRepository
from autothesis.db.core import DatabaseCore
from autothesis.db.runs import RunRepository

_FALLBACK_SCHEMA = """
CREATE TABLE IF NOT EXISTS comparisons (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    question TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    final_comparison_html TEXT,
    summary TEXT
);
CREATE TABLE IF NOT EXISTS comparison_runs (
    id TEXT PRIMARY KEY,
    comparison_id TEXT NOT NULL,
    run_id TEXT NOT NULL,
    ticker TEXT NOT NULL,
    sort_order INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
"""


@pytest.fixture
def db(tmp_path):
    core = DatabaseCore(f"sqlite://{tmp_path / 'cmp.db'}")
    with core.connection() as conn:
        conn.executescript(_FALLBACK_SCHEMA)
    return core


@pytest.fixture
def repo(db):
    return ComparisonRepository(db)


def test_create_and_get_comparison(repo):
    created = repo.create_comparison("Megacaps", "Which is cheapest?")
    assert created.name == "Megacaps"
    assert created.question == "Which is cheapest?"
    assert created.status == "building"
    assert created.final_comparison_html is None
    assert created.summary is None
    fetched = repo.get_comparison(created.id)
    assert fetched == created


def test_get_missing_comparison(repo):
    assert repo.get_comparison("missing") is None


def test_list_comparisons_limit(repo):
    ids = {repo.create_comparison(f"c{i}", "q").id for i in range(3)}
    assert len(repo.list_comparisons(2)) == 2
    assert {c.id for c in repo.list_comparisons(10)} == ids


def test_comparison_runs_sorted_with_details(db, repo):
    runs = RunRepository(db)
    first = runs.create_run("AAPL", "question a")
    second = runs.create_run("MSFT", "question b")
    comparison = repo.create_comparison("pair", "q")
    repo.add_run_to_comparison(comparison.id, second.id, "MSFT", 2)
    member = repo.add_run_to_comparison(comparison.id, first.id, "AAPL", 1)
    assert member.sort_order == 1
    assert member.comparison_id == comparison.id

    listed = repo.list_comparison_runs(comparison.id)
    assert [m.ticker for m in listed] == ["AAPL", "MSFT"]
    assert listed[0].run.id == first.id
    assert listed[0].run.question == "question a"
    assert listed[1].run.ticker == "MSFT"
    assert listed[0].id == member.id


def test_list_comparison_ids_for_run(db, repo):
    run = RunRepository(db).create_run("NVDA", "q")
    one = repo.create_comparison("one", "q")
    two = repo.create_comparison("two", "q")
    repo.create_comparison("three", "q")
    repo.add_run_to_comparison(one.id, run.id, "NVDA", 0)
    repo.add_run_to_comparison(two.id, run.id, "NVDA", 0)
    assert sorted(repo.list_comparison_ids_for_run(run.id)) == sorted([one.id, two.id])
    assert repo.list_comparison_ids_for_run("other") == []


def test_update_status(repo):
    comparison = repo.create_comparison("c", "q")
    repo.update_comparison_status(comparison.id, "running")
    updated = repo.get_comparison(comparison.id)
    assert updated.status == "running"
    assert updated.updated_at >= comparison.updated_at


def test_finalize_comparison(repo):
    comparison = repo.create_comparison("c", "q")
    repo.finalize_comparison(comparison.id, "completed", "<p>done</p>", "short")
    final = repo.get_comparison(comparison.id)
    assert final.status == "completed"
    assert final.final_comparison_html == "<p>done</p>"
    assert final.summary == "short"


def test_delete_comparison(repo):
    comparison = repo.create_comparison("c", "q")
    repo.delete_comparison(comparison.id)
    assert repo.get_comparison(comparison.id) is None