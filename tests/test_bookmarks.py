import pytest

from autothesis.db.bookmarks import BookmarkRepository
from autothesis.db.core import DatabaseCore


@pytest.fixture
def repo():
    db = DatabaseCore(":memory:")
    yield BookmarkRepository(db)
    db.close()


def test_upsert_creates_bookmark(repo):
    bookmark = repo.upsert_bookmark("run", "r1", "Apple memo", "look again", "/runs/r1")
    assert bookmark.entity_type == "run"
    assert bookmark.entity_id == "r1"
    assert bookmark.title == "Apple memo"
    assert bookmark.note == "look again"
    assert bookmark.target_path == "/runs/r1"
    assert bookmark.created_at == bookmark.updated_at


def test_upsert_updates_existing(repo):
    first = repo.upsert_bookmark("run", "r1", "Old", None, "/runs/r1")
    second = repo.upsert_bookmark("run", "r1", "New", "note", "/runs/r1#top")
    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at
    assert second.title == "New"
    assert second.note == "note"
    assert second.target_path == "/runs/r1#top"
    assert len(repo.list_bookmarks(10)) == 1


def test_same_id_different_type_is_separate(repo):
    repo.upsert_bookmark("run", "x", "Run", None, "/runs/x")
    repo.upsert_bookmark("source", "x", "Source", None, "/sources/x")
    titles = {b.title for b in repo.list_bookmarks(10)}
    assert titles == {"Run", "Source"}


def test_list_orders_by_updated_and_limits(repo):
    repo.upsert_bookmark("run", "a", "A", None, "/a")
    repo.upsert_bookmark("run", "b", "B", None, "/b")
    repo.upsert_bookmark("run", "a", "A2", None, "/a")
    listed = repo.list_bookmarks(10)
    assert [b.entity_id for b in listed] == ["a", "b"]
    assert [b.entity_id for b in repo.list_bookmarks(1)] == ["a"]


def test_delete_bookmark(repo):
    repo.upsert_bookmark("run", "r1", "T", None, "/r1")
    assert repo.delete_bookmark("run", "r1") is True
    assert repo.delete_bookmark("run", "r1") is False
    assert repo.list_bookmarks(10) == []