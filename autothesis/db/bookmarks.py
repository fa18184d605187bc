"""Bookmarks: user-authored pointers to runs, iterations and sources."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_time


@dataclass
class Bookmark:
    id: str
    entity_type: str
    entity_id: str
    title: str
    note: str | None
    target_path: str
    created_at: datetime
    updated_at: datetime


def _bookmark_from_row(row: sqlite3.Row) -> Bookmark:
    return Bookmark(
        id=row["id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        title=row["title"],
        note=row["note"],
        target_path=row["target_path"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


class BookmarkRepository:
    """Stores at most one bookmark per (entity type, entity id)."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def upsert_bookmark(
        self,
        entity_type: str,
        entity_id: str,
        title: str,
        note: str | None,
        target_path: str,
    ) -> Bookmark:
        """Create the bookmark, or update title, note and path if it exists."""
        now = encode_time(datetime.now(timezone.utc))
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO bookmarks
                    (id, entity_type, entity_id, title, note, target_path, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (entity_type, entity_id) DO UPDATE SET
                    title = excluded.title,
                    note = excluded.note,
                    target_path = excluded.target_path,
                    updated_at = excluded.updated_at
                """,
                (str(uuid.uuid4()), entity_type, entity_id, title, note, target_path, now, now),
            )
        bookmark = self._get_bookmark_by_entity(entity_type, entity_id)
        if bookmark is None:
            raise LookupError("bookmark missing after upsert")
        return bookmark

    def list_bookmarks(self, limit: int) -> list[Bookmark]:
        """Return up to ``limit`` bookmarks, most recently updated first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM bookmarks ORDER BY updated_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_bookmark_from_row(row) for row in rows]

    def delete_bookmark(self, entity_type: str, entity_id: str) -> bool:
        """Delete the bookmark for an entity; ``True`` if one was removed."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM bookmarks WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            )
        return cursor.rowcount > 0

    def _get_bookmark_by_entity(self, entity_type: str, entity_id: str) -> Bookmark | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM bookmarks WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            ).fetchone()
        return None if row is None else _bookmark_from_row(row)