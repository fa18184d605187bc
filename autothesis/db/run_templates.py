"""Run templates: reusable (name, question) pairs for manual or scheduled runs."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_time


@dataclass
class RunTemplate:
    id: str
    name: str
    question_template: str
    description: str | None
    created_at: datetime
    updated_at: datetime


def _template_from_row(row: sqlite3.Row) -> RunTemplate:
    return RunTemplate(
        id=row["id"],
        name=row["name"],
        question_template=row["question_template"],
        description=row["description"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


class RunTemplateRepository:
    """Create, read, update and delete run templates."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def create_run_template(
        self, name: str, question_template: str, description: str | None
    ) -> RunTemplate:
        template_id = str(uuid.uuid4())
        now = encode_time(datetime.now(timezone.utc))
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO run_templates
                    (id, name, question_template, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (template_id, name, question_template, description, now, now),
            )
        template = self.get_run_template(template_id)
        if template is None:
            raise LookupError("created run template missing after insert")
        return template

    def get_run_template(self, template_id: str) -> RunTemplate | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM run_templates WHERE id = ?", (template_id,)
            ).fetchone()
        return None if row is None else _template_from_row(row)

    def list_run_templates(self, limit: int) -> list[RunTemplate]:
        """Return up to ``limit`` templates, most recently updated first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM run_templates ORDER BY updated_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_template_from_row(row) for row in rows]

    def update_run_template(
        self,
        template_id: str,
        name: str,
        question_template: str,
        description: str | None,
    ) -> bool:
        """Replace a template's fields; ``True`` if the template existed."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE run_templates
                SET name = ?, question_template = ?, description = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    name,
                    question_template,
                    description,
                    encode_time(datetime.now(timezone.utc)),
                    template_id,
                ),
            )
        return cursor.rowcount > 0

    def delete_run_template(self, template_id: str) -> bool:
        """Delete a template; ``True`` if one was removed."""
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM run_templates WHERE id = ?", (template_id,))
        return cursor.rowcount > 0