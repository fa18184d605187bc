"""Source annotations and per-domain reputation scores."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_time


@dataclass
class SourceAnnotation:
    id: str
    source_id: str
    run_id: str
    selected_text: str
    annotation_markdown: str
    tag: str | None
    created_at: datetime
    updated_at: datetime


@dataclass
class SourceReputation:
    id: str
    domain: str
    reputation_score: float
    total_citations: int
    successful_citations: int
    failed_citations: int
    avg_evidence_quality: float | None
    source_type: str | None
    bias_rating: str | None
    reliability_tier: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


def _now() -> str:
    return encode_time(datetime.now(timezone.utc))


def _annotation_from_row(row: sqlite3.Row) -> SourceAnnotation:
    return SourceAnnotation(
        id=row["id"],
        source_id=row["source_id"],
        run_id=row["run_id"],
        selected_text=row["selected_text"],
        annotation_markdown=row["annotation_markdown"],
        tag=row["tag"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


def _reputation_from_row(row: sqlite3.Row) -> SourceReputation:
    return SourceReputation(
        id=row["id"],
        domain=row["domain"],
        reputation_score=row["reputation_score"],
        total_citations=row["total_citations"],
        successful_citations=row["successful_citations"],
        failed_citations=row["failed_citations"],
        avg_evidence_quality=row["avg_evidence_quality"],
        source_type=row["source_type"],
        bias_rating=row["bias_rating"],
        reliability_tier=row["reliability_tier"],
        notes=row["notes"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


class SourceQualityRepository:
    """Persistence for user annotations on sources and domain reputation."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def create_source_annotation(
        self,
        source_id: str,
        run_id: str,
        selected_text: str,
        annotation_markdown: str,
        tag: str | None,
    ) -> SourceAnnotation:
        """Attach an annotation to a passage of a source."""
        annotation_id = str(uuid.uuid4())
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO source_annotations
                    (id, source_id, run_id, selected_text, annotation_markdown, tag,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (annotation_id, source_id, run_id, selected_text, annotation_markdown,
                 tag, now, now),
            )
        annotation = self._get_source_annotation(annotation_id)
        if annotation is None:
            raise LookupError("source annotation missing after insert")
        return annotation

    def list_source_annotations(self, source_id: str) -> list[SourceAnnotation]:
        """Return a source's annotations, newest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM source_annotations WHERE source_id = ? "
                "ORDER BY created_at DESC",
                (source_id,),
            ).fetchall()
        return [_annotation_from_row(row) for row in rows]

    def delete_source_annotation(self, source_id: str, annotation_id: str) -> bool:
        """Delete an annotation of the given source. ``False`` if none matched."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM source_annotations WHERE source_id = ? AND id = ?",
                (source_id, annotation_id),
            )
        return cursor.rowcount > 0

    def _get_source_annotation(self, annotation_id: str) -> SourceAnnotation | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM source_annotations WHERE id = ?", (annotation_id,)
            ).fetchone()
        return None if row is None else _annotation_from_row(row)

    def upsert_source_reputation(
        self,
        domain: str,
        reputation_score: float,
        total_citations: int,
        successful_citations: int,
        failed_citations: int,
    ) -> SourceReputation:
        """Create or update the reputation row for a domain."""
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO source_reputation
                    (id, domain, reputation_score, total_citations, successful_citations,
                     failed_citations, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(domain) DO UPDATE SET
                    reputation_score = excluded.reputation_score,
                    total_citations = excluded.total_citations,
                    successful_citations = excluded.successful_citations,
                    failed_citations = excluded.failed_citations,
                    updated_at = excluded.updated_at
                """,
                (str(uuid.uuid4()), domain, reputation_score, total_citations,
                 successful_citations, failed_citations, now, now),
            )
        reputation = self.get_source_reputation(domain)
        if reputation is None:
            raise LookupError("source reputation missing")
        return reputation

    def get_source_reputation(self, domain: str) -> SourceReputation | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM source_reputation WHERE domain = ?", (domain,)
            ).fetchone()
        return None if row is None else _reputation_from_row(row)

    def list_top_source_reputations(self, limit: int) -> list[SourceReputation]:
        """Return up to ``limit`` domains, most reputable first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM source_reputation ORDER BY reputation_score DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_reputation_from_row(row) for row in rows]