"""Search queries, search results, sources and evidence notes.

These four tables form the evidence-gathering path of an iteration. The
batch inserts fold many rows into one transaction so a whole iteration's
writes cost a single commit.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_time
from autothesis.db.runs import Iteration, RunRepository


@dataclass(frozen=True)
class RankedInsert:
    """A ranked search hit to be stored as both a search result and a source."""

    query_id: str
    title: str | None
    url: str
    domain: str | None
    snippet: str | None
    rank_score: float
    source_type: str


@dataclass(frozen=True)
class EvidenceNoteInsert:
    """An evidence note to be stored by :meth:`SearchRepository.insert_evidence_notes_batch`."""

    source_id: str
    note_markdown: str
    claim_type: str | None = None


@dataclass
class SearchQueryRecord:
    id: str
    iteration_id: str
    query_text: str
    created_at: datetime


@dataclass
class SearchResultRecord:
    id: str
    iteration_id: str
    query_id: str
    title: str | None
    url: str
    snippet: str | None
    rank_score: float | None
    source_type: str | None
    created_at: datetime


@dataclass
class SourceRecord:
    id: str
    run_id: str
    iteration_id: str | None
    url: str
    title: str | None
    domain: str | None
    published_at: datetime | None
    source_type: str | None
    raw_text: str | None
    excerpt: str | None
    quality_score: float | None
    created_at: datetime


@dataclass
class EvidenceNoteRecord:
    id: str
    iteration_id: str
    source_id: str
    note_markdown: str
    claim_type: str | None
    created_at: datetime


@dataclass
class IterationDetail:
    """An iteration together with everything gathered during it."""

    iteration: Iteration
    search_queries: list[SearchQueryRecord] = field(default_factory=list)
    search_results: list[SearchResultRecord] = field(default_factory=list)
    sources: list[SourceRecord] = field(default_factory=list)
    evidence_notes: list[EvidenceNoteRecord] = field(default_factory=list)


_INSERT_QUERY = (
    "INSERT INTO search_queries (id, iteration_id, query_text, created_at) VALUES (?, ?, ?, ?)"
)
_INSERT_RESULT = """
    INSERT INTO search_results
        (id, iteration_id, query_id, title, url, snippet, rank_score, source_type, created_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""
_INSERT_SOURCE = """
    INSERT INTO sources
        (id, run_id, iteration_id, url, title, domain, published_at, source_type,
         raw_text, excerpt, quality_score, created_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""
_INSERT_NOTE = """
    INSERT INTO evidence_notes (id, iteration_id, source_id, note_markdown, claim_type, created_at)
    VALUES (?, ?, ?, ?, ?, ?)
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _optional_time(value: datetime | None) -> str | None:
    return None if value is None else encode_time(value)


def _query_from_row(row: sqlite3.Row) -> SearchQueryRecord:
    return SearchQueryRecord(
        id=row["id"],
        iteration_id=row["iteration_id"],
        query_text=row["query_text"],
        created_at=parse_time(row["created_at"]),
    )


def _result_from_row(row: sqlite3.Row) -> SearchResultRecord:
    return SearchResultRecord(
        id=row["id"],
        iteration_id=row["iteration_id"],
        query_id=row["query_id"],
        title=row["title"],
        url=row["url"],
        snippet=row["snippet"],
        rank_score=row["rank_score"],
        source_type=row["source_type"],
        created_at=parse_time(row["created_at"]),
    )


def _source_from_row(row: sqlite3.Row) -> SourceRecord:
    published = row["published_at"]
    return SourceRecord(
        id=row["id"],
        run_id=row["run_id"],
        iteration_id=row["iteration_id"],
        url=row["url"],
        title=row["title"],
        domain=row["domain"],
        published_at=None if published is None else parse_time(published),
        source_type=row["source_type"],
        raw_text=row["raw_text"],
        excerpt=row["excerpt"],
        quality_score=row["quality_score"],
        created_at=parse_time(row["created_at"]),
    )


def _note_from_row(row: sqlite3.Row) -> EvidenceNoteRecord:
    return EvidenceNoteRecord(
        id=row["id"],
        iteration_id=row["iteration_id"],
        source_id=row["source_id"],
        note_markdown=row["note_markdown"],
        claim_type=row["claim_type"],
        created_at=parse_time(row["created_at"]),
    )


def _source_params(source: SourceRecord) -> tuple[object, ...]:
    return (
        source.id,
        source.run_id,
        source.iteration_id,
        source.url,
        source.title,
        source.domain,
        _optional_time(source.published_at),
        source.source_type,
        source.raw_text,
        source.excerpt,
        source.quality_score,
        encode_time(source.created_at),
    )


class SearchRepository:
    """Persistence for the evidence an iteration gathers."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def insert_search_query(self, iteration_id: str, query_text: str) -> SearchQueryRecord:
        record = SearchQueryRecord(_new_id(), iteration_id, query_text, _utcnow())
        with self._db.connection() as conn:
            conn.execute(
                _INSERT_QUERY,
                (record.id, record.iteration_id, record.query_text, encode_time(record.created_at)),
            )
        return record

    def list_search_queries(self, iteration_id: str) -> list[SearchQueryRecord]:
        """Return an iteration's queries, oldest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM search_queries WHERE iteration_id = ? ORDER BY created_at ASC",
                (iteration_id,),
            ).fetchall()
        return [_query_from_row(row) for row in rows]

    def insert_search_queries_batch(
        self, iteration_id: str, query_texts: Iterable[str]
    ) -> list[SearchQueryRecord]:
        """Insert many queries for one iteration in a single transaction."""
        texts = list(query_texts)
        if not texts:
            return []
        records: list[SearchQueryRecord] = []
        with self._db.transaction() as conn:
            for text in texts:
                record = SearchQueryRecord(_new_id(), iteration_id, text, _utcnow())
                conn.execute(
                    _INSERT_QUERY,
                    (record.id, record.iteration_id, record.query_text,
                     encode_time(record.created_at)),
                )
                records.append(record)
        return records

    def insert_search_result(
        self,
        iteration_id: str,
        query_id: str,
        title: str | None,
        url: str,
        snippet: str | None,
        rank_score: float | None,
        source_type: str | None,
    ) -> SearchResultRecord:
        record = SearchResultRecord(
            id=_new_id(),
            iteration_id=iteration_id,
            query_id=query_id,
            title=title,
            url=url,
            snippet=snippet,
            rank_score=rank_score,
            source_type=source_type,
            created_at=_utcnow(),
        )
        with self._db.connection() as conn:
            conn.execute(
                _INSERT_RESULT,
                (
                    record.id,
                    record.iteration_id,
                    record.query_id,
                    record.title,
                    record.url,
                    record.snippet,
                    record.rank_score,
                    record.source_type,
                    encode_time(record.created_at),
                ),
            )
        return record

    def list_search_results(self, iteration_id: str) -> list[SearchResultRecord]:
        """Return an iteration's results, best ranked first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM search_results WHERE iteration_id = ? "
                "ORDER BY rank_score DESC, created_at ASC",
                (iteration_id,),
            ).fetchall()
        return [_result_from_row(row) for row in rows]

    def insert_source(
        self,
        run_id: str,
        iteration_id: str | None,
        url: str,
        title: str | None,
        domain: str | None,
        excerpt: str | None,
        quality_score: float | None,
        source_type: str | None,
    ) -> SourceRecord:
        source = SourceRecord(
            id=_new_id(),
            run_id=run_id,
            iteration_id=iteration_id,
            url=url,
            title=title,
            domain=domain,
            published_at=None,
            source_type=source_type,
            raw_text=None,
            excerpt=excerpt,
            quality_score=quality_score,
            created_at=_utcnow(),
        )
        with self._db.connection() as conn:
            conn.execute(_INSERT_SOURCE, _source_params(source))
        return source

    def insert_search_results_and_sources_batch(
        self, run_id: str, iteration_id: str, items: Iterable[RankedInsert]
    ) -> list[SourceRecord]:
        """Store each ranked hit as a search result and a source, in one transaction."""
        ranked = list(items)
        if not ranked:
            return []
        sources: list[SourceRecord] = []
        with self._db.transaction() as conn:
            for item in ranked:
                now = _utcnow()
                conn.execute(
                    _INSERT_RESULT,
                    (
                        _new_id(),
                        iteration_id,
                        item.query_id,
                        item.title,
                        item.url,
                        item.snippet,
                        item.rank_score,
                        item.source_type,
                        encode_time(now),
                    ),
                )
                source = SourceRecord(
                    id=_new_id(),
                    run_id=run_id,
                    iteration_id=iteration_id,
                    url=item.url,
                    title=item.title,
                    domain=item.domain,
                    published_at=None,
                    source_type=item.source_type,
                    raw_text=None,
                    excerpt=item.snippet,
                    quality_score=item.rank_score,
                    created_at=now,
                )
                conn.execute(_INSERT_SOURCE, _source_params(source))
                sources.append(source)
        return sources

    def update_source_content(
        self,
        source_id: str,
        title: str | None,
        domain: str | None,
        raw_text: str | None,
        excerpt: str | None,
        quality_score: float | None,
        source_type: str | None,
        published_at: datetime | None,
    ) -> None:
        """Replace a source's fetched content and metadata."""
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE sources
                SET title = ?, domain = ?, raw_text = ?, excerpt = ?, quality_score = ?,
                    source_type = ?, published_at = ?
                WHERE id = ?
                """,
                (
                    title,
                    domain,
                    raw_text,
                    excerpt,
                    quality_score,
                    source_type,
                    _optional_time(published_at),
                    source_id,
                ),
            )

    def list_sources(self, iteration_id: str) -> list[SourceRecord]:
        """Return an iteration's sources, highest quality first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sources WHERE iteration_id = ? "
                "ORDER BY quality_score DESC, created_at ASC",
                (iteration_id,),
            ).fetchall()
        return [_source_from_row(row) for row in rows]

    def get_source(self, source_id: str) -> SourceRecord | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return None if row is None else _source_from_row(row)

    def list_sources_for_run(self, run_id: str) -> list[SourceRecord]:
        """Return all of a run's sources, highest quality first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sources WHERE run_id = ? "
                "ORDER BY quality_score DESC, created_at ASC",
                (run_id,),
            ).fetchall()
        return [_source_from_row(row) for row in rows]

    def insert_evidence_note(
        self,
        iteration_id: str,
        source_id: str,
        note_markdown: str,
        claim_type: str | None,
    ) -> EvidenceNoteRecord:
        note = EvidenceNoteRecord(
            _new_id(), iteration_id, source_id, note_markdown, claim_type, _utcnow()
        )
        with self._db.connection() as conn:
            conn.execute(
                _INSERT_NOTE,
                (note.id, note.iteration_id, note.source_id, note.note_markdown,
                 note.claim_type, encode_time(note.created_at)),
            )
        return note

    def insert_evidence_notes_batch(
        self, iteration_id: str, notes: Iterable[EvidenceNoteInsert]
    ) -> list[EvidenceNoteRecord]:
        """Insert every evidence note for an iteration in one transaction."""
        pending = list(notes)
        if not pending:
            return []
        records: list[EvidenceNoteRecord] = []
        with self._db.transaction() as conn:
            for item in pending:
                record = EvidenceNoteRecord(
                    _new_id(),
                    iteration_id,
                    item.source_id,
                    item.note_markdown,
                    item.claim_type,
                    _utcnow(),
                )
                conn.execute(
                    _INSERT_NOTE,
                    (record.id, record.iteration_id, record.source_id, record.note_markdown,
                     record.claim_type, encode_time(record.created_at)),
                )
                records.append(record)
        return records

    def list_evidence_notes(self, iteration_id: str) -> list[EvidenceNoteRecord]:
        """Return an iteration's evidence notes, oldest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM evidence_notes WHERE iteration_id = ? ORDER BY created_at ASC",
                (iteration_id,),
            ).fetchall()
        return [_note_from_row(row) for row in rows]

    def get_iteration_detail(self, run_id: str, iteration_number: int) -> IterationDetail | None:
        """Gather an iteration and all its evidence, or ``None`` if it does not exist."""
        iteration = RunRepository(self._db).get_iteration_by_number(run_id, iteration_number)
        if iteration is None:
            return None
        return IterationDetail(
            iteration=iteration,
            search_queries=self.list_search_queries(iteration.id),
            search_results=self.list_search_results(iteration.id),
            sources=self.list_sources(iteration.id),
            evidence_notes=self.list_evidence_notes(iteration.id),
        )