"""SQLite access, schema migrations and shared row-encoding helpers."""

from __future__ import annotations

import re
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timezone

_MIGRATIONS: tuple[tuple[str, str], ...] = (
    (
        "0001_research.sql",
        """
        CREATE TABLE runs (
            id TEXT PRIMARY KEY,
            ticker TEXT NOT NULL,
            question TEXT NOT NULL,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            final_iteration_number INTEGER,
            final_memo_markdown TEXT,
            final_memo_html TEXT,
            summary TEXT
        );
        CREATE INDEX idx_runs_ticker_created ON runs (ticker, created_at);

        CREATE TABLE iterations (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL REFERENCES runs (id) ON DELETE CASCADE,
            iteration_number INTEGER NOT NULL,
            status TEXT NOT NULL,
            plan_markdown TEXT,
            draft_markdown TEXT,
            critique_markdown TEXT,
            evaluation_json TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (run_id, iteration_number)
        );

        CREATE TABLE events (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL REFERENCES runs (id) ON DELETE CASCADE,
            iteration_id TEXT REFERENCES iterations (id) ON DELETE SET NULL,
            event_type TEXT NOT NULL,
            message TEXT NOT NULL,
            payload_json TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE search_queries (
            id TEXT PRIMARY KEY,
            iteration_id TEXT NOT NULL REFERENCES iterations (id) ON DELETE CASCADE,
            query_text TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE search_results (
            id TEXT PRIMARY KEY,
            iteration_id TEXT NOT NULL REFERENCES iterations (id) ON DELETE CASCADE,
            query_id TEXT NOT NULL,
            title TEXT,
            url TEXT NOT NULL,
            snippet TEXT,
            rank_score REAL,
            source_type TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE sources (
            id TEXT PRIMARY KEY,
            run_id TEXT NOT NULL REFERENCES runs (id) ON DELETE CASCADE,
            iteration_id TEXT REFERENCES iterations (id) ON DELETE CASCADE,
            url TEXT NOT NULL,
            title TEXT,
            domain TEXT,
            published_at TEXT,
            source_type TEXT,
            raw_text TEXT,
            excerpt TEXT,
            quality_score REAL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE evidence_notes (
            id TEXT PRIMARY KEY,
            iteration_id TEXT NOT NULL REFERENCES iterations (id) ON DELETE CASCADE,
            source_id TEXT NOT NULL REFERENCES sources (id) ON DELETE CASCADE,
            note_markdown TEXT NOT NULL,
            claim_type TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE source_annotations (
            id TEXT PRIMARY KEY,
            source_id TEXT NOT NULL REFERENCES sources (id) ON DELETE CASCADE,
            run_id TEXT NOT NULL REFERENCES runs (id) ON DELETE CASCADE,
            selected_text TEXT NOT NULL,
            annotation_markdown TEXT NOT NULL,
            tag TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE source_reputation (
            id TEXT PRIMARY KEY,
            domain TEXT NOT NULL UNIQUE,
            reputation_score REAL NOT NULL,
            total_citations INTEGER NOT NULL DEFAULT 0,
            successful_citations INTEGER NOT NULL DEFAULT 0,
            failed_citations INTEGER NOT NULL DEFAULT 0,
            avg_evidence_quality REAL,
            source_type TEXT,
            bias_rating TEXT,
            reliability_tier TEXT,
            notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE bookmarks (
            id TEXT PRIMARY KEY,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            title TEXT NOT NULL,
            note TEXT,
            target_path TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (entity_type, entity_id)
        );

        CREATE TABLE run_templates (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            question_template TEXT NOT NULL,
            description TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """,
    ),
    (
        "0002_portfolios_prices.sql",
        """
        CREATE TABLE price_snapshots (
            id TEXT PRIMARY KEY,
            ticker TEXT NOT NULL,
            price_date TEXT NOT NULL,
            open_price REAL NOT NULL,
            close_price REAL NOT NULL,
            high_price REAL,
            low_price REAL,
            volume INTEGER,
            adjusted_close REAL,
            source TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (ticker, price_date)
        );

        CREATE TABLE portfolios (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            cash_balance REAL NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE positions (
            id TEXT PRIMARY KEY,
            portfolio_id TEXT NOT NULL REFERENCES portfolios (id) ON DELETE CASCADE,
            ticker TEXT NOT NULL,
            shares REAL NOT NULL,
            cost_basis_per_share REAL NOT NULL,
            total_cost REAL NOT NULL,
            opened_at TEXT NOT NULL,
            closed_at TEXT,
            notes TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE transactions (
            id TEXT PRIMARY KEY,
            portfolio_id TEXT NOT NULL REFERENCES portfolios (id) ON DELETE CASCADE,
            ticker TEXT NOT NULL,
            transaction_type TEXT NOT NULL,
            shares REAL NOT NULL,
            price_per_share REAL NOT NULL,
            total_amount REAL NOT NULL,
            executed_at TEXT NOT NULL,
            notes TEXT,
            created_at TEXT NOT NULL
        );
        """,
    ),
    (
        "0003_batches_comparisons.sql",
        """
        CREATE TABLE batch_jobs (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            question_template TEXT NOT NULL,
            status TEXT NOT NULL,
            summary TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE batch_job_runs (
            id TEXT PRIMARY KEY,
            batch_job_id TEXT NOT NULL REFERENCES batch_jobs (id) ON DELETE CASCADE,
            run_id TEXT NOT NULL,
            ticker TEXT NOT NULL,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );

        CREATE TABLE comparisons (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            question TEXT NOT NULL,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            final_comparison_html TEXT,
            summary TEXT
        );

        CREATE TABLE comparison_runs (
            id TEXT PRIMARY KEY,
            comparison_id TEXT NOT NULL REFERENCES comparisons (id) ON DELETE CASCADE,
            run_id TEXT NOT NULL,
            ticker TEXT NOT NULL,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );
        """,
    ),
    (
        "0004_scanner.sql",
        """
        CREATE TABLE scanner_configs (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            universe_filter TEXT NOT NULL,
            sector_filter TEXT,
            min_market_cap REAL,
            max_market_cap REAL,
            max_opportunities INTEGER NOT NULL,
            signal_weights_json TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE scan_runs (
            id TEXT PRIMARY KEY,
            config_id TEXT REFERENCES scanner_configs (id) ON DELETE SET NULL,
            status TEXT NOT NULL,
            tickers_scanned INTEGER NOT NULL DEFAULT 0,
            opportunities_found INTEGER NOT NULL DEFAULT 0,
            started_at TEXT,
            completed_at TEXT,
            error_message TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE scan_opportunities (
            id TEXT PRIMARY KEY,
            scan_run_id TEXT NOT NULL REFERENCES scan_runs (id) ON DELETE CASCADE,
            ticker TEXT NOT NULL,
            overall_score REAL NOT NULL,
            signal_strength_score REAL NOT NULL,
            thesis_quality_score REAL,
            coverage_gap_score REAL NOT NULL,
            timing_score REAL NOT NULL,
            signals_json TEXT NOT NULL,
            preliminary_thesis_markdown TEXT,
            preliminary_thesis_html TEXT,
            key_catalysts TEXT,
            risk_factors TEXT,
            promoted_to_run_id TEXT,
            status TEXT NOT NULL DEFAULT 'new',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE signal_effectiveness (
            id TEXT PRIMARY KEY,
            signal_type TEXT NOT NULL,
            signal_date TEXT NOT NULL,
            ticker TEXT NOT NULL,
            signal_strength REAL NOT NULL,
            signal_description TEXT,
            outcome_type TEXT,
            return_7d REAL,
            return_30d REAL,
            return_90d REAL,
            was_predictive INTEGER,
            thesis_run_id TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (signal_type, signal_date, ticker)
        );
        """,
    ),
    (
        "0005_watchlist_schedules.sql",
        """
        CREATE TABLE watchlists (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
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

        CREATE TABLE scheduled_runs (
            id TEXT PRIMARY KEY,
            watchlist_id TEXT NOT NULL REFERENCES watchlists (id) ON DELETE CASCADE,
            ticker TEXT NOT NULL,
            run_id TEXT NOT NULL,
            scheduled_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            error_message TEXT
        );
        """,
    ),
)

_MEMORY = ":memory:"


class DatabaseCore:
    """Owns the SQLite file (or in-memory database) and its schema.

    An in-memory database is a single shared connection guarded by a lock,
    since every new in-memory connection would be a different database.
    File databases open a connection per use.
    """

    def __init__(self, database_url: str) -> None:
        self.path = normalize_database_url(database_url)
        self._lock = threading.RLock()
        self._shared: sqlite3.Connection | None = None
        if self.path == _MEMORY:
            self._shared = self._open()
        self._run_migrations()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path, timeout=5.0, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield an autocommitting connection with rows as ``sqlite3.Row``."""
        if self._shared is not None:
            with self._lock:
                yield self._shared
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a transaction, rolled back on error."""
        with self.connection() as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def applied_migrations(self) -> list[str]:
        """Return the versions of all applied migrations, in order."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT version FROM schema_migrations ORDER BY version"
            ).fetchall()
        return [row["version"] for row in rows]

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    def __enter__(self) -> DatabaseCore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run_migrations(self) -> None:
        with self.connection() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations (version TEXT PRIMARY KEY)"
            )
            for version, sql in sorted(_MIGRATIONS):
                applied = conn.execute(
                    "SELECT 1 FROM schema_migrations WHERE version = ?", (version,)
                ).fetchone()
                if applied is not None:
                    continue
                conn.executescript(sql)
                conn.execute(
                    "INSERT INTO schema_migrations (version) VALUES (?)", (version,)
                )


def normalize_database_url(database_url: str) -> str:
    """Turn a ``sqlite:`` URL into a path SQLite can open."""
    if database_url in ("sqlite::memory:", _MEMORY):
        return _MEMORY
    for prefix in ("sqlite://", "sqlite:"):
        if database_url.startswith(prefix):
            return database_url[len(prefix):]
    return database_url


def encode_time(value: datetime) -> str:
    """Encode a timestamp as RFC 3339 in UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="microseconds")


_FRACTION = re.compile(r"\.(\d+)")


def _normalize_fraction(match: re.Match[str]) -> str:
    return "." + (match.group(1) + "000000")[:6]


def parse_time(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Raises :class:`ValueError` if the text is malformed or has no offset.
    """
    text = value
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(_normalize_fraction, text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp has no UTC offset: {value!r}")
    return parsed.astimezone(timezone.utc)


def parse_time_opt(value: str | None) -> datetime | None:
    """Like :func:`parse_time`, but ``None`` for missing or malformed input."""
    if value is None:
        return None
    try:
        return parse_time(value)
    except ValueError:
        return None


def parse_date(value: str | None) -> date | None:
    """Parse a ``YYYY-MM-DD`` date, returning ``None`` if missing or malformed."""
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None