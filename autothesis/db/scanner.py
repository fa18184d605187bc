"""Scanner configurations, scan runs, the opportunities they surface, and
how well individual signals predicted later returns."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone

from autothesis.db.core import (
    DatabaseCore,
    encode_time,
    parse_date,
    parse_time,
    parse_time_opt,
)

_FALLBACK_DATE = date(1970, 1, 1)


@dataclass
class ScannerConfig:
    id: str
    name: str
    description: str | None
    universe_filter: str
    sector_filter: str | None
    min_market_cap: float | None
    max_market_cap: float | None
    max_opportunities: int
    signal_weights_json: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


@dataclass
class ScanRun:
    id: str
    config_id: str | None
    status: str
    tickers_scanned: int
    opportunities_found: int
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass
class ScanOpportunity:
    id: str
    scan_run_id: str
    ticker: str
    overall_score: float
    signal_strength_score: float
    thesis_quality_score: float | None
    coverage_gap_score: float
    timing_score: float
    signals_json: str
    preliminary_thesis_markdown: str | None
    preliminary_thesis_html: str | None
    key_catalysts: str | None
    risk_factors: str | None
    promoted_to_run_id: str | None
    status: str
    created_at: datetime
    updated_at: datetime


@dataclass
class SignalEffectiveness:
    id: str
    signal_type: str
    signal_date: date
    ticker: str
    signal_strength: float
    signal_description: str | None
    outcome_type: str | None
    return_7d: float | None
    return_30d: float | None
    return_90d: float | None
    was_predictive: bool | None
    thesis_run_id: str | None
    created_at: datetime


def _now() -> str:
    return encode_time(datetime.now(timezone.utc))


def _optional_time(raw: str | None) -> datetime | None:
    return None if raw is None else parse_time_opt(raw)


def _config_from_row(row: sqlite3.Row) -> ScannerConfig:
    return ScannerConfig(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        universe_filter=row["universe_filter"],
        sector_filter=row["sector_filter"],
        min_market_cap=row["min_market_cap"],
        max_market_cap=row["max_market_cap"],
        max_opportunities=row["max_opportunities"],
        signal_weights_json=row["signal_weights_json"],
        is_active=row["is_active"] > 0,
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


def _scan_run_from_row(row: sqlite3.Row) -> ScanRun:
    return ScanRun(
        id=row["id"],
        config_id=row["config_id"],
        status=row["status"],
        tickers_scanned=row["tickers_scanned"],
        opportunities_found=row["opportunities_found"],
        started_at=_optional_time(row["started_at"]),
        completed_at=_optional_time(row["completed_at"]),
        error_message=row["error_message"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


def _opportunity_from_row(row: sqlite3.Row) -> ScanOpportunity:
    return ScanOpportunity(
        id=row["id"],
        scan_run_id=row["scan_run_id"],
        ticker=row["ticker"],
        overall_score=row["overall_score"],
        signal_strength_score=row["signal_strength_score"],
        thesis_quality_score=row["thesis_quality_score"],
        coverage_gap_score=row["coverage_gap_score"],
        timing_score=row["timing_score"],
        signals_json=row["signals_json"],
        preliminary_thesis_markdown=row["preliminary_thesis_markdown"],
        preliminary_thesis_html=row["preliminary_thesis_html"],
        key_catalysts=row["key_catalysts"],
        risk_factors=row["risk_factors"],
        promoted_to_run_id=row["promoted_to_run_id"],
        status=row["status"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


def _effectiveness_from_row(row: sqlite3.Row) -> SignalEffectiveness:
    predictive = row["was_predictive"]
    return SignalEffectiveness(
        id=row["id"],
        signal_type=row["signal_type"],
        signal_date=parse_date(row["signal_date"]) or _FALLBACK_DATE,
        ticker=row["ticker"],
        signal_strength=row["signal_strength"],
        signal_description=row["signal_description"],
        outcome_type=row["outcome_type"],
        return_7d=row["return_7d"],
        return_30d=row["return_30d"],
        return_90d=row["return_90d"],
        was_predictive=None if predictive is None else predictive > 0,
        thesis_run_id=row["thesis_run_id"],
        created_at=parse_time(row["created_at"]),
    )


class ScannerRepository:
    """Persistence for the opportunity scanner."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def create_scanner_config(
        self,
        name: str,
        description: str | None,
        universe_filter: str,
        sector_filter: str | None,
        min_market_cap: float | None,
        max_market_cap: float | None,
        max_opportunities: int,
        signal_weights_json: str | None,
    ) -> ScannerConfig:
        """Insert an active scanner configuration and return it as stored."""
        config_id = str(uuid.uuid4())
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO scanner_configs
                    (id, name, description, universe_filter, sector_filter, min_market_cap,
                     max_market_cap, max_opportunities, signal_weights_json, is_active,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    config_id,
                    name,
                    description,
                    universe_filter,
                    sector_filter,
                    min_market_cap,
                    max_market_cap,
                    max_opportunities,
                    signal_weights_json,
                    now,
                    now,
                ),
            )
        config = self.get_scanner_config(config_id)
        if config is None:
            raise LookupError("scanner config missing after insert")
        return config

    def get_scanner_config(self, config_id: str) -> ScannerConfig | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM scanner_configs WHERE id = ?", (config_id,)
            ).fetchone()
        return None if row is None else _config_from_row(row)

    def get_default_scanner_config(self) -> ScannerConfig | None:
        """Return the oldest active configuration, if any."""
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM scanner_configs WHERE is_active = 1 "
                "ORDER BY created_at ASC LIMIT 1"
            ).fetchone()
        return None if row is None else _config_from_row(row)

    def list_scanner_configs(self) -> list[ScannerConfig]:
        """Return every configuration, oldest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scanner_configs ORDER BY created_at ASC"
            ).fetchall()
        return [_config_from_row(row) for row in rows]

    def create_scan_run(self, config_id: str | None) -> ScanRun:
        """Insert a queued scan run with zeroed counters."""
        scan_run_id = str(uuid.uuid4())
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO scan_runs
                    (id, config_id, status, tickers_scanned, opportunities_found,
                     created_at, updated_at)
                VALUES (?, ?, 'queued', 0, 0, ?, ?)
                """,
                (scan_run_id, config_id, now, now),
            )
        scan_run = self.get_scan_run(scan_run_id)
        if scan_run is None:
            raise LookupError("scan run missing after insert")
        return scan_run

    def get_scan_run(self, scan_run_id: str) -> ScanRun | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM scan_runs WHERE id = ?", (scan_run_id,)
            ).fetchone()
        return None if row is None else _scan_run_from_row(row)

    def set_scan_run_status(self, scan_run_id: str, status: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE scan_runs SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), scan_run_id),
            )

    def update_scan_run_progress(
        self, scan_run_id: str, tickers_scanned: int, opportunities_found: int
    ) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE scan_runs SET tickers_scanned = ?, opportunities_found = ?, "
                "updated_at = ? WHERE id = ?",
                (tickers_scanned, opportunities_found, _now(), scan_run_id),
            )

    def complete_scan_run(self, scan_run_id: str, error_message: str | None) -> None:
        """Finish a scan run: ``failed`` if an error is given, else ``completed``."""
        status = "failed" if error_message is not None else "completed"
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE scan_runs SET status = ?, completed_at = ?, error_message = ?, "
                "updated_at = ? WHERE id = ?",
                (status, now, error_message, now, scan_run_id),
            )

    def list_scan_runs(self, limit: int) -> list[ScanRun]:
        """Return up to ``limit`` scan runs, newest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scan_runs ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_scan_run_from_row(row) for row in rows]

    def create_scan_opportunity(
        self,
        scan_run_id: str,
        ticker: str,
        overall_score: float,
        signal_strength_score: float,
        thesis_quality_score: float | None,
        coverage_gap_score: float,
        timing_score: float,
        signals_json: str,
        preliminary_thesis_markdown: str | None,
        preliminary_thesis_html: str | None,
        key_catalysts: str | None,
        risk_factors: str | None,
    ) -> ScanOpportunity:
        """Insert a ``new`` opportunity found by a scan run."""
        opportunity_id = str(uuid.uuid4())
        now = _now()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO scan_opportunities
                    (id, scan_run_id, ticker, overall_score, signal_strength_score,
                     thesis_quality_score, coverage_gap_score, timing_score, signals_json,
                     preliminary_thesis_markdown, preliminary_thesis_html, key_catalysts,
                     risk_factors, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'new', ?, ?)
                """,
                (
                    opportunity_id,
                    scan_run_id,
                    ticker,
                    overall_score,
                    signal_strength_score,
                    thesis_quality_score,
                    coverage_gap_score,
                    timing_score,
                    signals_json,
                    preliminary_thesis_markdown,
                    preliminary_thesis_html,
                    key_catalysts,
                    risk_factors,
                    now,
                    now,
                ),
            )
        opportunity = self.get_scan_opportunity(opportunity_id)
        if opportunity is None:
            raise LookupError("scan opportunity missing after insert")
        return opportunity

    def get_scan_opportunity(self, opportunity_id: str) -> ScanOpportunity | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM scan_opportunities WHERE id = ?", (opportunity_id,)
            ).fetchone()
        return None if row is None else _opportunity_from_row(row)

    def list_scan_opportunities_for_run(self, scan_run_id: str) -> list[ScanOpportunity]:
        """Return a scan run's opportunities, highest overall score first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scan_opportunities WHERE scan_run_id = ? "
                "ORDER BY overall_score DESC",
                (scan_run_id,),
            ).fetchall()
        return [_opportunity_from_row(row) for row in rows]

    def list_top_scan_opportunities(self, limit: int) -> list[ScanOpportunity]:
        """Return up to ``limit`` untouched opportunities, best first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scan_opportunities WHERE status = 'new' "
                "ORDER BY overall_score DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_opportunity_from_row(row) for row in rows]

    def promote_scan_opportunity(self, opportunity_id: str, run_id: str) -> bool:
        """Link an opportunity to the research run it became. ``False`` if absent."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE scan_opportunities SET promoted_to_run_id = ?, status = 'promoted', "
                "updated_at = ? WHERE id = ?",
                (run_id, _now(), opportunity_id),
            )
        return cursor.rowcount > 0

    def dismiss_scan_opportunity(self, opportunity_id: str) -> bool:
        """Mark an opportunity dismissed. ``False`` if absent."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE scan_opportunities SET status = 'dismissed', updated_at = ? "
                "WHERE id = ?",
                (_now(), opportunity_id),
            )
        return cursor.rowcount > 0

    def create_signal_effectiveness(
        self,
        signal_type: str,
        signal_date: date,
        ticker: str,
        signal_strength: float,
        return_30d: float | None,
        was_predictive: bool | None,
    ) -> SignalEffectiveness:
        """Record how a signal fired, replacing any conflicting earlier record."""
        effectiveness_id = str(uuid.uuid4())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO signal_effectiveness
                    (id, signal_type, signal_date, ticker, signal_strength, return_30d,
                     was_predictive, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    effectiveness_id,
                    signal_type,
                    signal_date.isoformat(),
                    ticker,
                    signal_strength,
                    return_30d,
                    None if was_predictive is None else int(was_predictive),
                    _now(),
                ),
            )
        record = self.get_signal_effectiveness(effectiveness_id)
        if record is None:
            raise LookupError("signal effectiveness missing")
        return record

    def get_signal_effectiveness(self, effectiveness_id: str) -> SignalEffectiveness | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM signal_effectiveness WHERE id = ?", (effectiveness_id,)
            ).fetchone()
        return None if row is None else _effectiveness_from_row(row)