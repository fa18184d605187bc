"""Historical price snapshots: end-of-day OHLCV keyed by ticker and date."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_date, parse_time

_FALLBACK_DATE = date(1970, 1, 1)


@dataclass
class PriceSnapshot:
    id: str
    ticker: str
    price_date: date
    open_price: float
    close_price: float
    high_price: float | None
    low_price: float | None
    volume: int | None
    adjusted_close: float | None
    source: str
    created_at: datetime


def _snapshot_from_row(row: sqlite3.Row) -> PriceSnapshot:
    return PriceSnapshot(
        id=row["id"],
        ticker=row["ticker"],
        price_date=parse_date(row["price_date"]) or _FALLBACK_DATE,
        open_price=row["open_price"],
        close_price=row["close_price"],
        high_price=row["high_price"],
        low_price=row["low_price"],
        volume=row["volume"],
        adjusted_close=row["adjusted_close"],
        source=row["source"],
        created_at=parse_time(row["created_at"]),
    )


class PriceRepository:
    """Stores one price snapshot per ticker and trading day."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def create_price_snapshot(
        self,
        ticker: str,
        price_date: date,
        open_price: float,
        close_price: float,
        high_price: float | None,
        low_price: float | None,
        volume: int | None,
        adjusted_close: float | None,
        source: str,
    ) -> PriceSnapshot:
        """Store a snapshot, replacing any existing one for the same ticker and date."""
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO price_snapshots
                    (id, ticker, price_date, open_price, close_price, high_price, low_price,
                     volume, adjusted_close, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    ticker,
                    price_date.isoformat(),
                    open_price,
                    close_price,
                    high_price,
                    low_price,
                    volume,
                    adjusted_close,
                    source,
                    encode_time(datetime.now(timezone.utc)),
                ),
            )
        snapshot = self.get_price_snapshot_by_ticker_date(ticker, price_date)
        if snapshot is None:
            raise LookupError("price snapshot missing")
        return snapshot

    def get_price_snapshot_by_ticker_date(
        self, ticker: str, price_date: date
    ) -> PriceSnapshot | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM price_snapshots WHERE ticker = ? AND price_date = ?",
                (ticker, price_date.isoformat()),
            ).fetchone()
        return None if row is None else _snapshot_from_row(row)

    def get_latest_price_snapshot(self, ticker: str) -> PriceSnapshot | None:
        """Return the snapshot with the latest date for a ticker."""
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM price_snapshots WHERE ticker = ? "
                "ORDER BY price_date DESC LIMIT 1",
                (ticker,),
            ).fetchone()
        return None if row is None else _snapshot_from_row(row)