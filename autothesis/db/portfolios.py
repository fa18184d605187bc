"""Paper-trading portfolios, their open and closed positions, and transactions."""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone

from autothesis.db.core import DatabaseCore, encode_time, parse_date, parse_time


@dataclass
class Portfolio:
    id: str
    name: str
    description: str | None
    cash_balance: float
    created_at: datetime
    updated_at: datetime


@dataclass
class Position:
    id: str
    portfolio_id: str
    ticker: str
    shares: float
    cost_basis_per_share: float
    total_cost: float
    opened_at: date
    closed_at: date | None
    notes: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


@dataclass
class Transaction:
    id: str
    portfolio_id: str
    ticker: str
    transaction_type: str
    shares: float
    price_per_share: float
    total_amount: float
    executed_at: date
    notes: str | None
    created_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _today() -> date:
    return _utcnow().date()


def _portfolio_from_row(row: sqlite3.Row) -> Portfolio:
    return Portfolio(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        cash_balance=row["cash_balance"],
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


def _position_from_row(row: sqlite3.Row) -> Position:
    return Position(
        id=row["id"],
        portfolio_id=row["portfolio_id"],
        ticker=row["ticker"],
        shares=row["shares"],
        cost_basis_per_share=row["cost_basis_per_share"],
        total_cost=row["total_cost"],
        opened_at=parse_date(row["opened_at"]) or _today(),
        closed_at=parse_date(row["closed_at"]),
        notes=row["notes"],
        is_active=row["is_active"] == 1,
        created_at=parse_time(row["created_at"]),
        updated_at=parse_time(row["updated_at"]),
    )


def _transaction_from_row(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        portfolio_id=row["portfolio_id"],
        ticker=row["ticker"],
        transaction_type=row["transaction_type"],
        shares=row["shares"],
        price_per_share=row["price_per_share"],
        total_amount=row["total_amount"],
        executed_at=parse_date(row["executed_at"]) or _today(),
        notes=row["notes"],
        created_at=parse_time(row["created_at"]),
    )


class PortfolioRepository:
    """Persistence for portfolios, positions and the transaction ledger."""

    def __init__(self, db: DatabaseCore) -> None:
        self._db = db

    def list_portfolios(self, limit: int) -> list[Portfolio]:
        """Return up to ``limit`` portfolios, most recently updated first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM portfolios ORDER BY updated_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_portfolio_from_row(row) for row in rows]

    def get_portfolio(self, portfolio_id: str) -> Portfolio | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM portfolios WHERE id = ?", (portfolio_id,)
            ).fetchone()
        return None if row is None else _portfolio_from_row(row)

    def create_portfolio(
        self, name: str, description: str | None, cash_balance: float
    ) -> Portfolio:
        now = _utcnow()
        portfolio = Portfolio(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            cash_balance=cash_balance,
            created_at=now,
            updated_at=now,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO portfolios (id, name, description, cash_balance, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    portfolio.id,
                    portfolio.name,
                    portfolio.description,
                    portfolio.cash_balance,
                    encode_time(portfolio.created_at),
                    encode_time(portfolio.updated_at),
                ),
            )
        return portfolio

    def update_portfolio(
        self,
        portfolio_id: str,
        name: str,
        description: str | None,
        cash_balance: float,
    ) -> bool:
        """Update a portfolio. Returns ``False`` if it does not exist."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE portfolios SET name = ?, description = ?, cash_balance = ?, "
                "updated_at = ? WHERE id = ?",
                (name, description, cash_balance, encode_time(_utcnow()), portfolio_id),
            )
        return cursor.rowcount > 0

    def delete_portfolio(self, portfolio_id: str) -> bool:
        """Delete a portfolio. Returns ``False`` if it does not exist."""
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM portfolios WHERE id = ?", (portfolio_id,))
        return cursor.rowcount > 0

    def list_positions(self, portfolio_id: str) -> list[Position]:
        """Return all of a portfolio's positions, most recently opened first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM positions WHERE portfolio_id = ? ORDER BY opened_at DESC",
                (portfolio_id,),
            ).fetchall()
        return [_position_from_row(row) for row in rows]

    def count_active_positions_by_portfolio(self) -> dict[str, int]:
        """Map portfolio id to its number of active positions, in one query."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT portfolio_id, COUNT(*) AS n FROM positions "
                "WHERE is_active = 1 GROUP BY portfolio_id"
            ).fetchall()
        return {row["portfolio_id"]: row["n"] for row in rows}

    def list_active_positions(self, portfolio_id: str) -> list[Position]:
        """Return a portfolio's open positions, most recently opened first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM positions WHERE portfolio_id = ? AND is_active = 1 "
                "ORDER BY opened_at DESC",
                (portfolio_id,),
            ).fetchall()
        return [_position_from_row(row) for row in rows]

    def get_position(self, position_id: str) -> Position | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM positions WHERE id = ?", (position_id,)
            ).fetchone()
        return None if row is None else _position_from_row(row)

    def create_position(
        self,
        portfolio_id: str,
        ticker: str,
        shares: float,
        cost_basis_per_share: float,
        opened_at: date,
        notes: str | None,
    ) -> Position:
        """Open a position and record the matching ``buy`` transaction."""
        now = _utcnow()
        position = Position(
            id=str(uuid.uuid4()),
            portfolio_id=portfolio_id,
            ticker=ticker.upper(),
            shares=shares,
            cost_basis_per_share=cost_basis_per_share,
            total_cost=shares * cost_basis_per_share,
            opened_at=opened_at,
            closed_at=None,
            notes=notes,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO positions (id, portfolio_id, ticker, shares, cost_basis_per_share,
                    total_cost, opened_at, closed_at, notes, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    position.id,
                    position.portfolio_id,
                    position.ticker,
                    position.shares,
                    position.cost_basis_per_share,
                    position.total_cost,
                    position.opened_at.isoformat(),
                    None,
                    position.notes,
                    1,
                    encode_time(position.created_at),
                    encode_time(position.updated_at),
                ),
            )
        self.create_transaction(
            portfolio_id, ticker, "buy", shares, cost_basis_per_share, opened_at, notes
        )
        return position

    def update_position(
        self,
        position_id: str,
        shares: float,
        cost_basis_per_share: float,
        notes: str | None,
    ) -> bool:
        """Change a position's size and cost basis. Returns ``False`` if absent."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE positions SET shares = ?, cost_basis_per_share = ?, total_cost = ?, "
                "notes = ?, updated_at = ? WHERE id = ?",
                (
                    shares,
                    cost_basis_per_share,
                    shares * cost_basis_per_share,
                    notes,
                    encode_time(_utcnow()),
                    position_id,
                ),
            )
        return cursor.rowcount > 0

    def close_position(self, position_id: str, closed_at: date, notes: str | None) -> bool:
        """Mark a position closed on ``closed_at``. Returns ``False`` if absent."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE positions SET is_active = 0, closed_at = ?, notes = ?, updated_at = ? "
                "WHERE id = ?",
                (closed_at.isoformat(), notes, encode_time(_utcnow()), position_id),
            )
        return cursor.rowcount > 0

    def create_transaction(
        self,
        portfolio_id: str,
        ticker: str,
        transaction_type: str,
        shares: float,
        price_per_share: float,
        executed_at: date,
        notes: str | None,
    ) -> Transaction:
        """Append a transaction to a portfolio's ledger."""
        transaction = Transaction(
            id=str(uuid.uuid4()),
            portfolio_id=portfolio_id,
            ticker=ticker.upper(),
            transaction_type=transaction_type,
            shares=shares,
            price_per_share=price_per_share,
            total_amount=shares * price_per_share,
            executed_at=executed_at,
            notes=notes,
            created_at=_utcnow(),
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO transactions (id, portfolio_id, ticker, transaction_type, shares,
                    price_per_share, total_amount, executed_at, notes, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transaction.id,
                    transaction.portfolio_id,
                    transaction.ticker,
                    transaction.transaction_type,
                    transaction.shares,
                    transaction.price_per_share,
                    transaction.total_amount,
                    transaction.executed_at.isoformat(),
                    transaction.notes,
                    encode_time(transaction.created_at),
                ),
            )
        return transaction

    def list_transactions(self, portfolio_id: str, limit: int) -> list[Transaction]:
        """Return up to ``limit`` transactions, most recently executed first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM transactions WHERE portfolio_id = ? "
                "ORDER BY executed_at DESC LIMIT ?",
                (portfolio_id, limit),
            ).fetchall()
        return [_transaction_from_row(row) for row in rows]