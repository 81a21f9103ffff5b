"""
Bankroll Session Repository — PostgreSQL via pg8000.

Plain CRUD over one table of live / tournament session results.
Connection-per-operation, no in-memory caching: every read hits the DB.

Normalization rules (shared by create and update):
  - type defaults to "Cash"; blank text fields are stored as NULL
  - profit is required, or derived as cash_out - buy_in
  - on update an underivable profit keeps the stored value
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import pg8000.native

_INIT_SQL = """
CREATE TABLE IF NOT EXISTS bankroll_sessions (
    id         UUID PRIMARY KEY,
    user_id    TEXT NOT NULL,
    type       TEXT NOT NULL DEFAULT 'Cash',
    start_at   TIMESTAMPTZ,
    end_at     TIMESTAMPTZ,
    hours      DOUBLE PRECISION,
    location   TEXT,
    game       TEXT,
    blinds     TEXT,
    buy_in     NUMERIC(18, 2),
    cash_out   NUMERIC(18, 2),
    profit     NUMERIC(18, 2) NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_bankroll_user_start
    ON bankroll_sessions(user_id, start_at);
"""

_COLUMNS = (
    "id, user_id, type, start_at, end_at, hours, location, game, blinds, "
    "buy_in, cash_out, profit"
)

DEFAULT_SESSION_TYPE = "Cash"


class BankrollValidationError(ValueError):
    """Request data cannot produce a valid session."""


# ---------------------------------------------------------------------------
# Domain
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BankrollSession:
    id: uuid.UUID
    user_id: str
    profit: Decimal
    type: str = DEFAULT_SESSION_TYPE
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    hours: Optional[float] = None
    location: Optional[str] = None
    game: Optional[str] = None
    blinds: Optional[str] = None
    buy_in: Optional[Decimal] = None
    cash_out: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "userId": self.user_id,
            "type": self.type,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "hours": self.hours,
            "location": self.location,
            "game": self.game,
            "blinds": self.blinds,
            "buyIn": float(self.buy_in) if self.buy_in is not None else None,
            "cashOut": float(self.cash_out) if self.cash_out is not None else None,
            "profit": float(self.profit),
        }


@dataclass(frozen=True)
class BankrollSessionInput:
    """Client-supplied fields for create and update."""

    user_id: Optional[str] = None
    type: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    hours: Optional[float] = None
    location: Optional[str] = None
    game: Optional[str] = None
    blinds: Optional[str] = None
    buy_in: Optional[Decimal] = None
    cash_out: Optional[Decimal] = None
    profit: Optional[Decimal] = None


def clean_text(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


def derive_profit(data: BankrollSessionInput) -> Optional[Decimal]:
    if data.profit is not None:
        return data.profit
    if data.buy_in is not None and data.cash_out is not None:
        return data.cash_out - data.buy_in
    return None


def new_session(data: BankrollSessionInput) -> BankrollSession:
    if not data.user_id or not data.user_id.strip():
        raise BankrollValidationError("UserId is required.")
    profit = derive_profit(data)
    if profit is None:
        raise BankrollValidationError(
            "Profit is required, or both BuyIn and CashOut must be provided."
        )
    return BankrollSession(
        id=uuid.uuid4(),
        user_id=data.user_id,
        type=clean_text(data.type) or DEFAULT_SESSION_TYPE,
        start=data.start,
        end=data.end,
        hours=data.hours,
        location=clean_text(data.location),
        game=clean_text(data.game),
        blinds=clean_text(data.blinds),
        buy_in=data.buy_in,
        cash_out=data.cash_out,
        profit=profit,
    )


def apply_update(existing: BankrollSession, data: BankrollSessionInput) -> BankrollSession:
    """
    Full replacement of the editable fields. Dates, hours and money may be
    cleared explicitly; type and profit only change when supplied/derivable.
    """
    if data.user_id and data.user_id.strip() and data.user_id != existing.user_id:
        raise BankrollValidationError("UserId mismatch for this session.")
    profit = derive_profit(data)
    return dataclasses.replace(
        existing,
        type=clean_text(data.type) or existing.type,
        start=data.start,
        end=data.end,
        hours=data.hours,
        location=clean_text(data.location),
        game=clean_text(data.game),
        blinds=clean_text(data.blinds),
        buy_in=data.buy_in,
        cash_out=data.cash_out,
        profit=profit if profit is not None else existing.profit,
    )


def _row_to_session(r) -> BankrollSession:
    return BankrollSession(
        id=r[0] if isinstance(r[0], uuid.UUID) else uuid.UUID(str(r[0])),
        user_id=r[1],
        type=r[2],
        start=r[3],
        end=r[4],
        hours=r[5],
        location=r[6],
        game=r[7],
        blinds=r[8],
        buy_in=r[9],
        cash_out=r[10],
        profit=r[11],
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class BankrollRepository:
    """
    PostgreSQL-backed bankroll store.

    Thread-safe via connection-per-operation pattern.
    """

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._ensure_schema()

    def _get_conn(self):
        # Manual parser: urlparse chokes on special chars ([], @) in passwords
        url = self._database_url.split("://", 1)[1]
        # Split at LAST @ (password may contain @)
        at_idx = url.rfind("@")
        credentials = url[:at_idx]
        host_part = url[at_idx + 1:]
        colon_idx = credentials.find(":")
        user = credentials[:colon_idx]
        password = credentials[colon_idx + 1:]
        host_port, database = host_part.split("/", 1)
        host, port_str = host_port.rsplit(":", 1)
        return pg8000.native.Connection(
            user=user,
            password=password,
            host=host,
            port=int(port_str),
            database=database or "postgres",
            ssl_context=True,
        )

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            # pg8000 native runs one statement per call
            for stmt in _INIT_SQL.split(";"):
                if stmt.strip():
                    conn.run(stmt)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: str) -> List[BankrollSession]:
        """All sessions of one user, oldest start first."""
        conn = self._get_conn()
        try:
            rows = conn.run(
                f"SELECT {_COLUMNS} FROM bankroll_sessions "
                "WHERE user_id = :uid ORDER BY start_at NULLS FIRST, id",
                uid=user_id,
            )
        finally:
            conn.close()
        return [_row_to_session(r) for r in rows]

    def get_session(self, session_id: uuid.UUID) -> Optional[BankrollSession]:
        conn = self._get_conn()
        try:
            rows = conn.run(
                f"SELECT {_COLUMNS} FROM bankroll_sessions WHERE id = :sid",
                sid=session_id,
            )
        finally:
            conn.close()
        return _row_to_session(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def create_session(self, data: BankrollSessionInput) -> BankrollSession:
        session = new_session(data)
        conn = self._get_conn()
        try:
            conn.run(
                f"""
                INSERT INTO bankroll_sessions ({_COLUMNS})
                VALUES (:id, :uid, :type, :start, :end, :hours, :loc, :game,
                        :blinds, :buy_in, :cash_out, :profit)
                """,
                **self._params(session),
            )
        finally:
            conn.close()
        return session

    def update_session(
        self, session_id: uuid.UUID, data: BankrollSessionInput,
    ) -> Optional[BankrollSession]:
        """Returns the updated session, or None if it does not exist."""
        existing = self.get_session(session_id)
        if existing is None:
            return None
        session = apply_update(existing, data)
        conn = self._get_conn()
        try:
            conn.run(
                """
                UPDATE bankroll_sessions SET
                    type = :type, start_at = :start, end_at = :end, hours = :hours,
                    location = :loc, game = :game, blinds = :blinds,
                    buy_in = :buy_in, cash_out = :cash_out, profit = :profit
                WHERE id = :id AND user_id = :uid
                """,
                **self._params(session),
            )
        finally:
            conn.close()
        return session

    def delete_session(self, session_id: uuid.UUID) -> bool:
        """Returns False when there was nothing to delete."""
        conn = self._get_conn()
        try:
            rows = conn.run(
                "DELETE FROM bankroll_sessions WHERE id = :sid RETURNING id",
                sid=session_id,
            )
        finally:
            conn.close()
        return bool(rows)

    @staticmethod
    def _params(s: BankrollSession) -> dict:
        return {
            "id": s.id,
            "uid": s.user_id,
            "type": s.type,
            "start": s.start,
            "end": s.end,
            "hours": s.hours,
            "loc": s.location,
            "game": s.game,
            "blinds": s.blinds,
            "buy_in": s.buy_in,
            "cash_out": s.cash_out,
            "profit": s.profit,
        }
