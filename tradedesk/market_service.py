"""Storage and retrieval of daily market data."""

from __future__ import annotations

import datetime as dt
from dataclasses import replace
from typing import Any, Iterable, Sequence

from .database import Database, DatabaseError
from .logger import bind
from .models import MarketData, Source

_COLUMNS = ("symbol", "date", "open", "high", "low", "close", "volume", "source")

_SELECT = (
    "SELECT id, symbol, date, open, high, low, close, volume, source, created_at "
    "FROM market_data"
)

_INSERT = (
    "INSERT INTO market_data (symbol, date, open, high, low, close, volume, source) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
)

_UPSERT = _INSERT + (
    " ON CONFLICT (symbol, date, source) DO UPDATE SET "
    "open = excluded.open, "
    "high = excluded.high, "
    "low = excluded.low, "
    "close = excluded.close, "
    "volume = excluded.volume"
)


def _as_date(value: Any) -> Any:
    if isinstance(value, dt.datetime):
        return value.date()
    return value


def _parse_date(value: Any) -> dt.date:
    if isinstance(value, dt.date):
        return _as_date(value)
    return dt.date.fromisoformat(str(value)[:10])


def _parse_timestamp(value: Any) -> dt.datetime | None:
    if value is None or value == "":
        return None
    moment = value if isinstance(value, dt.datetime) else dt.datetime.fromisoformat(str(value))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return moment


def _from_row(row: Any) -> MarketData:
    return MarketData(
        id=int(row["id"]),
        symbol=row["symbol"],
        date=_parse_date(row["date"]),
        open=float(row["open"] or 0.0),
        high=float(row["high"] or 0.0),
        low=float(row["low"] or 0.0),
        close=float(row["close"] or 0.0),
        volume=int(row["volume"] or 0),
        source=Source(row["source"]),
        created_at=_parse_timestamp(row["created_at"]),
    )


def _insert_values(data: MarketData) -> tuple[Any, ...]:
    return (
        data.symbol,
        _as_date(data.date),
        data.open,
        data.high,
        data.low,
        data.close,
        data.volume,
        Source(data.source).value,
    )


class MarketService:
    """Queries and writes for the ``market_data`` table."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._log = bind(service="market")

    def get_by_symbol(self, symbol: str, limit: int) -> list[MarketData]:
        """Return up to ``limit`` records for ``symbol``, newest first."""
        try:
            rows = self.db.query(
                f"{_SELECT} WHERE symbol = ? ORDER BY date DESC LIMIT ?", symbol, limit
            )
        except DatabaseError as exc:
            self._log.error("Failed to get market data by symbol", symbol=symbol, error=str(exc))
            raise
        return [_from_row(row) for row in rows]

    def get_by_symbol_and_date_range(
        self, symbol: str, start_date: dt.date, end_date: dt.date
    ) -> list[MarketData]:
        """Return records for ``symbol`` between the two dates inclusive, oldest first."""
        try:
            rows = self.db.query(
                f"{_SELECT} WHERE symbol = ? AND date >= ? AND date <= ? ORDER BY date ASC",
                symbol,
                _as_date(start_date),
                _as_date(end_date),
            )
        except DatabaseError as exc:
            self._log.error(
                "Failed to get market data by date range",
                symbol=symbol,
                start_date=start_date,
                end_date=end_date,
                error=str(exc),
            )
            raise
        return [_from_row(row) for row in rows]

    def create(self, data: MarketData) -> MarketData:
        """Insert one record and return it with its id and creation time filled in."""
        try:
            with self.db.transaction():
                self.db.execute(_INSERT, *_insert_values(data))
                row = self.db.query_row(
                    "SELECT id, created_at FROM market_data WHERE id = last_insert_rowid()"
                )
        except DatabaseError as exc:
            self._log.error("Failed to create market data", symbol=data.symbol, error=str(exc))
            raise
        if row is None:
            raise DatabaseError("inserted row could not be read back")
        return replace(
            data,
            date=_as_date(data.date),
            source=Source(data.source),
            id=int(row["id"]),
            created_at=_parse_timestamp(row["created_at"]),
        )

    def bulk_create(self, data_list: Sequence[MarketData]) -> int:
        """Insert many records at once, all or nothing; return how many were inserted."""
        if not data_list:
            return 0
        try:
            count = self.db.copy_from(
                "market_data", _COLUMNS, (_insert_values(data) for data in data_list)
            )
        except DatabaseError as exc:
            self._log.error("Failed to bulk create market data", count=len(data_list), error=str(exc))
            raise
        self._log.info("Bulk created market data", inserted=count, requested=len(data_list))
        return count

    def bulk_create_with_conflict(self, data_list: Iterable[MarketData]) -> None:
        """Insert records, updating prices and volume where symbol, date and source exist."""
        records = list(data_list)
        if not records:
            return
        try:
            with self.db.transaction():
                for index, data in enumerate(records):
                    try:
                        self.db.execute(_UPSERT, *_insert_values(data))
                    except DatabaseError as exc:
                        raise DatabaseError(
                            f"failed to execute batch item {index}: {exc}"
                        ) from exc
        except DatabaseError as exc:
            self._log.error(
                "Failed to bulk create with conflict handling", count=len(records), error=str(exc)
            )
            raise

    def delete(self, symbol: str) -> int:
        """Delete every record for ``symbol``; return how many were removed."""
        try:
            affected = self.db.execute("DELETE FROM market_data WHERE symbol = ?", symbol)
        except DatabaseError as exc:
            self._log.error("Failed to delete market data", symbol=symbol, error=str(exc))
            raise
        self._log.info("Deleted market data", symbol=symbol, rows_affected=affected)
        return affected

    def get_latest_by_symbol(self, symbol: str) -> MarketData | None:
        """Return the newest record for ``symbol``, or None when there is none."""
        try:
            row = self.db.query_row(
                f"{_SELECT} WHERE symbol = ? ORDER BY date DESC LIMIT 1", symbol
            )
        except DatabaseError as exc:
            self._log.error("Failed to get latest market data", symbol=symbol, error=str(exc))
            raise
        return None if row is None else _from_row(row)

    def get_symbols(self) -> list[str]:
        """Return every distinct symbol, sorted."""
        try:
            rows = self.db.query("SELECT DISTINCT symbol FROM market_data ORDER BY symbol")
        except DatabaseError as exc:
            self._log.error("Failed to get symbols", error=str(exc))
            raise
        return [row["symbol"] for row in rows]

    def health_check(self) -> None:
        """Raise DatabaseError if the database does not answer."""
        self.db.health_check()