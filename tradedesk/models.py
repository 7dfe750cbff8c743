"""Market data records and their JSON forms."""

from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field
from typing import Any, Mapping


class ValidationError(ValueError):
    """Raised when a payload fails validation; ``errors`` lists every problem."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class Source(str, enum.Enum):
    """Origin of a market data record."""

    YAHOO = "yahoo"
    MIRAE = "mirae"
    MANUAL = "manual"


def _parse_datetime(text: str) -> dt.datetime:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return dt.datetime.fromisoformat(text)


def _parse_date(value: Any) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str):
        raise ValueError("not a date")
    text = value.strip()
    try:
        return dt.date.fromisoformat(text)
    except ValueError:
        return _parse_datetime(text).date()


def _format_date(value: dt.date) -> str:
    return f"{value.isoformat()}T00:00:00Z"


def _format_datetime(value: dt.datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat() + "Z"
    text = value.isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _price(payload: Mapping[str, Any], key: str, errors: list[str]) -> float:
    value = payload.get(key)
    if value is None:
        errors.append(f"{key} is required")
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append(f"{key} must be a number")
        return 0.0
    if value == 0:
        # A zero value does not satisfy "required".
        errors.append(f"{key} is required")
    elif value < 0:
        errors.append(f"{key} must be >= 0")
    return float(value)


def _volume(payload: Mapping[str, Any], errors: list[str]) -> int:
    value = payload.get("volume")
    if value is None:
        errors.append("volume is required")
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append("volume must be an integer")
        return 0
    if value == 0:
        errors.append("volume is required")
    elif value < 0:
        errors.append("volume must be >= 0")
    return value


@dataclass
class MarketData:
    """One day of price data for a symbol."""

    symbol: str
    date: dt.date
    open: float
    high: float
    low: float
    close: float
    volume: int
    source: Source
    id: int = 0
    created_at: dt.datetime | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> "MarketData":
        """Build and validate a record from a decoded JSON object."""
        if not isinstance(payload, Mapping):
            raise ValidationError(["request body must be a JSON object"])
        errors: list[str] = []

        symbol = payload.get("symbol")
        if not isinstance(symbol, str) or not symbol:
            errors.append("symbol is required")
            symbol = ""

        date_value = payload.get("date")
        date = dt.date.min
        if date_value in (None, ""):
            errors.append("date is required")
        else:
            try:
                date = _parse_date(date_value)
            except ValueError:
                errors.append("date must be a date")

        open_ = _price(payload, "open", errors)
        high = _price(payload, "high", errors)
        low = _price(payload, "low", errors)
        close = _price(payload, "close", errors)
        volume = _volume(payload, errors)

        source_value = payload.get("source")
        source = Source.MANUAL
        if source_value in (None, ""):
            errors.append("source is required")
        else:
            try:
                source = Source(source_value)
            except ValueError:
                allowed = " ".join(member.value for member in Source)
                errors.append(f"source must be one of {allowed}")

        record_id = payload.get("id", 0) or 0
        if isinstance(record_id, bool) or not isinstance(record_id, int):
            errors.append("id must be an integer")
            record_id = 0

        created_at = None
        created_value = payload.get("created_at")
        if created_value:
            try:
                created_at = _parse_datetime(str(created_value))
            except ValueError:
                errors.append("created_at must be a timestamp")

        if errors:
            raise ValidationError(errors)
        return cls(
            symbol=symbol,
            date=date,
            open=open_,
            high=high,
            low=low,
            close=close,
            volume=volume,
            source=source,
            id=record_id,
            created_at=created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "date": _format_date(self.date),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "source": Source(self.source).value,
            "created_at": _format_datetime(self.created_at),
        }


@dataclass
class BulkCreateRequest:
    """A request carrying several market data records."""

    data: list[MarketData]

    @classmethod
    def from_dict(cls, payload: Any) -> "BulkCreateRequest":
        if not isinstance(payload, Mapping):
            raise ValidationError(["request body must be a JSON object"])
        items = payload.get("data")
        if items is None:
            raise ValidationError(["data is required"])
        if not isinstance(items, list):
            raise ValidationError(["data must be a list"])
        errors: list[str] = []
        records: list[MarketData] = []
        for index, item in enumerate(items):
            try:
                records.append(MarketData.from_dict(item))
            except ValidationError as exc:
                errors.extend(f"data[{index}].{problem}" for problem in exc.errors)
        if errors:
            raise ValidationError(errors)
        return cls(data=records)


@dataclass
class YahooQuote:
    """A quote as delivered by Yahoo Finance."""

    symbol: str
    date: dt.datetime
    open: float
    high: float
    low: float
    close: float
    volume: int
    adj_close: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "date": _format_datetime(self.date),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "adjClose": self.adj_close,
        }


@dataclass
class CSVUploadResponse:
    """Summary of a CSV import."""

    message: str
    rows_imported: int
    rows_skipped: int
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "message": self.message,
            "rows_imported": self.rows_imported,
            "rows_skipped": self.rows_skipped,
        }
        if self.errors:
            result["errors"] = list(self.errors)
        return result