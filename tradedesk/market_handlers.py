"""Market data endpoints: queries, writes, a mock Yahoo import and CSV upload."""

from __future__ import annotations

import csv
import datetime as dt
import io
import json
import re
from typing import Any

from flask import Flask, jsonify, request

from .auth import auth_required, get_user_id, role_required
from .database import DatabaseError
from .logger import bind
from .market_service import MarketService
from .models import BulkCreateRequest, CSVUploadResponse, MarketData, Source, ValidationError
from .responses import error_json
from .user_service import PreferencesNotFound, UserService

DEFAULT_LIMIT = 30
MAX_LIMIT = 1000
DEFAULT_DAYS = 7
MAX_DAYS = 365
CSV_MIN_COLUMNS = 7

_INTEGER = re.compile(r"[+-]?\d+")
_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")


class _MalformedCSV(ValueError):
    """The upload is not valid CSV."""


class _NoDataRows(ValueError):
    """The upload holds no rows after the header."""


def _bounded_int(text: str, default: int, maximum: int) -> int:
    if _INTEGER.fullmatch(text):
        number = int(text)
        if 0 < number <= maximum:
            return number
    return default


def _parse_date(text: str) -> dt.date:
    if not _DATE.fullmatch(text):
        raise ValueError(f"invalid date: {text!r}")
    return dt.date.fromisoformat(text)


def _to_float(text: str) -> float:
    if "_" in text or text != text.strip():
        return 0.0
    try:
        return float(text)
    except ValueError:
        return 0.0


def _to_int(text: str) -> int:
    return int(text) if _INTEGER.fullmatch(text) else 0


def _read_rows(text: str) -> list[list[str]]:
    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    rows: list[list[str]] = []
    width: int | None = None
    try:
        for record in reader:
            if not record:
                continue
            if width is None:
                width = len(record)
            elif len(record) != width:
                raise _MalformedCSV(
                    f"record on line {reader.line_num}: wrong number of fields"
                )
            rows.append(record)
    except csv.Error as exc:
        raise _MalformedCSV(str(exc)) from exc
    return rows


def parse_csv_upload(text: str) -> tuple[list[MarketData], list[str]]:
    """Parse ``Symbol,Date,Open,High,Low,Close,Volume`` rows after a header line.

    Returns the parsed records and one message per skipped row. Raises
    ValueError when the text is not valid CSV or has no data rows.
    """
    rows = _read_rows(text)
    if len(rows) < 2:
        raise _NoDataRows("CSV file is empty or has no data rows")

    records: list[MarketData] = []
    errors: list[str] = []
    for row_number, record in enumerate(rows[1:], start=2):
        if len(record) < CSV_MIN_COLUMNS:
            errors.append(f"Row {row_number}: insufficient columns")
            continue
        try:
            date = _parse_date(record[1])
        except ValueError:
            errors.append(f"Row {row_number}: invalid date format")
            continue
        records.append(
            MarketData(
                id=0,
                symbol=record[0],
                date=date,
                open=_to_float(record[2]),
                high=_to_float(record[3]),
                low=_to_float(record[4]),
                close=_to_float(record[5]),
                volume=_to_int(record[6]),
                source=Source("mirae"),
                created_at=None,
            )
        )
    return records, errors


def generate_mock_quotes(
    symbol: str, days: int, end_date: dt.date | None = None
) -> list[MarketData]:
    """Made-up daily quotes for ``symbol``, one per day going back from ``end_date``."""
    if end_date is None:
        end_date = dt.date.today()
    elif isinstance(end_date, dt.datetime):
        end_date = end_date.date()
    return [
        MarketData(
            id=0,
            symbol=symbol,
            date=end_date - dt.timedelta(days=offset),
            open=8500.0 + offset * 10,
            high=8600.0 + offset * 10,
            low=8400.0 + offset * 10,
            close=8550.0 + offset * 10,
            volume=12500000 + offset * 100000,
            source=Source("yahoo"),
            created_at=None,
        )
        for offset in range(days)
    ]


def _read_json_body() -> Any:
    return json.loads(request.get_data(as_text=True))


def _market_response(symbol: str, data: list[MarketData]) -> Any:
    return jsonify(
        {"symbol": symbol, "count": len(data), "data": [item.to_dict() for item in data]}
    )


class MarketHandlers:
    """Views over the market data service."""

    def __init__(self, market_service: MarketService, user_service: UserService) -> None:
        self.market_service = market_service
        self.user_service = user_service
        self._log = bind(component="handler")

    def get_market_data(self) -> Any:
        symbol = request.args.get("symbol", "")
        if not symbol:
            return error_json(400, "symbol parameter is required")
        limit = _bounded_int(request.args.get("limit", ""), DEFAULT_LIMIT, MAX_LIMIT)

        source = request.args.get("source", "")
        user_id = get_user_id()
        if not source and user_id:
            try:
                source = self.user_service.get_preferences(user_id).default_source
            except (PreferencesNotFound, DatabaseError):
                pass
        self._log.debug("Market data query", symbol=symbol, limit=limit, source=source)

        try:
            data = self.market_service.get_by_symbol(symbol, limit)
        except DatabaseError as exc:
            self._log.error("Failed to fetch market data", symbol=symbol, error=str(exc))
            return error_json(500, "Failed to fetch data")
        return _market_response(symbol, data)

    def get_market_data_by_symbol(self, symbol: str) -> Any:
        start_text = request.args.get("start_date", "")
        end_text = request.args.get("end_date", "")

        if start_text and end_text:
            try:
                start_date = _parse_date(start_text)
            except ValueError:
                return error_json(400, "Invalid start_date format. Use YYYY-MM-DD")
            try:
                end_date = _parse_date(end_text)
            except ValueError:
                return error_json(400, "Invalid end_date format. Use YYYY-MM-DD")
            try:
                data = self.market_service.get_by_symbol_and_date_range(
                    symbol, start_date, end_date
                )
            except DatabaseError as exc:
                self._log.error(
                    "Failed to fetch market data by date range", symbol=symbol, error=str(exc)
                )
                return error_json(500, "Failed to fetch data")
            return _market_response(symbol, data)

        try:
            data = self.market_service.get_by_symbol(symbol, DEFAULT_LIMIT)
        except DatabaseError as exc:
            self._log.error("Failed to fetch market data", symbol=symbol, error=str(exc))
            return error_json(500, "Failed to fetch data")
        return _market_response(symbol, data)

    def create_market_data(self) -> Any:
        try:
            data = MarketData.from_dict(_read_json_body())
        except (ValueError, ValidationError) as exc:
            return error_json(400, "Invalid request body", str(exc))
        try:
            result = self.market_service.create(data)
        except DatabaseError as exc:
            self._log.error("Failed to create market data", symbol=data.symbol, error=str(exc))
            return error_json(500, "Failed to create data")
        return jsonify(result.to_dict()), 201

    def bulk_create_market_data(self) -> Any:
        try:
            bulk = BulkCreateRequest.from_dict(_read_json_body())
        except (ValueError, ValidationError) as exc:
            return error_json(400, "Invalid request body", str(exc))
        records = list(bulk.data)
        try:
            self.market_service.bulk_create_with_conflict(records)
        except DatabaseError as exc:
            self._log.error(
                "Failed to bulk create market data", count=len(records), error=str(exc)
            )
            return error_json(500, "Failed to bulk create data")
        return jsonify({"message": "Data created successfully", "count": len(records)}), 201

    def fetch_yahoo_data(self, symbol: str) -> Any:
        days = _bounded_int(request.args.get("days", ""), DEFAULT_DAYS, MAX_DAYS)
        self._log.info("Fetching Yahoo Finance data", symbol=symbol, days=days)
        quotes = generate_mock_quotes(symbol, days)
        try:
            self.market_service.bulk_create(quotes)
        except DatabaseError as exc:
            self._log.error("Failed to save Yahoo data", symbol=symbol, error=str(exc))
            return error_json(500, "Failed to save data")
        return jsonify(
            {
                "message": "Data fetched successfully",
                "symbol": symbol,
                "count": len(quotes),
                "source": "yahoo",
            }
        )

    def delete_market_data(self, symbol: str) -> Any:
        try:
            self.market_service.delete(symbol)
        except DatabaseError as exc:
            self._log.error("Failed to delete market data", symbol=symbol, error=str(exc))
            return error_json(500, "Failed to delete data")
        return jsonify({"message": "Data deleted successfully", "symbol": symbol})

    def upload_csv(self) -> Any:
        upload = request.files.get("file")
        if upload is None:
            return error_json(400, "No file uploaded")
        content = upload.read()
        self._log.info("Processing CSV upload", filename=upload.filename or "", size=len(content))

        try:
            records, errors = parse_csv_upload(content.decode("utf-8", errors="replace"))
        except _NoDataRows as exc:
            return error_json(400, str(exc))
        except _MalformedCSV as exc:
            return error_json(400, "Failed to parse CSV", str(exc))

        if records:
            try:
                self.market_service.bulk_create_with_conflict(records)
            except DatabaseError as exc:
                self._log.error("Failed to import CSV data", error=str(exc))
                return error_json(500, "Failed to import data")

        result = CSVUploadResponse(
            message="CSV processed successfully",
            rows_imported=len(records),
            rows_skipped=len(errors),
            errors=errors,
        )
        return jsonify(result.to_dict())

    def register(self, app: Flask) -> Flask:
        base = "/api/v1/market-data"
        rules = (
            (base, "get_market_data", auth_required(self.get_market_data), "GET"),
            (base, "create_market_data", auth_required(self.create_market_data), "POST"),
            (
                f"{base}/<symbol>",
                "get_market_data_by_symbol",
                auth_required(self.get_market_data_by_symbol),
                "GET",
            ),
            (
                f"{base}/yahoo/<symbol>",
                "fetch_yahoo_data",
                auth_required(self.fetch_yahoo_data),
                "POST",
            ),
            (
                f"{base}/<symbol>",
                "delete_market_data",
                auth_required(role_required("admin")(self.delete_market_data)),
                "DELETE",
            ),
            (
                f"{base}/bulk",
                "bulk_create_market_data",
                auth_required(self.bulk_create_market_data),
                "POST",
            ),
            ("/api/v1/upload/csv", "upload_csv", auth_required(self.upload_csv), "POST"),
        )
        for rule, endpoint, view, method in rules:
            app.add_url_rule(rule, endpoint, view, methods=[method])
        return app