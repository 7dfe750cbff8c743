import datetime as dt
import io
import json
from dataclasses import replace

import pytest
import responses
from flask import Flask

from tradedesk.auth import init_auth_config, reset_auth_config
from tradedesk.database import DatabaseError
from tradedesk.market_handlers import (
    MarketHandlers,
    generate_mock_quotes,
    parse_csv_upload,
)
from tradedesk.models import MarketData, Source
from tradedesk.user_service import PreferencesNotFound

TEST_CSV = (
    "Symbol,Date,Open,High,Low,Close,Volume\n"
    "BBCA.JK,2025-01-06,8500,8600,8450,8550,12500000\n"
    "BBCA.JK,2025-01-07,8550,8650,8500,8600,13000000\n"
    "BBRI.JK,2025-01-06,4500,4600,4450,4550,25000000\n"
    "BBRI.JK,2025-01-07,4550,4650,4500,4600,28000000\n"
    "TLKM.JK,2025-01-06,3200,3250,3180,3220,18000000\n"
    "TLKM.JK,2025-01-07,3220,3280,3200,3260,19000000\n"
)

KRATOS = "http://kratos.example.com"


def record(symbol="BBCA.JK", day=6):
    return MarketData(
        id=0,
        symbol=symbol,
        date=dt.date(2025, 1, day),
        open=8500.0,
        high=8600.0,
        low=8450.0,
        close=8550.0,
        volume=12500000,
        source=Source("mirae"),
        created_at=None,
    )


class FakeMarketService:
    def __init__(self, records=(), fail=False):
        self.records = list(records)
        self.fail = fail
        self.calls = []

    def _check(self):
        if self.fail:
            raise DatabaseError("boom")

    def get_by_symbol(self, symbol, limit):
        self._check()
        self.calls.append(("get_by_symbol", symbol, limit))
        return [r for r in self.records if r.symbol == symbol][:limit]

    def get_by_symbol_and_date_range(self, symbol, start_date, end_date):
        self._check()
        self.calls.append(("range", symbol, start_date, end_date))
        return [
            r for r in self.records if r.symbol == symbol and start_date <= r.date <= end_date
        ]

    def create(self, data):
        self._check()
        self.calls.append(("create", data))
        return replace(data, id=7)

    def bulk_create(self, data_list):
        self._check()
        self.calls.append(("bulk_create", list(data_list)))
        return len(data_list)

    def bulk_create_with_conflict(self, data_list):
        self._check()
        self.calls.append(("bulk_create_with_conflict", list(data_list)))

    def delete(self, symbol):
        self._check()
        self.calls.append(("delete", symbol))
        return 1


class FakeUserService:
    def get_preferences(self, user_id):
        raise PreferencesNotFound(user_id)


@pytest.fixture
def app():
    return Flask(__name__)


def invoke(app, view, path="/", method="GET", **kwargs):
    with app.test_request_context(path, method=method, **kwargs):
        response = app.make_response(view())
        return response.status_code, response.get_json()


def as_json(app, value):
    return json.loads(app.json.dumps(value))


def test_get_market_data_requires_symbol(app):
    handlers = MarketHandlers(FakeMarketService(), FakeUserService())
    status, body = invoke(app, handlers.get_market_data, "/api/v1/market-data")
    assert status == 400
    assert body == {"error": "symbol parameter is required"}


@pytest.mark.parametrize(
    "query, expected",
    [("", 30), ("&limit=5", 5), ("&limit=0", 30), ("&limit=1001", 30), ("&limit=abc", 30), ("&limit=1000", 1000)],
)
def test_get_market_data_limit(app, query, expected):
    service = FakeMarketService()
    handlers = MarketHandlers(service, FakeUserService())
    status, _ = invoke(app, handlers.get_market_data, f"/api/v1/market-data?symbol=X{query}")
    assert status == 200
    assert service.calls == [("get_by_symbol", "X", expected)]


def test_get_market_data_returns_records(app):
    stored = [record(day=6), record(day=7), record("TLKM.JK")]
    handlers = MarketHandlers(FakeMarketService(stored), FakeUserService())
    status, body = invoke(app, handlers.get_market_data, "/api/v1/market-data?symbol=BBCA.JK")
    assert status == 200
    assert body["symbol"] == "BBCA.JK"
    assert body["count"] == 2
    assert body["data"] == [as_json(app, r.to_dict()) for r in stored[:2]]


def test_get_market_data_failure(app):
    handlers = MarketHandlers(FakeMarketService(fail=True), FakeUserService())
    status, body = invoke(app, handlers.get_market_data, "/api/v1/market-data?symbol=X")
    assert status == 500
    assert body == {"error": "Failed to fetch data"}


def test_get_by_symbol_with_date_range(app):
    service = FakeMarketService([record(day=6), record(day=7)])
    handlers = MarketHandlers(service, FakeUserService())
    status, body = invoke(
        app,
        lambda: handlers.get_market_data_by_symbol("BBCA.JK"),
        "/x?start_date=2025-01-07&end_date=2025-01-31",
    )
    assert status == 200
    assert body["count"] == 1
    assert service.calls == [("range", "BBCA.JK", dt.date(2025, 1, 7), dt.date(2025, 1, 31))]


@pytest.mark.parametrize(
    "query, message",
    [
        ("start_date=2025/01/06&end_date=2025-01-07", "Invalid start_date format. Use YYYY-MM-DD"),
        ("start_date=2025-01-06&end_date=07-01-2025", "Invalid end_date format. Use YYYY-MM-DD"),
    ],
)
def test_get_by_symbol_bad_dates(app, query, message):
    handlers = MarketHandlers(FakeMarketService(), FakeUserService())
    status, body = invoke(app, lambda: handlers.get_market_data_by_symbol("X"), f"/x?{query}")
    assert status == 400
    assert body == {"error": message}


def test_get_by_symbol_without_both_dates_uses_latest(app):
    service = FakeMarketService()
    handlers = MarketHandlers(service, FakeUserService())
    status, _ = invoke(app, lambda: handlers.get_market_data_by_symbol("X"), "/x?start_date=2025-01-06")
    assert status == 200
    assert service.calls == [("get_by_symbol", "X", 30)]


def test_create_market_data_invalid_body(app):
    service = FakeMarketService()
    handlers = MarketHandlers(service, FakeUserService())
    status, body = invoke(app, handlers.create_market_data, "/x", method="POST", data="{not json")
    assert status == 400
    assert body["error"] == "Invalid request body"
    assert service.calls == []


def test_create_market_data_valid(app):
    service = FakeMarketService()
    handlers = MarketHandlers(service, FakeUserService())
    payload = {
        "symbol": "BBCA.JK",
        "date": "2025-01-06T00:00:00Z",
        "open": 8500,
        "high": 8600,
        "low": 8450,
        "close": 8550,
        "volume": 12500000,
        "source": "manual",
    }
    status, body = invoke(
        app, handlers.create_market_data, "/x", method="POST", data=json.dumps(payload),
        content_type="application/json",
    )
    assert status == 201
    assert body["symbol"] == "BBCA.JK"
    assert service.calls[0][1].symbol == "BBCA.JK"


def test_bulk_create_invalid_body(app):
    handlers = MarketHandlers(FakeMarketService(), FakeUserService())
    status, body = invoke(app, handlers.bulk_create_market_data, "/x", method="POST", data="")
    assert status == 400
    assert body["error"] == "Invalid request body"


def test_fetch_yahoo_default_days(app):
    service = FakeMarketService()
    handlers = MarketHandlers(service, FakeUserService())
    status, body = invoke(app, lambda: handlers.fetch_yahoo_data("BBCA.JK"), "/x?days=400", method="POST")
    assert status == 200
    assert body == {
        "message": "Data fetched successfully",
        "symbol": "BBCA.JK",
        "count": 7,
        "source": "yahoo",
    }
    assert len(service.calls[0][1]) == 7


def test_fetch_yahoo_requested_days(app):
    service = FakeMarketService()
    handlers = MarketHandlers(service, FakeUserService())
    status, body = invoke(app, lambda: handlers.fetch_yahoo_data("X"), "/x?days=3", method="POST")
    assert status == 200
    assert body["count"] == 3


def test_fetch_yahoo_failure(app):
    handlers = MarketHandlers(FakeMarketService(fail=True), FakeUserService())
    status, body = invoke(app, lambda: handlers.fetch_yahoo_data("X"), "/x", method="POST")
    assert status == 500
    assert body == {"error": "Failed to save data"}


def test_delete_market_data(app):
    service = FakeMarketService()
    handlers = MarketHandlers(service, FakeUserService())
    status, body = invoke(app, lambda: handlers.delete_market_data("X"), "/x", method="DELETE")
    assert status == 200
    assert body == {"message": "Data deleted successfully", "symbol": "X"}
    assert service.calls == [("delete", "X")]


def test_delete_market_data_failure(app):
    handlers = MarketHandlers(FakeMarketService(fail=True), FakeUserService())
    status, body = invoke(app, lambda: handlers.delete_market_data("X"), "/x", method="DELETE")
    assert status == 500
    assert body == {"error": "Failed to delete data"}


def test_parse_csv_upload_test_data():
    records, errors = parse_csv_upload(TEST_CSV)
    assert errors == []
    assert len(records) == 6
    first = records[0]
    assert first.symbol == "BBCA.JK"
    assert first.date == dt.date(2025, 1, 6)
    assert first.open == 8500.0
    assert first.volume == 12500000
    assert all(r.source == Source("mirae") for r in records)


def test_parse_csv_upload_bad_date_is_skipped():
    text = "Symbol,Date,Open,High,Low,Close,Volume\nBBCA.JK,06/01/2025,1,2,3,4,5\n"
    records, errors = parse_csv_upload(text)
    assert records == []
    assert errors == ["Row 2: invalid date format"]


def test_parse_csv_upload_insufficient_columns():
    records, errors = parse_csv_upload("a,b\nx,y\n")
    assert records == []
    assert errors == ["Row 2: insufficient columns"]


def test_parse_csv_upload_non_numeric_is_zero():
    text = "Symbol,Date,Open,High,Low,Close,Volume\nX,2025-01-06,abc,2,3,4,many\n"
    records, _ = parse_csv_upload(text)
    assert records[0].open == 0.0
    assert records[0].volume == 0


def test_parse_csv_upload_header_only():
    with pytest.raises(ValueError, match="empty or has no data rows"):
        parse_csv_upload("Symbol,Date,Open,High,Low,Close,Volume\n")


def test_parse_csv_upload_inconsistent_fields():
    with pytest.raises(ValueError, match="wrong number of fields"):
        parse_csv_upload("a,b,c\nx,y\n")


def test_upload_csv_without_file(app):
    handlers = MarketHandlers(FakeMarketService(), FakeUserService())
    status, body = invoke(app, handlers.upload_csv, "/x", method="POST", data={})
    assert status == 400
    assert body == {"error": "No file uploaded"}


def test_upload_csv_imports_rows(app):
    service = FakeMarketService()
    handlers = MarketHandlers(service, FakeUserService())
    status, body = invoke(
        app,
        handlers.upload_csv,
        "/x",
        method="POST",
        data={"file": (io.BytesIO(TEST_CSV.encode()), "test_data.csv")},
        content_type="multipart/form-data",
    )
    assert status == 200
    assert body["message"] == "CSV processed successfully"
    assert body["rows_imported"] == 6
    assert body["rows_skipped"] == 0
    assert len(service.calls[0][1]) == 6


def test_upload_csv_empty_file(app):
    handlers = MarketHandlers(FakeMarketService(), FakeUserService())
    status, body = invoke(
        app,
        handlers.upload_csv,
        "/x",
        method="POST",
        data={"file": (io.BytesIO(b""), "empty.csv")},
        content_type="multipart/form-data",
    )
    assert status == 400
    assert body == {"error": "CSV file is empty or has no data rows"}


def test_generate_mock_quotes():
    end = dt.date(2025, 1, 7)
    quotes = generate_mock_quotes("BBCA.JK", 5, end)
    assert len(quotes) == 5
    assert quotes[0].date == end
    assert quotes[0].open == 8500.0
    assert quotes[0].close == 8550.0
    assert quotes[0].volume == 12500000
    for newer, older in zip(quotes, quotes[1:]):
        assert newer.date - older.date == dt.timedelta(days=1)
        assert older.open - newer.open == 10
        assert older.volume - newer.volume == 100000
    assert {q.source for q in quotes} == {Source("yahoo")}


def session_body(role):
    return {
        "id": "sess",
        "active": True,
        "identity": {"id": "user-1", "traits": {"email": "trader@example.com", "role": role}},
        "expires_at": "2999-01-01T00:00:00Z",
    }


@pytest.fixture
def routed_app():
    init_auth_config(KRATOS, KRATOS)
    app = Flask(__name__)
    service = FakeMarketService([record()])
    MarketHandlers(service, FakeUserService()).register(app)
    yield app, service
    reset_auth_config()


def test_routes_require_authentication(routed_app):
    app, service = routed_app
    response = app.test_client().get("/api/v1/market-data?symbol=BBCA.JK")
    assert response.status_code == 401
    assert service.calls == []


def test_delete_route_requires_admin(routed_app):
    app, service = routed_app
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.get(KRATOS + "/sessions/whoami", json=session_body("trader"))
        response = app.test_client().delete(
            "/api/v1/market-data/BBCA.JK", headers={"Authorization": "Bearer token"}
        )
    assert response.status_code == 403
    assert response.get_json()["required_role"] == "admin"
    assert service.calls == []


def test_delete_route_as_admin(routed_app):
    app, service = routed_app
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.get(KRATOS + "/sessions/whoami", json=session_body("admin"))
        response = app.test_client().delete(
            "/api/v1/market-data/BBCA.JK", headers={"Authorization": "Bearer token"}
        )
    assert response.status_code == 200
    assert service.calls == [("delete", "BBCA.JK")]


def test_get_route_with_session(routed_app):
    app, _ = routed_app
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.get(KRATOS + "/sessions/whoami", json=session_body("trader"))
        response = app.test_client().get(
            "/api/v1/market-data?symbol=BBCA.JK", headers={"Authorization": "Bearer token"}
        )
    assert response.status_code == 200
    assert response.get_json()["count"] == 1
    assert response.headers["X-User-ID"] == "user-1"