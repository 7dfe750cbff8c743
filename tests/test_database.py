import datetime as dt
import json

import pytest

from tradedesk.database import Database, DatabaseError, run_migrations
from tradedesk.models import Source

COLUMNS = ["symbol", "date", "open", "high", "low", "close", "volume", "source"]


@pytest.fixture
def db():
    database = Database(":memory:")
    run_migrations(database)
    yield database
    database.close()


def _row(symbol="BBCA.JK", day=6, source=Source.MIRAE):
    return [symbol, dt.date(2025, 1, day), 8500.0, 8600.0, 8450.0, 8550.0, 12500000, source]


def _count(db):
    return db.query_row("SELECT COUNT(*) FROM market_data")[0]


def _tables(db):
    return {row["name"] for row in db.query("SELECT name FROM sqlite_master WHERE type = 'table'")}


def test_migrations_create_tables(db):
    assert {"market_data", "user_preferences"} <= _tables(db)


def test_migrations_are_idempotent(db):
    run_migrations(db)
    assert {"market_data", "user_preferences"} <= _tables(db)


def test_execute_returns_rows_affected(db):
    inserted = db.execute(
        "INSERT INTO market_data (symbol, date, open, high, low, close, volume, source)"
        " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        *_row(),
    )
    assert inserted == 1
    assert db.execute("DELETE FROM market_data WHERE symbol = ?", "BBCA.JK") == 1


def test_parameters_are_adapted(db):
    db.copy_from("market_data", COLUMNS, [_row()])
    row = db.query_row("SELECT date, source, created_at FROM market_data")
    assert row["date"] == "2025-01-06"
    assert row["source"] == "mirae"
    assert row["created_at"] is not None


def test_lists_are_stored_as_json(db):
    db.execute(
        "INSERT INTO user_preferences (user_id, email, watchlist) VALUES (?, ?, ?)",
        "u1",
        "trader@example.com",
        ["BBCA.JK", "TLKM.JK"],
    )
    row = db.query_row("SELECT watchlist, selected_symbols, default_source FROM user_preferences")
    assert json.loads(row["watchlist"]) == ["BBCA.JK", "TLKM.JK"]
    assert json.loads(row["selected_symbols"]) == []
    assert row["default_source"] == "yahoo"


def test_query_row_returns_none_when_empty(db):
    assert db.query_row("SELECT * FROM market_data WHERE symbol = ?", "NONE") is None


def test_unique_constraint_raises(db):
    db.copy_from("market_data", COLUMNS, [_row()])
    with pytest.raises(DatabaseError):
        db.copy_from("market_data", COLUMNS, [_row()])


def test_bad_sql_raises(db):
    with pytest.raises(DatabaseError):
        db.query("SELECT * FROM missing_table")


def test_transaction_commits(db):
    with db.transaction() as tx:
        tx.copy_from("market_data", COLUMNS, [_row(day=6), _row(day=7)])
    assert _count(db) == 2


def test_transaction_rolls_back_on_error(db):
    with pytest.raises(RuntimeError):
        with db.transaction() as tx:
            tx.copy_from("market_data", COLUMNS, [_row()])
            raise RuntimeError("stop")
    assert _count(db) == 0


def test_nested_transaction_rejected(db):
    with pytest.raises(DatabaseError, match="already in progress"):
        with db.transaction():
            with db.transaction():
                pass
    assert _count(db) == 0


def test_copy_from_returns_count(db):
    rows = [_row(symbol) for symbol in ("BBCA.JK", "BBRI.JK", "TLKM.JK")]
    assert db.copy_from("market_data", COLUMNS, rows) == 3
    assert _count(db) == 3


def test_copy_from_empty_inserts_nothing(db):
    assert db.copy_from("market_data", COLUMNS, []) == 0
    assert _count(db) == 0


def test_copy_from_is_atomic(db):
    with pytest.raises(DatabaseError):
        db.copy_from("market_data", COLUMNS, [_row(), _row()])
    assert _count(db) == 0


@pytest.mark.parametrize(
    "table, columns",
    [("market_data; DROP", COLUMNS), ("market_data", ["symbol", "da te"]), ("market_data", [])],
)
def test_copy_from_rejects_bad_identifiers(db, table, columns):
    with pytest.raises(DatabaseError):
        db.copy_from(table, columns, [["x"]])


def test_copy_from_rejects_wrong_row_width(db):
    with pytest.raises(DatabaseError, match="expected"):
        db.copy_from("market_data", COLUMNS, [["BBCA.JK"]])


def test_closed_database_fails_health_check():
    database = Database()
    database.close()
    database.close()
    with pytest.raises(DatabaseError):
        database.health_check()


def test_context_manager_closes():
    with Database() as database:
        assert database.query_row("SELECT 1")[0] == 1
    with pytest.raises(DatabaseError):
        database.query("SELECT 1")


def test_open_in_missing_directory_fails(tmp_path):
    with pytest.raises(DatabaseError):
        Database(str(tmp_path / "missing" / "trading.db"))


def test_data_persists_in_file(tmp_path):
    path = str(tmp_path / "trading.db")
    with Database(path) as database:
        run_migrations(database)
        database.copy_from("market_data", COLUMNS, [_row()])
    with Database(path) as reopened:
        assert _count(reopened) == 1