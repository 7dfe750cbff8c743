"""SQLite-backed storage with a small query API and the schema migrations."""

from __future__ import annotations

import datetime as dt
import enum
import json
import re
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Sequence

from .logger import bind

_log = bind(component="database")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

MIGRATIONS = (
    """CREATE TABLE IF NOT EXISTS market_data (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        symbol VARCHAR(20) NOT NULL,
        date DATE NOT NULL,
        open REAL,
        high REAL,
        low REAL,
        close REAL,
        volume BIGINT,
        source VARCHAR(50) NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(symbol, date, source)
    )""",
    "CREATE INDEX IF NOT EXISTS idx_market_data_symbol_date ON market_data(symbol, date)",
    """CREATE TABLE IF NOT EXISTS user_preferences (
        user_id VARCHAR(255) PRIMARY KEY,
        email VARCHAR(255) NOT NULL,
        default_source VARCHAR(50) DEFAULT 'yahoo',
        selected_symbols TEXT DEFAULT '[]',
        watchlist TEXT DEFAULT '[]',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )""",
    "CREATE INDEX IF NOT EXISTS idx_user_preferences_email ON user_preferences(email)",
)


class DatabaseError(Exception):
    """Raised for any failure talking to the database."""


def _adapt(value: Any) -> Any:
    """Convert a parameter to something SQLite stores: dates as ISO text, lists as JSON."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dt.datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, dt.date):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    return value


class Database:
    """A thread-safe SQLite connection with query helpers and transactions."""

    def __init__(self, path: str = ":memory:", timeout: float = 10.0) -> None:
        self.path = str(path)
        self._lock = threading.RLock()
        self._closed = False
        try:
            self._conn = sqlite3.connect(
                self.path, timeout=timeout, isolation_level=None, check_same_thread=False
            )
        except sqlite3.Error as exc:
            raise DatabaseError(f"failed to open database: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        try:
            self.health_check()
        except DatabaseError as exc:
            self._conn.close()
            self._closed = True
            raise DatabaseError(f"failed to ping database: {exc}") from exc
        _log.info("Database connected successfully", path=self.path)

    def _connection(self) -> sqlite3.Connection:
        if self._closed:
            raise DatabaseError("database is closed")
        return self._conn

    def _run(self, sql: str, args: Sequence[Any]) -> sqlite3.Cursor:
        params = tuple(_adapt(arg) for arg in args)
        try:
            return self._connection().execute(sql, params)
        except sqlite3.Error as exc:
            raise DatabaseError(str(exc)) from exc

    def close(self) -> None:
        """Close the connection; closing twice is harmless."""
        with self._lock:
            if self._closed:
                return
            _log.info("Closing database connection")
            self._conn.close()
            self._closed = True

    def health_check(self) -> None:
        """Run a trivial query; raise DatabaseError if it fails."""
        row = self.query_row("SELECT 1")
        if row is None or row[0] != 1:
            raise DatabaseError("health check returned an unexpected result")

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Run the block in a transaction: commit on success, roll back on any exception."""
        with self._lock:
            conn = self._connection()
            if conn.in_transaction:
                raise DatabaseError("transaction already in progress")
            try:
                conn.execute("BEGIN")
            except sqlite3.Error as exc:
                raise DatabaseError(f"failed to begin transaction: {exc}") from exc
            try:
                yield self
            except BaseException as exc:
                if conn.in_transaction:
                    try:
                        conn.execute("ROLLBACK")
                    except sqlite3.Error as rollback_exc:
                        raise DatabaseError(
                            f"tx err: {exc}, rollback err: {rollback_exc}"
                        ) from exc
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                raise DatabaseError(f"failed to commit transaction: {exc}") from exc

    def query(self, sql: str, *args: Any) -> list[sqlite3.Row]:
        """Run a query and return every row."""
        with self._lock:
            cursor = self._run(sql, args)
            try:
                return cursor.fetchall()
            except sqlite3.Error as exc:
                raise DatabaseError(str(exc)) from exc

    def query_row(self, sql: str, *args: Any) -> sqlite3.Row | None:
        """Run a query and return its first row, or None when there is none."""
        with self._lock:
            cursor = self._run(sql, args)
            try:
                return cursor.fetchone()
            except sqlite3.Error as exc:
                raise DatabaseError(str(exc)) from exc

    def execute(self, sql: str, *args: Any) -> int:
        """Run a statement and return the number of rows it affected."""
        with self._lock:
            return self._run(sql, args).rowcount

    def copy_from(self, table: str, columns: Sequence[str], rows: Iterable[Sequence[Any]]) -> int:
        """Insert many rows at once, all or nothing; return how many were inserted."""
        columns = list(columns)
        if not columns:
            raise DatabaseError("no columns given")
        for name in (table, *columns):
            if not isinstance(name, str) or not _IDENTIFIER.match(name):
                raise DatabaseError(f"invalid identifier: {name!r}")
        prepared = [tuple(_adapt(value) for value in row) for row in rows]
        for row in prepared:
            if len(row) != len(columns):
                raise DatabaseError(f"row has {len(row)} values, expected {len(columns)}")
        if not prepared:
            return 0

        column_list = ", ".join(f'"{name}"' for name in columns)
        placeholders = ", ".join("?" for _ in columns)
        sql = f'INSERT INTO "{table}" ({column_list}) VALUES ({placeholders})'

        def insert() -> None:
            try:
                self._connection().executemany(sql, prepared)
            except sqlite3.Error as exc:
                raise DatabaseError(str(exc)) from exc

        with self._lock:
            if self._connection().in_transaction:
                insert()
            else:
                with self.transaction():
                    insert()
        return len(prepared)

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def run_migrations(db: Database) -> None:
    """Create the tables and indexes if they do not exist yet."""
    for statement in MIGRATIONS:
        db.execute(statement)
    _log.info("Database migrations completed")