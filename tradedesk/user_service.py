"""Per-user preferences: default data source, selected symbols and watchlist."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from .database import Database, DatabaseError
from .logger import bind

_COLUMN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LIST_FIELDS = frozenset({"selected_symbols", "watchlist"})

DEFAULT_SOURCE = "yahoo"
DEFAULT_SELECTED_SYMBOLS = ("BBCA.JK", "BBRI.JK", "TLKM.JK")
DEFAULT_WATCHLIST = ("BBCA.JK", "BBRI.JK", "TLKM.JK", "ASII.JK")


class PreferencesNotFound(LookupError):
    """Raised when a user has no stored preferences."""


@dataclass
class UserPreferences:
    """Stored preferences of one user."""

    user_id: str
    email: str
    default_source: str = DEFAULT_SOURCE
    selected_symbols: list[str] = field(default_factory=list)
    watchlist: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "default_source": self.default_source,
            "selected_symbols": list(self.selected_symbols),
            "watchlist": list(self.watchlist),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _load_list(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    try:
        items = json.loads(value)
    except (TypeError, ValueError) as exc:
        raise DatabaseError(f"invalid list value: {exc}") from exc
    if items is None:
        return []
    if not isinstance(items, list):
        raise DatabaseError("stored value is not a list")
    return [str(item) for item in items]


class UserService:
    """Queries and writes for the ``user_preferences`` table."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._log = bind(service="user")

    def get_or_create_preferences(self, user_id: str, email: str) -> UserPreferences:
        """Return the user's preferences, creating defaults when they cannot be read."""
        try:
            return self.get_preferences(user_id)
        except (PreferencesNotFound, DatabaseError):
            pass
        defaults = UserPreferences(
            user_id=user_id,
            email=email,
            default_source=DEFAULT_SOURCE,
            selected_symbols=list(DEFAULT_SELECTED_SYMBOLS),
            watchlist=list(DEFAULT_WATCHLIST),
        )
        try:
            return self.create_preferences(defaults)
        except DatabaseError as exc:
            raise DatabaseError(f"failed to create preferences: {exc}") from exc

    def get_preferences(self, user_id: str) -> UserPreferences:
        """Return the user's preferences; raise PreferencesNotFound if there are none."""
        try:
            row = self.db.query_row(
                "SELECT user_id, email, default_source, selected_symbols, watchlist, "
                "created_at, updated_at FROM user_preferences WHERE user_id = ?",
                user_id,
            )
            if row is None:
                raise PreferencesNotFound(user_id)
            return UserPreferences(
                user_id=row["user_id"],
                email=row["email"],
                default_source=row["default_source"] or "",
                selected_symbols=_load_list(row["selected_symbols"]),
                watchlist=_load_list(row["watchlist"]),
                created_at=str(row["created_at"] or ""),
                updated_at=str(row["updated_at"] or ""),
            )
        except DatabaseError as exc:
            self._log.error("Failed to get user preferences", user_id=user_id, error=str(exc))
            raise

    def create_preferences(self, prefs: UserPreferences) -> UserPreferences:
        """Store preferences; an existing user only gets its email refreshed.

        Returns the given preferences with the stored timestamps filled in.
        """
        try:
            with self.db.transaction():
                self.db.execute(
                    "INSERT INTO user_preferences "
                    "(user_id, email, default_source, selected_symbols, watchlist) "
                    "VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT (user_id) DO UPDATE SET "
                    "email = excluded.email, updated_at = CURRENT_TIMESTAMP",
                    prefs.user_id,
                    prefs.email,
                    prefs.default_source,
                    list(prefs.selected_symbols),
                    list(prefs.watchlist),
                )
                row = self.db.query_row(
                    "SELECT created_at, updated_at FROM user_preferences WHERE user_id = ?",
                    prefs.user_id,
                )
        except DatabaseError as exc:
            self._log.error("Failed to create user preferences", user_id=prefs.user_id, error=str(exc))
            raise
        if row is None:
            raise DatabaseError("stored preferences could not be read back")
        return replace(
            prefs,
            created_at=str(row["created_at"] or ""),
            updated_at=str(row["updated_at"] or ""),
        )

    def update_preferences(self, user_id: str, updates: Mapping[str, Any]) -> None:
        """Set the given columns for the user."""
        try:
            if not updates:
                raise DatabaseError("no fields to update")
            assignments = []
            args: list[Any] = []
            for key, value in updates.items():
                if not isinstance(key, str) or not _COLUMN.match(key):
                    raise DatabaseError(f"invalid column name: {key!r}")
                if key in _LIST_FIELDS and not (
                    isinstance(value, list) and all(isinstance(item, str) for item in value)
                ):
                    raise DatabaseError(f"{key} must be a list of strings")
                assignments.append(f'"{key}" = ?')
                args.append(value)
            sql = f"UPDATE user_preferences SET {', '.join(assignments)} WHERE user_id = ?"
            self.db.execute(sql, *args, user_id)
        except DatabaseError as exc:
            self._log.error("Failed to update user preferences", user_id=user_id, error=str(exc))
            raise

    def add_to_watchlist(self, user_id: str, symbol: str) -> None:
        """Append ``symbol`` to the user's watchlist unless it is already there."""
        try:
            with self.db.transaction():
                row = self.db.query_row(
                    "SELECT watchlist FROM user_preferences WHERE user_id = ?", user_id
                )
                if row is None:
                    return
                watchlist = _load_list(row["watchlist"])
                if symbol in watchlist:
                    return
                self.db.execute(
                    "UPDATE user_preferences SET watchlist = ? WHERE user_id = ?",
                    [*watchlist, symbol],
                    user_id,
                )
        except DatabaseError as exc:
            self._log.error(
                "Failed to add to watchlist", user_id=user_id, symbol=symbol, error=str(exc)
            )
            raise

    def remove_from_watchlist(self, user_id: str, symbol: str) -> None:
        """Remove every occurrence of ``symbol`` from the user's watchlist."""
        try:
            with self.db.transaction():
                row = self.db.query_row(
                    "SELECT watchlist FROM user_preferences WHERE user_id = ?", user_id
                )
                if row is None:
                    return
                watchlist = [item for item in _load_list(row["watchlist"]) if item != symbol]
                self.db.execute(
                    "UPDATE user_preferences SET watchlist = ? WHERE user_id = ?",
                    watchlist,
                    user_id,
                )
        except DatabaseError as exc:
            self._log.error(
                "Failed to remove from watchlist", user_id=user_id, symbol=symbol, error=str(exc)
            )
            raise