"""Authentication endpoints and the user-preference endpoints."""

from __future__ import annotations

import json
from typing import Any

from flask import Flask, jsonify, request

from .auth import (
    auth_required,
    get_session_id,
    get_user_email,
    get_user_id,
    get_user_role,
    optional_auth,
)
from .database import DatabaseError
from .logger import bind
from .responses import error_json
from .user_service import PreferencesNotFound, UserService

LOGIN_UI_URL = "http://localhost:4455/login"
KRATOS_UI_URL = "http://localhost:4455"
KRATOS_LOGIN_API = "http://localhost:4433/self-service/login/browser"
LOGOUT_URL = "http://localhost:4433/self-service/logout/browser"
DEFAULT_RETURN_TO = "http://localhost:8000/dashboard"
LOGOUT_REDIRECT = "http://localhost:8000/"
ALLOWED_PREFERENCE_FIELDS = frozenset({"default_source", "selected_symbols", "watchlist"})


def _current_user() -> dict[str, str]:
    return {"id": get_user_id(), "email": get_user_email(), "role": get_user_role()}


class AuthHandlers:
    """Views for login state, the current user and that user's preferences."""

    def __init__(self, user_service: UserService) -> None:
        self.user_service = user_service
        self._log = bind(component="handler")

    def auth_status(self) -> Any:
        if not get_user_id():
            return jsonify(
                {"authenticated": False, "login_url": LOGIN_UI_URL, "kratos_ui": KRATOS_UI_URL}
            )
        return jsonify(
            {
                "authenticated": True,
                "user": _current_user(),
                "session_id": get_session_id(),
                "logout_url": LOGOUT_URL,
            }
        )

    def get_current_user(self) -> Any:
        user_id = get_user_id()
        try:
            prefs = self.user_service.get_or_create_preferences(user_id, get_user_email())
        except DatabaseError as exc:
            self._log.error("Failed to get user preferences", user_id=user_id, error=str(exc))
            return error_json(500, "Failed to get user preferences")
        return jsonify(
            {
                "user": _current_user(),
                "session_id": get_session_id(),
                "preferences": prefs.to_dict(),
                "authenticated": True,
            }
        )

    def get_login_url(self) -> Any:
        return_to = request.args.get("return_to", "") or DEFAULT_RETURN_TO
        return jsonify(
            {"login_url": LOGIN_UI_URL, "kratos_api": KRATOS_LOGIN_API, "return_to": return_to}
        )

    def logout(self) -> Any:
        self._log.info("User logout", user_id=get_user_id(), session_id=get_session_id())
        return jsonify(
            {
                "message": "To complete logout, visit the logout URL",
                "logout_url": LOGOUT_URL,
                "redirect": LOGOUT_REDIRECT,
            }
        )

    def get_user_preferences(self) -> Any:
        user_id = get_user_id()
        try:
            prefs = self.user_service.get_preferences(user_id)
        except (PreferencesNotFound, DatabaseError) as exc:
            self._log.error("Failed to get user preferences", user_id=user_id, error=repr(exc))
            return error_json(500, "Failed to get preferences")
        return jsonify(prefs.to_dict())

    def update_user_preferences(self) -> Any:
        user_id = get_user_id()
        try:
            updates = json.loads(request.get_data(as_text=True))
        except ValueError as exc:
            return error_json(400, "Invalid request body", str(exc))
        if updates is None:
            updates = {}
        if not isinstance(updates, dict):
            return error_json(400, "Invalid request body", "request body must be a JSON object")

        for name in updates:
            if name not in ALLOWED_PREFERENCE_FIELDS:
                return error_json(400, "Invalid field", f"Field '{name}' is not allowed")

        try:
            self.user_service.update_preferences(user_id, updates)
        except DatabaseError as exc:
            self._log.error("Failed to update user preferences", user_id=user_id, error=str(exc))
            return error_json(500, "Failed to update preferences")
        return jsonify({"message": "Preferences updated successfully"})

    def add_to_watchlist(self, symbol: str) -> Any:
        user_id = get_user_id()
        if not symbol:
            return error_json(400, "Symbol is required")
        try:
            self.user_service.add_to_watchlist(user_id, symbol)
        except DatabaseError as exc:
            self._log.error(
                "Failed to add to watchlist", user_id=user_id, symbol=symbol, error=str(exc)
            )
            return error_json(500, "Failed to add to watchlist")
        return jsonify({"message": "Symbol added to watchlist", "symbol": symbol})

    def remove_from_watchlist(self, symbol: str) -> Any:
        user_id = get_user_id()
        if not symbol:
            return error_json(400, "Symbol is required")
        try:
            self.user_service.remove_from_watchlist(user_id, symbol)
        except DatabaseError as exc:
            self._log.error(
                "Failed to remove from watchlist", user_id=user_id, symbol=symbol, error=str(exc)
            )
            return error_json(500, "Failed to remove from watchlist")
        return jsonify({"message": "Symbol removed from watchlist", "symbol": symbol})

    def register(self, app: Flask) -> Flask:
        watchlist = "/api/v1/preferences/watchlist/<symbol>"
        rules = (
            ("/auth/status", "auth_status", optional_auth(self.auth_status), "GET"),
            ("/auth/me", "get_current_user", auth_required(self.get_current_user), "GET"),
            ("/auth/logout", "logout", self.logout, "POST"),
            ("/auth/login-url", "get_login_url", self.get_login_url, "GET"),
            (
                "/api/v1/preferences",
                "get_user_preferences",
                auth_required(self.get_user_preferences),
                "GET",
            ),
            (
                "/api/v1/preferences",
                "update_user_preferences",
                auth_required(self.update_user_preferences),
                "PUT",
            ),
            (watchlist, "add_to_watchlist", auth_required(self.add_to_watchlist), "POST"),
            (
                watchlist,
                "remove_from_watchlist",
                auth_required(self.remove_from_watchlist),
                "DELETE",
            ),
        )
        for rule, endpoint, view, method in rules:
            app.add_url_rule(rule, endpoint, view, methods=[method])
        return app