"""Session authentication against an Ory Kratos server, as Flask view decorators."""

from __future__ import annotations

import datetime as dt
import functools
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import flask
import requests
from flask import g, has_app_context, jsonify, make_response

from .logger import bind

_log = bind(component="auth")

SESSION_COOKIE = "ory_kratos_session"
KRATOS_UI_LOGIN = "http://localhost:4455/login"
DEFAULT_ROLE = "trader"
USER_AGENT = "proto-trading-service/1.0"
REQUEST_TIMEOUT = 10.0

_TIMESTAMP = re.compile(
    r"^(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|z|[+-]\d{2}:\d{2})?$"
)


class SessionValidationError(Exception):
    """Raised when a session token cannot be validated."""


@dataclass
class KratosIdentity:
    """The identity a session belongs to."""

    id: str = ""
    traits: dict[str, Any] = field(default_factory=dict)
    state: str = ""


def _parse_time(value: Any) -> dt.datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp: {value!r}")
    match = _TIMESTAMP.match(value.strip())
    if match is None:
        raise ValueError(f"invalid timestamp: {value!r}")
    base, fraction, zone = match.groups()
    text = base.replace(" ", "T")
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    if zone and zone not in ("Z", "z"):
        text += zone
    moment = dt.datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return moment


def _string(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


@dataclass
class KratosSession:
    """A session as reported by the Kratos whoami endpoint."""

    id: str = ""
    active: bool = False
    identity: KratosIdentity = field(default_factory=KratosIdentity)
    authenticated_at: dt.datetime | None = None
    expires_at: dt.datetime | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> "KratosSession":
        """Decode a whoami response body; raise ValueError if it is malformed."""
        if not isinstance(payload, Mapping):
            raise ValueError("session must be a JSON object")
        active = payload.get("active", False)
        if active is None:
            active = False
        if not isinstance(active, bool):
            raise ValueError("active must be a boolean")
        identity_payload = payload.get("identity") or {}
        if not isinstance(identity_payload, Mapping):
            raise ValueError("identity must be a JSON object")
        traits = identity_payload.get("traits") or {}
        if not isinstance(traits, Mapping):
            raise ValueError("traits must be a JSON object")
        identity = KratosIdentity(
            id=_string(identity_payload, "id"),
            traits=dict(traits),
            state=_string(identity_payload, "state"),
        )
        return cls(
            id=_string(payload, "id"),
            active=active,
            identity=identity,
            authenticated_at=_parse_time(payload.get("authenticated_at")),
            expires_at=_parse_time(payload.get("expires_at")),
        )


@dataclass(frozen=True)
class AuthConfig:
    """Where to reach Kratos: internally for validation, from the browser for login."""

    kratos_internal_url: str
    kratos_browser_url: str


class _AuthState:
    config: AuthConfig | None = None


_state = _AuthState()


def init_auth_config(internal_url: str, browser_url: str) -> AuthConfig:
    """Set the Kratos URLs used by the decorators and return the configuration."""
    _state.config = AuthConfig(kratos_internal_url=internal_url, kratos_browser_url=browser_url)
    return _state.config


def reset_auth_config() -> None:
    """Forget the configured Kratos URLs."""
    _state.config = None


def extract_session_token(request: Any) -> str:
    """Find the session token in the cookie, the Authorization header or X-Session-Token."""
    cookie = request.cookies.get(SESSION_COOKIE, "")
    if cookie:
        return cookie
    auth_header = request.headers.get("Authorization", "")
    if auth_header:
        for prefix in ("Bearer ", "Session "):
            if auth_header.startswith(prefix):
                return auth_header[len(prefix):]
    return request.headers.get("X-Session-Token", "")


def mask_token(token: str) -> str:
    """Shorten a token for logs to its first and last four characters."""
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


def validate_session(session_token: str) -> KratosSession:
    """Ask Kratos who owns ``session_token``; raise SessionValidationError on failure."""
    config = _state.config
    if config is None:
        raise SessionValidationError("auth config not initialized")
    url = config.kratos_internal_url + "/sessions/whoami"
    _log.info(
        "Session validation debug",
        kratos_url=url,
        kratos_internal_url=config.kratos_internal_url,
        kratos_browser_url=config.kratos_browser_url,
        token_hint=mask_token(session_token),
    )
    headers = {
        "Authorization": "Bearer " + session_token,
        "X-Session-Token": session_token,
        "Cookie": f"{SESSION_COOKIE}={session_token}",
        "User-Agent": USER_AGENT,
    }
    try:
        response = requests.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as exc:
        raise SessionValidationError(f"network error contacting Kratos: {exc}") from exc

    with response:
        _log.info(
            "Kratos response debug",
            url=url,
            status_code=response.status_code,
            status=f"{response.status_code} {response.reason or ''}".strip(),
        )
        if response.status_code == 200:
            try:
                return KratosSession.from_dict(response.json())
            except ValueError as exc:
                raise SessionValidationError(
                    f"failed to decode session response: {exc}"
                ) from exc
        if response.status_code == 401:
            raise SessionValidationError("unauthorized: invalid or expired session")
        if response.status_code == 403:
            raise SessionValidationError("forbidden: session validation failed")
        raise SessionValidationError(
            f"unexpected response from Kratos: {response.status_code}"
        )


def _unauthorized(config: AuthConfig, error: str):
    body = {
        "error": error,
        "login_url": config.kratos_browser_url + "/self-service/login/browser",
        "kratos_ui": KRATOS_UI_LOGIN,
    }
    return jsonify(body), 401


def _store_session(session: KratosSession) -> None:
    g.user_id = session.identity.id
    g.user_traits = session.identity.traits
    g.session = session
    g.session_id = session.id


def auth_required(view: Callable[..., Any]) -> Callable[..., Any]:
    """Reject the request with 401 unless it carries a valid, active, unexpired session."""

    @functools.wraps(view)
    def wrapper(*args: Any, **kwargs: Any):
        current = flask.request
        config = _state.config
        if config is None:
            _log.error("Auth config not initialized")
            return jsonify({"error": "Authentication service not configured"}), 500

        token = extract_session_token(current)
        if not token:
            _log.warning(
                "No session token provided",
                path=current.path,
                method=current.method,
                user_agent=current.headers.get("User-Agent", ""),
            )
            return _unauthorized(config, "Authentication required")

        try:
            session = validate_session(token)
        except SessionValidationError as exc:
            _log.error(
                "Session validation failed",
                error=str(exc),
                token_hint=mask_token(token),
                path=current.path,
            )
            return _unauthorized(config, "Invalid or expired session")

        if not session.active:
            _log.warning("Inactive session", session_id=session.id, identity_id=session.identity.id)
            return _unauthorized(config, "Session inactive")

        now = dt.datetime.now(dt.timezone.utc)
        if session.expires_at is None or now > session.expires_at:
            _log.warning("Expired session", session_id=session.id, expires_at=session.expires_at)
            return _unauthorized(config, "Session expired")

        _store_session(session)
        _log.debug(
            "Authentication successful",
            user_id=session.identity.id,
            session_id=session.id,
            path=current.path,
        )
        response = make_response(view(*args, **kwargs))
        response.headers["X-User-ID"] = session.identity.id
        response.headers["X-Session-ID"] = session.id
        return response

    return wrapper


def optional_auth(view: Callable[..., Any]) -> Callable[..., Any]:
    """Attach the user to the request when a valid active session is present; never reject."""

    @functools.wraps(view)
    def wrapper(*args: Any, **kwargs: Any):
        if _state.config is not None:
            token = extract_session_token(flask.request)
            if token:
                try:
                    session = validate_session(token)
                except SessionValidationError:
                    session = None
                if session is not None and session.active:
                    _store_session(session)
        return view(*args, **kwargs)

    return wrapper


def role_required(required_role: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Reject with 403 unless the authenticated user has ``required_role``."""

    def decorator(view: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(view)
        def wrapper(*args: Any, **kwargs: Any):
            if "user_traits" not in g:
                _log.error("No user traits found in context")
                return jsonify({"error": "Access denied - no user context"}), 403
            traits = g.user_traits
            if not isinstance(traits, Mapping):
                _log.error("Invalid user traits format")
                return jsonify({"error": "Access denied - invalid user data"}), 403
            role = traits.get("role")
            if not isinstance(role, str):
                role = DEFAULT_ROLE
            if role != required_role:
                _log.warning(
                    "Insufficient permissions",
                    user_id=get_user_id(),
                    user_role=role,
                    required_role=required_role,
                    path=flask.request.path,
                )
                return (
                    jsonify(
                        {
                            "error": "Insufficient permissions",
                            "required_role": required_role,
                            "user_role": role,
                        }
                    ),
                    403,
                )
            return view(*args, **kwargs)

        return wrapper

    return decorator


def _context_value(name: str) -> Any:
    if not has_app_context():
        return None
    return g.get(name)


def _trait(name: str) -> str | None:
    traits = _context_value("user_traits")
    if isinstance(traits, Mapping):
        value = traits.get(name)
        if isinstance(value, str):
            return value
    return None


def get_user_id() -> str:
    """The authenticated user's id, or an empty string."""
    value = _context_value("user_id")
    return value if isinstance(value, str) else ""


def get_user_email() -> str:
    """The authenticated user's e-mail trait, or an empty string."""
    return _trait("email") or ""


def get_user_role() -> str:
    """The authenticated user's role trait, defaulting to ``trader``."""
    role = _trait("role")
    return DEFAULT_ROLE if role is None else role


def get_session_id() -> str:
    """The current session id, or an empty string."""
    value = _context_value("session_id")
    return value if isinstance(value, str) else ""