"""Cross-origin resource sharing and security headers for a Flask application."""

from __future__ import annotations

import datetime as dt
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import flask
from flask import Flask, g

from .logger import bind

_log = bind(component="cors")

DEFAULT_ORIGINS = (
    "http://localhost:8000",
    "http://127.0.0.1:8000",
    "http://localhost:4455",
    "http://127.0.0.1:4455",
    "http://localhost:8080",
)

ALLOW_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD")

ALLOW_HEADERS = (
    "Origin",
    "Content-Type",
    "Accept",
    "Authorization",
    "X-Requested-With",
    "X-HTTP-Method-Override",
    "Cookie",
    "X-Session-Token",
    "X-CSRF-Token",
    "X-Request-ID",
    "X-User-ID",
    "X-API-Key",
    "Accept-Language",
    "Accept-Encoding",
    "Cache-Control",
    "Pragma",
)

EXPOSE_HEADERS = (
    "Content-Length",
    "Content-Type",
    "Content-Disposition",
    "Set-Cookie",
    "X-Session-Token",
    "X-Request-ID",
    "X-User-ID",
    "X-Session-ID",
    "Location",
    "X-Total-Count",
    "X-Rate-Limit",
)

PREFLIGHT_MAX_AGE = "86400"

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' 'unsafe-eval'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: https:; "
    "font-src 'self' data:; "
    "connect-src 'self' http://localhost:* ws://localhost:*; "
    "frame-ancestors 'none'"
)

_LOCAL_PREFIXES = ("http://localhost:", "http://127.0.0.1:")


def load_allowed_origins(environ: Mapping[str, str] | None = None) -> list[str]:
    """Origins from the comma-separated CORS_ORIGINS variable, or the development defaults."""
    env = os.environ if environ is None else environ
    raw = env.get("CORS_ORIGINS", "")
    if raw:
        return [origin.strip() for origin in raw.split(",")]
    return list(DEFAULT_ORIGINS)


def _same_origin(req: Any, origin: str) -> bool:
    host = req.host
    return origin in (f"http://{host}", f"https://{host}")


@dataclass
class CorsPolicy:
    """Which origins may call the API and which headers they may use and see."""

    allowed_origins: Sequence[str] = field(default_factory=lambda: list(DEFAULT_ORIGINS))
    debug: bool = False
    allow_methods: Sequence[str] = ALLOW_METHODS
    allow_headers: Sequence[str] = ALLOW_HEADERS
    expose_headers: Sequence[str] = EXPOSE_HEADERS
    allow_credentials: bool = True
    max_age: dt.timedelta = dt.timedelta(hours=12)

    def is_origin_allowed(self, origin: str) -> bool:
        """In debug mode any local origin passes; otherwise only the listed ones."""
        if self.debug and origin.startswith(_LOCAL_PREFIXES):
            return True
        if origin in self.allowed_origins:
            return True
        _log.warning(
            "CORS: Origin not allowed",
            origin=origin,
            allowed_origins=list(self.allowed_origins),
        )
        return False

    def apply(self, request: Any, response: Any) -> Any:
        """Add the CORS headers this request calls for to ``response`` and return it."""
        origin = request.headers.get("Origin", "")
        if not origin or _same_origin(request, origin) or not self.is_origin_allowed(origin):
            return response
        headers = response.headers
        headers["Access-Control-Allow-Origin"] = origin
        if self.allow_credentials:
            headers["Access-Control-Allow-Credentials"] = "true"
        if request.method == "OPTIONS":
            headers["Access-Control-Allow-Methods"] = ",".join(self.allow_methods)
            headers["Access-Control-Allow-Headers"] = ",".join(self.allow_headers)
            headers["Access-Control-Max-Age"] = str(int(self.max_age.total_seconds()))
            vary = ("Origin", "Access-Control-Request-Method", "Access-Control-Request-Headers")
        else:
            if self.expose_headers:
                headers["Access-Control-Expose-Headers"] = ",".join(self.expose_headers)
            vary = ("Origin",)
        for name in vary:
            response.vary.add(name)
        return response


def install_cors(app: Flask, policy: CorsPolicy | None = None) -> Flask:
    """Answer preflights for allowed origins, refuse other origins with 403, tag responses."""
    if policy is None:
        policy = CorsPolicy(load_allowed_origins(), debug=app.debug)
    _log.info("CORS configuration", allowed_origins=list(policy.allowed_origins))

    @app.before_request
    def _cors_check() -> Any:
        current = flask.request
        origin = current.headers.get("Origin", "")
        if not origin:
            return None
        if current.method == "OPTIONS":
            _log.debug(
                "CORS preflight request",
                origin=origin,
                method=current.headers.get("Access-Control-Request-Method", ""),
                headers=current.headers.get("Access-Control-Request-Headers", ""),
            )
        if _same_origin(current, origin):
            return None
        if not policy.is_origin_allowed(origin):
            g._cors_handled = True
            return app.response_class(status=403)
        if current.method == "OPTIONS":
            g._cors_handled = True
            return policy.apply(current, app.response_class(status=204))
        return None

    @app.after_request
    def _cors_headers(response: Any) -> Any:
        current = flask.request
        if not g.get("_cors_handled"):
            policy.apply(current, response)
        origin = current.headers.get("Origin", "")
        if origin:
            _log.debug(
                "CORS response",
                origin=origin,
                allow_origin=response.headers.get("Access-Control-Allow-Origin", ""),
                allow_credentials=response.headers.get("Access-Control-Allow-Credentials", ""),
                expose_headers=response.headers.get("Access-Control-Expose-Headers", ""),
            )
        return response

    return app


def install_preflight(app: Flask) -> Flask:
    """Answer any OPTIONS request that reaches it with 204 and a one-day max age."""

    @app.before_request
    def _preflight() -> Any:
        current = flask.request
        if current.method != "OPTIONS":
            return None
        _log.debug(
            "Handling CORS preflight",
            origin=current.headers.get("Origin", ""),
            requested_method=current.headers.get("Access-Control-Request-Method", ""),
            requested_headers=current.headers.get("Access-Control-Request-Headers", ""),
        )
        response = app.response_class(status=204)
        response.headers["Access-Control-Max-Age"] = PREFLIGHT_MAX_AGE
        return response

    return app


def install_security_headers(app: Flask) -> Flask:
    """Add the standard security headers; HSTS only outside debug mode over HTTPS."""

    @app.after_request
    def _security_headers(response: Any) -> Any:
        headers = response.headers
        headers["X-Content-Type-Options"] = "nosniff"
        headers["X-Frame-Options"] = "DENY"
        headers["X-XSS-Protection"] = "1; mode=block"
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if not app.debug and flask.request.is_secure:
            headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"
        headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
        return response

    return app