"""Request logging, error recovery and request ids for a Flask application."""

from __future__ import annotations

import datetime as dt
import time
from typing import Any

from flask import Flask, g, jsonify, request

from .logger import bind

_log = bind(component="http")


def generate_request_id() -> str:
    """A request id made of the current time in nanoseconds."""
    return str(time.time_ns())


def install_request_logger(app: Flask) -> Flask:
    """Log every finished request with its status, latency and size."""

    @app.before_request
    def _start_timer() -> None:
        g._request_started = time.perf_counter()

    @app.after_request
    def _log_request(response: Any) -> Any:
        started = g.get("_request_started")
        elapsed = 0.0 if started is None else time.perf_counter() - started
        path = request.path
        query = request.query_string.decode("latin-1")
        if query:
            path = f"{path}?{query}"
        size = response.calculate_content_length()
        status = response.status_code
        fields = {
            "client_ip": request.remote_addr or "",
            "method": request.method,
            "path": path,
            "status_code": status,
            "latency": dt.timedelta(seconds=elapsed),
            "user_agent": request.headers.get("User-Agent", ""),
            "body_size": -1 if size is None else size,
        }
        if status >= 500:
            _log.error("Server error", **fields)
        elif status >= 400:
            _log.warning("Client error", **fields)
        elif status >= 300:
            _log.info("Redirection", **fields)
        else:
            _log.info("Request completed", **fields)
        return response

    return app


def install_recovery(app: Flask) -> Flask:
    """Turn any unhandled exception into a logged 500 JSON response."""

    @app.errorhandler(Exception)
    def _recover(exc: Exception) -> Any:
        # HTTP errors such as 404 keep their own response.
        if isinstance(getattr(exc, "code", None), int) and hasattr(exc, "get_response"):
            return exc.get_response()
        _log.error(
            "Panic recovered",
            error=repr(exc),
            path=request.path,
            method=request.method,
        )
        return jsonify({"error": "Internal server error"}), 500

    return app


def install_request_id(app: Flask) -> Flask:
    """Give every request an id, taken from X-Request-ID or generated, and echo it back."""

    @app.before_request
    def _assign_request_id() -> None:
        g.request_id = request.headers.get("X-Request-ID") or generate_request_id()

    @app.after_request
    def _echo_request_id(response: Any) -> Any:
        request_id = g.get("request_id")
        if request_id:
            response.headers["X-Request-ID"] = request_id
        return response

    return app