"""Common JSON response bodies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from flask import jsonify


@dataclass
class ErrorResponse:
    """An error body; ``message`` is left out when empty."""

    error: str
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.message:
            body["message"] = self.message
        return body


@dataclass
class SuccessResponse:
    """A success body; ``data`` is left out when None."""

    message: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        if self.data is not None:
            body["data"] = self.data
        return body


def error_json(status: int, error: str, message: str = "") -> tuple[Any, int]:
    """A Flask response tuple carrying an ErrorResponse with ``status``."""
    return jsonify(ErrorResponse(error, message).to_dict()), status