"""Liveness and readiness endpoints."""

from __future__ import annotations

import datetime as dt
from typing import Any

from flask import Flask, jsonify

from .database import DatabaseError
from .market_service import MarketService
from .responses import error_json

SERVICE_NAME = "proto-trading-service"


class HealthHandlers:
    """``/health`` always answers; ``/ready`` answers only while the database does."""

    def __init__(self, market_service: MarketService) -> None:
        self.market_service = market_service

    def health(self) -> Any:
        return jsonify(
            {
                "status": "healthy",
                "timestamp": dt.datetime.now().astimezone().isoformat(),
                "service": SERVICE_NAME,
            }
        )

    def ready(self) -> Any:
        try:
            self.market_service.health_check()
        except DatabaseError:
            return error_json(503, "Database not ready")
        return jsonify({"status": "ready", "database": "connected"})

    def register(self, app: Flask) -> Flask:
        app.add_url_rule("/health", "health", self.health, methods=["GET"])
        app.add_url_rule("/ready", "ready", self.ready, methods=["GET"])
        return app