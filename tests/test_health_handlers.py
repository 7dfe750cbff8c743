import datetime as dt

import pytest
from flask import Flask

from tradedesk.database import Database, run_migrations
from tradedesk.health_handlers import SERVICE_NAME, HealthHandlers
from tradedesk.market_service import MarketService


@pytest.fixture
def db():
    database = Database()
    run_migrations(database)
    yield database
    database.close()


@pytest.fixture
def client(db):
    app = Flask(__name__)
    HealthHandlers(MarketService(db)).register(app)
    return app.test_client()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "healthy"
    assert body["service"] == SERVICE_NAME == "proto-trading-service"
    stamp = dt.datetime.fromisoformat(body["timestamp"])
    assert stamp.tzinfo is not None
    assert abs(dt.datetime.now(dt.timezone.utc) - stamp) < dt.timedelta(minutes=1)


def test_ready_when_database_answers(client):
    response = client.get("/ready")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ready", "database": "connected"}


def test_not_ready_after_database_closed(client, db):
    db.close()
    response = client.get("/ready")
    assert response.status_code == 503
    assert response.get_json() == {"error": "Database not ready"}


def test_health_only_accepts_get(client):
    assert client.post("/health").status_code == 405