import pytest
from fastapi.testclient import TestClient

import database
from auth import create_token
from config import settings


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "jwt_secret", "test-secret")
    monkeypatch.setattr(settings, "analysis_every_n_batches", 0)
    monkeypatch.setattr(settings, "iot_api_key", None)
    monkeypatch.setattr(settings, "alert_debounce_seconds", 300)
    monkeypatch.setattr(settings, "smtp_host", None)
    monkeypatch.setattr(settings, "vapid_public_key", None)
    monkeypatch.setattr(settings, "vapid_private_key", None)
    return settings


@pytest.fixture
def db(tmp_path, monkeypatch):
    manager = database.DatabaseManager(str(tmp_path / "agronex-test.db"))
    monkeypatch.setattr(database, "db_manager", manager)
    return manager


@pytest.fixture
def client(db):
    from main import app

    # Sin context manager para no arrancar el scheduler del lifespan
    return TestClient(app)


@pytest.fixture
def headers_for():
    def _headers(user_id="user-1"):
        return {"Authorization": f"Bearer {create_token(user_id)}"}

    return _headers


@pytest.fixture
def auth_headers(headers_for):
    return headers_for("user-1")
