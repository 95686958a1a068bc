from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from workhub.core.auth import MANAGE_PERMISSION, AuthUser, get_current_user
from workhub.core.config import get_settings
from workhub.core.database import Base, get_db
from workhub.logging import JsonLogFormatter
from workhub.main import app


BASE = "/api/custom-fields/scopes/projects/p1"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=[MANAGE_PERMISSION])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"{BASE}/entities/task-1", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "workhub.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/custom-fields/scopes/{id}/{id}/entities/{id}"
        and getattr(record, "status_code", None) == 200
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_rejected_definition_is_logged_with_reason(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.post(
        f"{BASE}/definitions",
        json={"id": "total", "name": "Total", "field_type": "rollup"},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 422

    records = [record for record in caplog.records if record.name == "workhub.custom_fields"]
    assert any(
        record.getMessage() == "custom_field.definition_rejected"
        and getattr(record, "reason", None) == response.json()["details"]["reason"]
        and getattr(record, "correlation_id", None) == "abc-456"
        and getattr(record, "scope", None) == "project:p1"
        for record in records
    )


def test_json_formatter_renders_known_fields() -> None:
    record = logging.LogRecord("workhub.custom_fields", logging.INFO, __file__, 1, "custom_field.definition_saved", None, None)
    record.field_id = "points"
    record.correlation_id = "abc-789"

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "custom_field.definition_saved"
    assert payload["logger"] == "workhub.custom_fields"
    assert payload["fields"]["field_id"] == "points"
    assert payload["correlation_id"] == "abc-789"


def test_request_log_carries_field_scope_and_entity(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"{BASE}/entities/task-7")
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "workhub.request" and record.getMessage() == "http.request"]
    assert records
    assert getattr(records[-1], "scope", None) == "project:p1"
    assert getattr(records[-1], "entity_id", None) == "task-7"
