from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from workhub.core.auth import MANAGE_PERMISSION, AuthUser, get_current_user
from workhub.core.config import get_settings
from workhub.core.database import Base, get_db
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def roles() -> list[str]:
    return ["system.metrics.read", MANAGE_PERMISSION]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_custom_field_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    assert client.post(f"{BASE}/definitions", json={"id": "points", "name": "Points", "field_type": "number"}).status_code == 201
    rollup = client.post(
        f"{BASE}/definitions",
        json={
            "id": "total",
            "name": "Total",
            "field_type": "rollup",
            "rollup": {"source_field_id": "points", "relationship_name": "children", "aggregation": "sum"},
        },
    )
    assert rollup.status_code == 201
    rejected = client.post(f"{BASE}/definitions", json={"name": "Broken", "field_type": "hologram"})
    assert rejected.status_code == 422

    assert client.post(f"{BASE}/entities/c1", json={"values": {"points": 2}}).status_code == 201
    assert client.post(f"{BASE}/entities/t1").status_code == 201
    linked = client.put(f"{BASE}/entities/t1/relationships/children", json={"related_entity_ids": ["c1"]})
    assert linked.status_code == 200
    assert client.get(f"{BASE}/usage").status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "custom_field_recomputations_total" in body
    assert "custom_field_definition_rejections_total" in body
    assert "custom_field_usage_fallback_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/custom-fields/scopes/{id}/{id}/entities/{id}/relationships/{id}"' in body
    assert 'field_type="rollup"' in body
    assert 'reason="unknown_field_type"' in body


@pytest.mark.parametrize("roles", [[MANAGE_PERMISSION]])
def test_metrics_endpoint_requires_metrics_role(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
