from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from workhub import audit, events
from workhub.core.auth import MANAGE_PERMISSION, AuthUser, get_current_user
from workhub.core.config import get_settings
from workhub.core.database import Base, get_db
from workhub.custom_fields.errors import CyclicDependency
from workhub.custom_fields.service import custom_field_service
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
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "admin": AuthUser(sub="admin-1", roles=[MANAGE_PERMISSION]),
        "member": AuthUser(sub="member-1", roles=["user"]),
    }
    state = {"current": "admin"}

    def override_get_current_user() -> AuthUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_definition(test_client: TestClient, body: dict) -> dict:
    response = test_client.post(f"{BASE}/definitions", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_and_list_definitions(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create_definition(
        test_client,
        {"name": "Story Points", "fieldType": "number", "contexts": ["boards"], "position": 2},
    )
    _create_definition(test_client, {"id": "notes", "name": "Notes", "field_type": "text", "contexts": ["forms"]})

    assert created["api_name"] == "story_points"
    assert created["scope"] == "project"
    assert created["project_id"] == "p1"

    listed = test_client.get(f"{BASE}/definitions")
    assert listed.status_code == 200
    assert [row["id"] for row in listed.json()] == ["notes", created["id"]]

    boards = test_client.get(f"{BASE}/definitions", params={"context": "boards"})
    assert [row["id"] for row in boards.json()] == [created["id"]]

    workspace = test_client.get("/api/custom-fields/scopes/workspaces/w1/definitions")
    assert workspace.json() == []


def test_invalid_definition_returns_error_envelope(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post(
        f"{BASE}/definitions",
        json={"name": "Broken", "field_type": "hologram"},
        headers={"X-Correlation-Id": "cf-invalid-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "custom_fields_create_failed"
    assert body["details"]["reason"] == "unknown_field_type"
    assert body["correlation_id"] == "cf-invalid-1"


def test_non_object_body_is_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.put(f"{BASE}/definitions/points", json=["not", "an", "object"])
    assert response.status_code == 422
    assert response.json()["details"]["reason"] == "not_an_object"


def test_cycle_is_rejected_with_path(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_definition(test_client, {"id": "a", "name": "A", "field_type": "formula", "formula": "1"})
    _create_definition(test_client, {"id": "b", "name": "B", "field_type": "formula", "formula": "{a} + 1"})

    response = test_client.put(f"{BASE}/definitions/a", json={"name": "A", "field_type": "formula", "formula": "{b} + 1"})

    assert response.status_code == 422
    details = response.json()["details"]
    assert details["reason"] == "cyclic_dependency"
    assert set(details["cycle"]) == {"a", "b"}


def test_definition_writes_require_manage_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("member")

    response = test_client.post(f"{BASE}/definitions", json={"name": "Points", "field_type": "number"})

    assert response.status_code == 403
    assert response.json()["message"] == f"Missing permission: {MANAGE_PERMISSION}"
    assert test_client.get(f"{BASE}/definitions").status_code == 200


def test_unknown_scope_kind_is_not_found(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.get("/api/custom-fields/scopes/teams/t1/definitions")
    assert response.status_code == 404
    assert response.json()["code"] == "custom_fields_list_failed"


def test_delete_referenced_definition_conflicts(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_definition(test_client, {"id": "points", "name": "Points", "field_type": "number"})
    _create_definition(
        test_client,
        {
            "id": "total",
            "name": "Total",
            "field_type": "rollup",
            "rollup": {"source_field_id": "points", "relationship_name": "children", "aggregation": "sum"},
        },
    )

    conflict = test_client.delete(f"{BASE}/definitions/points")
    assert conflict.status_code == 409
    assert conflict.json()["details"]["referenced_by"] == ["total"]

    missing = test_client.delete(f"{BASE}/definitions/nope")
    assert missing.status_code == 404

    assert test_client.delete(f"{BASE}/definitions/total").status_code == 204
    assert test_client.delete(f"{BASE}/definitions/points").status_code == 204


def test_entity_lifecycle_with_rollup(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_definition(test_client, {"id": "points", "name": "Points", "field_type": "number"})
    _create_definition(
        test_client,
        {
            "id": "total",
            "name": "Total",
            "field_type": "rollup",
            "rollup": {"source_field_id": "points", "relationship_name": "children", "aggregation": "sum"},
        },
    )

    for entity_id, points in (("c1", 3), ("c2", 5)):
        response = test_client.post(f"{BASE}/entities/{entity_id}", json={"values": {"points": points}})
        assert response.status_code == 201
    assert test_client.post(f"{BASE}/entities/c3").status_code == 201
    assert test_client.post(f"{BASE}/entities/t1").status_code == 201

    linked = test_client.put(
        f"{BASE}/entities/t1/relationships/children",
        json={"related_entity_ids": ["c1", "c2", "c3"]},
    )
    assert linked.status_code == 200
    assert linked.json()["values"]["total"] == 8

    updated = test_client.patch(f"{BASE}/entities/c1/values", json={"values": {"points": 10}})
    assert updated.status_code == 200

    read = test_client.get(f"{BASE}/entities/t1")
    assert read.status_code == 200
    assert read.json()["values"]["total"] == 15
    assert read.json()["stale_field_ids"] == []

    refreshed = test_client.post(f"{BASE}/entities/t1/refresh")
    assert refreshed.json()["values"]["total"] == 15

    assert test_client.delete(f"{BASE}/entities/c1").status_code == 204
    assert test_client.get(f"{BASE}/entities/t1").json()["values"]["total"] == 5


def test_invalid_values_are_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_definition(test_client, {"id": "points", "name": "Points", "field_type": "number"})
    test_client.post(f"{BASE}/entities/t1")

    wrong_type = test_client.patch(f"{BASE}/entities/t1/values", json={"values": {"points": "many"}})
    assert wrong_type.status_code == 422
    assert wrong_type.json()["details"] == {"reason": "must_be_number", "field_id": "points"}

    unknown = test_client.patch(f"{BASE}/entities/t1/values", json={"values": {"ghost": 1}})
    assert unknown.status_code == 422
    assert unknown.json()["details"]["reason"] == "unknown_field"


def test_reconfirmation_flow(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_definition(test_client, {"id": "points", "name": "Points", "field_type": "number"})
    _create_definition(
        test_client,
        {
            "id": "best",
            "name": "Best",
            "field_type": "rollup",
            "rollup": {"source_field_id": "points", "relationship_name": "children", "aggregation": "max"},
        },
    )

    changed = test_client.put(f"{BASE}/definitions/points", json={"name": "Points", "field_type": "boolean"})
    assert changed.status_code == 200

    rows = {row["id"]: row for row in test_client.get(f"{BASE}/definitions").json()}
    assert rows["best"]["requires_reconfirmation"] is True

    rejected = test_client.post(f"{BASE}/definitions/best/reconfirm")
    assert rejected.status_code == 422
    assert rejected.json()["details"]["reason"] == "incompatible_aggregation"

    test_client.put(f"{BASE}/definitions/points", json={"name": "Points", "field_type": "date"})
    confirmed = test_client.post(f"{BASE}/definitions/best/reconfirm")
    assert confirmed.status_code == 200
    assert confirmed.json()["requires_reconfirmation"] is False


def test_usage_endpoint_falls_back_to_contexts(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_definition(test_client, {"id": "points", "name": "Points", "field_type": "number", "contexts": ["reports"]})

    response = test_client.get(f"{BASE}/usage")

    assert response.status_code == 200
    body = response.json()
    assert body["is_fallback"] is True
    assert body["metrics"][0]["reports"] == ["Reports"]


def test_definition_events_carry_correlation_id(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post(
        f"{BASE}/definitions",
        json={"id": "points", "name": "Points", "field_type": "number"},
        headers={"X-Correlation-Id": "cf-event-1"},
    )
    assert response.status_code == 201

    created = [item for item in events.published_events if item["event_type"] == "custom_fields.definition.created"]
    assert created[-1]["correlation_id"] == "cf-event-1"
    assert created[-1]["actor_user_id"] == "admin-1"
    assert audit.entries_for("points")[-1]["correlation_id"] == "cf-event-1"


def test_formula_overflow_is_reported_not_raised(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_definition(test_client, {"id": "big", "name": "Big", "field_type": "number"})
    _create_definition(test_client, {"id": "third", "name": "Third", "field_type": "formula", "formula": "{big} / 3"})

    assert test_client.post(f"{BASE}/entities/t1", json={"values": {"big": 10**400}}).status_code == 201
    response = test_client.get(f"{BASE}/entities/t1")

    assert response.status_code == 200
    body = response.json()
    assert body["values"]["third"] is None
    assert body["diagnostics"]["third"][0]["code"] == "numeric_overflow"


@pytest.mark.parametrize(
    ("method", "path", "service_method", "code"),
    [
        ("get", "/entities/t1", "get_entity_fields", "custom_fields_entity_read_failed"),
        ("post", "/entities/t1/refresh", "refresh_entity", "custom_fields_entity_refresh_failed"),
        ("put", "/entities/t1/relationships/children", "set_relationship", "custom_fields_relationship_update_failed"),
        ("get", "/usage", "usage", "custom_fields_usage_failed"),
    ],
)
def test_engine_errors_on_read_routes_use_error_envelope(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
    method: str,
    path: str,
    service_method: str,
    code: str,
) -> None:
    test_client, _ = client

    def fail(*args: object, **kwargs: object) -> None:
        raise CyclicDependency(["a", "b", "a"])

    monkeypatch.setattr(custom_field_service, service_method, fail)
    kwargs = {"json": {"related_entity_ids": ["c1"]}} if method == "put" else {}
    response = test_client.request(method.upper(), f"{BASE}{path}", headers={"X-Correlation-Id": "cf-cycle-1"}, **kwargs)

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == code
    assert body["details"] == {"reason": "cyclic_dependency", "cycle": ["a", "b", "a"]}
    assert body["correlation_id"] == "cf-cycle-1"
