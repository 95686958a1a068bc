from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, Protocol

from workhub.custom_fields.errors import UsageSummaryUnavailable
from workhub.custom_fields.schemas import FieldScope, FieldValue
from workhub.custom_fields.usage import UsageSummarySource


__all__ = [
    "DefinitionStore",
    "InMemoryDefinitionStore",
    "InMemoryRelationshipResolver",
    "InMemoryUsageSummarySource",
    "InMemoryValueStore",
    "RelationshipResolver",
    "UsageSummarySource",
    "ValueStore",
    "raw_in_scope",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DefinitionStore(Protocol):
    def list(self, scope: FieldScope, contexts: Iterable[str] | None = None) -> list[dict[str, Any]]: ...

    def get(self, definition_id: str) -> dict[str, Any] | None: ...

    def upsert(self, raw: Mapping[str, Any]) -> dict[str, Any]: ...

    def delete(self, definition_id: str) -> None: ...


class ValueStore(Protocol):
    def get(self, entity_id: str) -> dict[str, FieldValue]: ...

    def set(self, entity_id: str, values: Mapping[str, FieldValue]) -> None: ...

    def delete_entity(self, entity_id: str) -> None: ...

    def delete_field(self, field_id: str) -> None: ...

    def invalidate(self, field_ids: Iterable[str], entity_ids: Iterable[str] | None = None) -> None: ...


class RelationshipResolver(Protocol):
    def resolve(self, entity_id: str, relationship_name: str) -> list[str]: ...

    def changed_at(self, entity_id: str, relationship_name: str) -> datetime | None: ...

    def set_members(self, entity_id: str, relationship_name: str, related_entity_ids: Iterable[str]) -> None: ...

    def referencing(self, related_entity_id: str) -> list[tuple[str, str]]: ...


def raw_in_scope(raw: Mapping[str, Any], scope: FieldScope) -> bool:
    workspace_id = raw.get("workspace_id")
    kind = raw.get("scope") or ("global" if workspace_id else "project")
    if kind != scope.kind:
        return False
    if scope.kind == "global":
        return workspace_id == scope.workspace_id
    return raw.get("project_id") == scope.project_id


def _matches_contexts(raw: Mapping[str, Any], contexts: Iterable[str] | None) -> bool:
    if contexts is None:
        return True
    wanted = set(contexts)
    return bool(wanted & set(raw.get("contexts") or []))


class InMemoryDefinitionStore:
    def __init__(self, raws: Iterable[Mapping[str, Any]] = ()) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        for raw in raws:
            self.upsert(raw)

    def list(self, scope: FieldScope, contexts: Iterable[str] | None = None) -> list[dict[str, Any]]:
        rows = [
            copy.deepcopy(row)
            for row in self._rows.values()
            if raw_in_scope(row, scope) and _matches_contexts(row, contexts)
        ]
        return sorted(rows, key=lambda row: (row.get("position") or 0, row.get("name") or ""))

    def get(self, definition_id: str) -> dict[str, Any] | None:
        row = self._rows.get(definition_id)
        return copy.deepcopy(row) if row is not None else None

    def upsert(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        row = copy.deepcopy(dict(raw))
        if not row.get("id"):
            raise ValueError("definition rows need an id")
        self._rows[str(row["id"])] = row
        return copy.deepcopy(row)

    def delete(self, definition_id: str) -> None:
        self._rows.pop(definition_id, None)


class InMemoryValueStore:
    def __init__(self) -> None:
        self._values: dict[str, dict[str, FieldValue]] = {}

    def get(self, entity_id: str) -> dict[str, FieldValue]:
        return dict(self._values.get(entity_id, {}))

    def set(self, entity_id: str, values: Mapping[str, FieldValue]) -> None:
        merged = dict(self._values.get(entity_id, {}))
        merged.update(values)
        self._values[entity_id] = merged

    def delete_entity(self, entity_id: str) -> None:
        self._values.pop(entity_id, None)

    def delete_field(self, field_id: str) -> None:
        for values in self._values.values():
            values.pop(field_id, None)

    def invalidate(self, field_ids: Iterable[str], entity_ids: Iterable[str] | None = None) -> None:
        targets = set(field_ids)
        entities = None if entity_ids is None else set(entity_ids)
        for entity_id, values in self._values.items():
            if entities is not None and entity_id not in entities:
                continue
            for field_id in targets & values.keys():
                values[field_id] = values[field_id].model_copy(update={"computed_at": None})


class InMemoryRelationshipResolver:
    def __init__(self) -> None:
        self._members: dict[tuple[str, str], list[str]] = {}
        self._changed: dict[tuple[str, str], datetime] = {}

    def resolve(self, entity_id: str, relationship_name: str) -> list[str]:
        return list(self._members.get((entity_id, relationship_name), []))

    def changed_at(self, entity_id: str, relationship_name: str) -> datetime | None:
        return self._changed.get((entity_id, relationship_name))

    def set_members(self, entity_id: str, relationship_name: str, related_entity_ids: Iterable[str]) -> None:
        key = (entity_id, relationship_name)
        self._members[key] = list(dict.fromkeys(related_entity_ids))
        self._changed[key] = utcnow()

    def referencing(self, related_entity_id: str) -> list[tuple[str, str]]:
        return [key for key, members in self._members.items() if related_entity_id in members]


class InMemoryUsageSummarySource:
    """Usage rows keyed by scope label; a scope without rows is reported as unavailable."""

    def __init__(self, rows: Mapping[str, list[dict[str, Any]]] | None = None) -> None:
        self._rows = dict(rows or {})

    def summary(self, scope: FieldScope) -> list[dict[str, Any]]:
        label = scope.label()
        if label not in self._rows:
            raise UsageSummaryUnavailable(label)
        return [dict(row) for row in self._rows[label]]
