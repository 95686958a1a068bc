from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, inspect, select, update
from sqlalchemy.orm import Session

from workhub.custom_fields.errors import UsageSummaryUnavailable
from workhub.custom_fields.models import (
    CustomFieldDefinition,
    CustomFieldRelationship,
    CustomFieldRelationshipChange,
    CustomFieldUsageSummary,
    CustomFieldValue,
    utcnow,
)
from workhub.custom_fields.schemas import FieldScope, FieldValue


_VALIDATION_RULE_KEYS = ("conditional_rules", "governance", "default_value", "requires_reconfirmation")


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return None


class SqlDefinitionStore:
    """Definition rows <-> raw definition dicts.

    Conditional rules, governance, default value and the reconfirmation flag live in the
    ``validation_rules`` JSON column; rollup and mirror payloads share ``rollup_config``.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self, scope: FieldScope, contexts: Iterable[str] | None = None) -> list[dict[str, Any]]:
        stmt = select(CustomFieldDefinition).where(CustomFieldDefinition.scope == scope.kind)
        if scope.kind == "global":
            stmt = stmt.where(CustomFieldDefinition.workspace_id == scope.workspace_id)
        else:
            stmt = stmt.where(CustomFieldDefinition.project_id == scope.project_id)
        rows = self.session.scalars(
            stmt.order_by(CustomFieldDefinition.position.asc(), CustomFieldDefinition.name.asc())
        ).all()
        wanted = set(contexts) if contexts is not None else None
        return [self._to_raw(row) for row in rows if wanted is None or wanted & set(row.contexts or [])]

    def get(self, definition_id: str) -> dict[str, Any] | None:
        row = self.session.get(CustomFieldDefinition, definition_id)
        return self._to_raw(row) if row is not None else None

    def upsert(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        row = self.session.get(CustomFieldDefinition, str(raw["id"]))
        if row is None:
            row = CustomFieldDefinition(id=str(raw["id"]))
            row.created_at = _parse_timestamp(raw.get("created_at")) or utcnow()

        field_type = raw["field_type"]
        row.scope = raw["scope"]
        row.project_id = raw.get("project_id")
        row.workspace_id = raw.get("workspace_id")
        row.name = raw["name"]
        row.api_name = raw["api_name"]
        row.description = raw.get("description")
        row.field_type = field_type
        row.contexts = list(raw.get("contexts") or [])
        row.option_set = raw.get("option_set")
        row.formula = raw.get("formula")
        row.rollup_config = raw.get("mirror") if field_type == "mirror" else raw.get("rollup")
        row.validation_rules = {key: raw.get(key) for key in _VALIDATION_RULE_KEYS}
        row.is_required = bool(raw.get("is_required"))
        row.is_private = bool(raw.get("is_private"))
        row.position = int(raw.get("position") or 0)
        row.updated_at = utcnow()
        self.session.add(row)
        self.session.flush()
        return self._to_raw(row)

    def delete(self, definition_id: str) -> None:
        self.session.execute(delete(CustomFieldDefinition).where(CustomFieldDefinition.id == definition_id))

    def _to_raw(self, row: CustomFieldDefinition) -> dict[str, Any]:
        rules = row.validation_rules or {}
        return {
            "id": row.id,
            "name": row.name,
            "api_name": row.api_name,
            "description": row.description,
            "scope": row.scope,
            "project_id": row.project_id,
            "workspace_id": row.workspace_id,
            "field_type": row.field_type,
            "contexts": list(row.contexts or []),
            "option_set": row.option_set,
            "formula": row.formula,
            "rollup": row.rollup_config if row.field_type == "rollup" else None,
            "mirror": row.rollup_config if row.field_type == "mirror" else None,
            "conditional_rules": rules.get("conditional_rules") or [],
            "governance": rules.get("governance"),
            "default_value": rules.get("default_value"),
            "requires_reconfirmation": bool(rules.get("requires_reconfirmation")),
            "is_required": row.is_required,
            "is_private": row.is_private,
            "position": row.position,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }


class SqlValueStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, entity_id: str) -> dict[str, FieldValue]:
        rows = self.session.scalars(select(CustomFieldValue).where(CustomFieldValue.entity_id == entity_id)).all()
        return {
            row.field_id: FieldValue(
                entity_id=row.entity_id,
                field_id=row.field_id,
                value=row.value,
                computed_at=row.computed_at,
            )
            for row in rows
        }

    def set(self, entity_id: str, values: Mapping[str, FieldValue]) -> None:
        """Stages every value for one entity; the caller commits them together."""
        existing = {
            row.field_id: row
            for row in self.session.scalars(
                select(CustomFieldValue).where(
                    and_(CustomFieldValue.entity_id == entity_id, CustomFieldValue.field_id.in_(list(values)))
                )
            ).all()
        }
        for field_id, field_value in values.items():
            row = existing.get(field_id)
            if row is None:
                row = CustomFieldValue(entity_id=entity_id, field_id=field_id)
            row.value = field_value.value
            row.computed_at = field_value.computed_at
            row.updated_at = utcnow()
            self.session.add(row)
        self.session.flush()

    def delete_entity(self, entity_id: str) -> None:
        self.session.execute(delete(CustomFieldValue).where(CustomFieldValue.entity_id == entity_id))

    def delete_field(self, field_id: str) -> None:
        self.session.execute(delete(CustomFieldValue).where(CustomFieldValue.field_id == field_id))

    def invalidate(self, field_ids: Iterable[str], entity_ids: Iterable[str] | None = None) -> None:
        targets = list(field_ids)
        if not targets:
            return
        stmt = update(CustomFieldValue).where(CustomFieldValue.field_id.in_(targets))
        if entity_ids is not None:
            stmt = stmt.where(CustomFieldValue.entity_id.in_(list(entity_ids)))
        self.session.execute(stmt.values(computed_at=None).execution_options(synchronize_session="fetch"))


class SqlRelationshipResolver:
    def __init__(self, session: Session) -> None:
        self.session = session

    def resolve(self, entity_id: str, relationship_name: str) -> list[str]:
        rows = self.session.scalars(
            select(CustomFieldRelationship)
            .where(
                and_(
                    CustomFieldRelationship.entity_id == entity_id,
                    CustomFieldRelationship.relationship_name == relationship_name,
                )
            )
            .order_by(CustomFieldRelationship.position.asc())
        ).all()
        return [row.related_entity_id for row in rows]

    def changed_at(self, entity_id: str, relationship_name: str) -> datetime | None:
        row = self._change_row(entity_id, relationship_name)
        return row.changed_at if row is not None else None

    def set_members(self, entity_id: str, relationship_name: str, related_entity_ids: Iterable[str]) -> None:
        self.session.execute(
            delete(CustomFieldRelationship).where(
                and_(
                    CustomFieldRelationship.entity_id == entity_id,
                    CustomFieldRelationship.relationship_name == relationship_name,
                )
            )
        )
        for position, related_entity_id in enumerate(dict.fromkeys(related_entity_ids)):
            self.session.add(
                CustomFieldRelationship(
                    entity_id=entity_id,
                    relationship_name=relationship_name,
                    related_entity_id=related_entity_id,
                    position=position,
                )
            )

        change = self._change_row(entity_id, relationship_name)
        if change is None:
            change = CustomFieldRelationshipChange(entity_id=entity_id, relationship_name=relationship_name)
        change.changed_at = utcnow()
        self.session.add(change)
        self.session.flush()

    def referencing(self, related_entity_id: str) -> list[tuple[str, str]]:
        rows = self.session.execute(
            select(CustomFieldRelationship.entity_id, CustomFieldRelationship.relationship_name)
            .where(CustomFieldRelationship.related_entity_id == related_entity_id)
            .distinct()
        ).all()
        return [(row.entity_id, row.relationship_name) for row in rows]

    def _change_row(self, entity_id: str, relationship_name: str) -> CustomFieldRelationshipChange | None:
        return self.session.scalar(
            select(CustomFieldRelationshipChange).where(
                and_(
                    CustomFieldRelationshipChange.entity_id == entity_id,
                    CustomFieldRelationshipChange.relationship_name == relationship_name,
                )
            )
        )


class SqlUsageSummarySource:
    """Reads the precomputed usage aggregate; a disabled, missing or empty aggregate is unavailable."""

    def __init__(self, session: Session, *, enabled: bool = True) -> None:
        self.session = session
        self.enabled = enabled

    def summary(self, scope: FieldScope) -> list[dict[str, Any]]:
        if not self.enabled:
            raise UsageSummaryUnavailable("usage summary disabled")
        if not inspect(self.session.get_bind()).has_table(CustomFieldUsageSummary.__tablename__):
            raise UsageSummaryUnavailable("usage summary table missing")

        rows = self.session.scalars(
            select(CustomFieldUsageSummary)
            .where(CustomFieldUsageSummary.scope_key == scope.label())
            .order_by(CustomFieldUsageSummary.field_name.asc())
        ).all()
        if not rows:
            raise UsageSummaryUnavailable(f"no usage summary for {scope.label()}")
        return [
            {
                "field_id": row.field_id,
                "field_name": row.field_name,
                "screens": row.screens,
                "automations": row.automations,
                "reports": row.reports,
                "last_used_at": row.last_used_at,
                "usage_count": row.usage_count,
            }
            for row in rows
        ]
