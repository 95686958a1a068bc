from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy.orm import Session

from workhub import audit, events
from workhub.context import get_correlation_id
from workhub.core.auth import MANAGE_PERMISSION, AuthUser
from workhub.core.config import get_settings
from workhub.custom_fields.collaborators import DefinitionStore, RelationshipResolver, ValueStore, raw_in_scope
from workhub.custom_fields.engine import CustomFieldEngine, DerivedOutcome
from workhub.custom_fields.errors import (
    CyclicDependency,
    DefinitionInUse,
    DefinitionInvalid,
    DefinitionNotFound,
    FieldValueInvalid,
)
from workhub.custom_fields.repositories import (
    SqlDefinitionStore,
    SqlRelationshipResolver,
    SqlUsageSummarySource,
    SqlValueStore,
)
from workhub.custom_fields.schemas import (
    EntityFieldState,
    FieldDefinition,
    FieldScope,
    FieldTypeRead,
    FieldValue,
    FormulaDiagnostic,
    RelatedEntity,
    UsageResult,
)
from workhub.custom_fields.usage import UsageMetricsAggregator
from workhub.custom_fields.visibility import VisibilityOutcome
from workhub.metrics import (
    observe_definition_rejected,
    observe_formula_diagnostic,
    observe_recomputation,
    observe_usage_fallback,
    observe_visibility_fail_open,
)


logger = logging.getLogger("workhub.custom_fields")
tracer = trace.get_tracer("workhub.custom_fields")

DEFINITION_ENTITY_TYPE = "custom_fields.definition"
_SCOPE_KEYS = ("scope", "project_id", "projectId", "workspace_id", "workspaceId")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CustomFieldStores:
    definitions: DefinitionStore
    values: ValueStore
    relationships: RelationshipResolver


def sql_stores(session: Session) -> CustomFieldStores:
    return CustomFieldStores(
        definitions=SqlDefinitionStore(session),
        values=SqlValueStore(session),
        relationships=SqlRelationshipResolver(session),
    )


class CustomFieldService:
    def __init__(
        self,
        engine: CustomFieldEngine | None = None,
        stores_factory: Callable[[Session], CustomFieldStores] = sql_stores,
    ) -> None:
        self.engine = engine or CustomFieldEngine(formula_max_length=get_settings().formula_max_length)
        self.stores_factory = stores_factory

    def list_definitions(
        self,
        session: Session,
        scope: FieldScope,
        contexts: Iterable[str] | None = None,
    ) -> list[FieldDefinition]:
        with tracer.start_as_current_span("custom_fields.list_definitions") as span:
            span.set_attribute("scope", scope.label())
            definitions = self._load_definitions(self.stores_factory(session), scope)
            wanted = set(contexts or [])
            if wanted:
                definitions = [definition for definition in definitions if wanted & set(definition.contexts)]
            return definitions

    def upsert_definition(
        self,
        session: Session,
        scope: FieldScope,
        raw: Mapping[str, Any],
        actor_user: AuthUser,
    ) -> FieldDefinition:
        self._enforce_manage_permission(actor_user)
        with tracer.start_as_current_span("custom_fields.upsert_definition") as span:
            span.set_attribute("scope", scope.label())
            span.set_attribute("correlation_id", get_correlation_id() or "")
            stores = self.stores_factory(session)
            normalizer = self.engine.normalizer

            try:
                scoped = self._scoped_raw(raw, scope)
                existing_raw = stores.definitions.get(scoped["id"])
                if existing_raw is not None and not raw_in_scope(existing_raw, scope):
                    raise DefinitionInvalid("definition_in_other_scope", field_id=scoped["id"])

                current = self._load_definitions(stores, scope)
                by_id = {definition.id: definition for definition in current}
                candidate = normalizer.normalize(scoped)
                before = by_id.get(candidate.id)

                flagged: list[str] = []
                if before is not None and self.engine.type_changed(before, candidate, by_id):
                    flagged = [
                        definition.id
                        for definition in current
                        if definition.rollup is not None
                        and definition.rollup.source_field_id == candidate.id
                        and not definition.requires_reconfirmation
                    ]

                raws = [
                    normalizer.serialize(
                        definition.model_copy(update={"requires_reconfirmation": True})
                        if definition.id in flagged
                        else definition
                    )
                    for definition in current
                    if definition.id != candidate.id
                ]
                raws.append(scoped)
                linked = {definition.id: definition for definition in normalizer.normalize_scope(raws)}
            except (DefinitionInvalid, CyclicDependency) as exc:
                self._observe_rejection(exc, scope)
                raise

            span.set_attribute("field_id", candidate.id)
            saved_raw: dict[str, Any] = {}
            for field_id, definition in linked.items():
                previous = by_id.get(field_id)
                if field_id == candidate.id or previous is None or normalizer.serialize(previous) != normalizer.serialize(definition):
                    stored = stores.definitions.upsert(normalizer.serialize(definition))
                    if field_id == candidate.id:
                        saved_raw = stored
            if flagged:
                stores.values.invalidate(flagged)
                logger.warning(
                    "custom_field.reconfirmation_required",
                    extra={"field_id": candidate.id, "scope": scope.label(), "reason": ",".join(flagged)},
                )

            saved = linked[candidate.id].model_copy(
                update={"created_at": saved_raw.get("created_at"), "updated_at": saved_raw.get("updated_at")}
            )
            action = "create" if before is None else "update"
            audit.record(
                actor_user_id=actor_user.sub,
                entity_type=DEFINITION_ENTITY_TYPE,
                entity_id=saved.id,
                action=action,
                before=normalizer.serialize(before) if before is not None else None,
                after=normalizer.serialize(saved),
            )
            session.commit()
            events.publish(
                events.build_envelope(
                    f"custom_fields.definition.{'created' if before is None else 'updated'}",
                    actor_user.sub,
                    scope.label(),
                    {
                        "definition_id": saved.id,
                        "field_type": saved.field_type,
                        "requires_reconfirmation": flagged,
                    },
                )
            )
            logger.info(
                "custom_field.definition_saved",
                extra={"field_id": saved.id, "field_type": saved.field_type, "scope": scope.label()},
            )
            return saved

    def delete_definition(
        self,
        session: Session,
        scope: FieldScope,
        definition_id: str,
        actor_user: AuthUser,
    ) -> None:
        self._enforce_manage_permission(actor_user)
        with tracer.start_as_current_span("custom_fields.delete_definition") as span:
            span.set_attribute("field_id", definition_id)
            stores = self.stores_factory(session)
            current = self._load_definitions(stores, scope)
            target = next((definition for definition in current if definition.id == definition_id), None)
            if target is None:
                raise DefinitionNotFound(definition_id)
            referenced_by = self.engine.referencing(current, definition_id)
            if referenced_by:
                raise DefinitionInUse(definition_id, referenced_by)

            stores.definitions.delete(definition_id)
            stores.values.delete_field(definition_id)
            audit.record(
                actor_user_id=actor_user.sub,
                entity_type=DEFINITION_ENTITY_TYPE,
                entity_id=definition_id,
                action="delete",
                before=self.engine.normalizer.serialize(target),
                after=None,
            )
            session.commit()
            events.publish(
                events.build_envelope(
                    "custom_fields.definition.deleted",
                    actor_user.sub,
                    scope.label(),
                    {"definition_id": definition_id, "field_type": target.field_type},
                )
            )
            logger.info(
                "custom_field.definition_deleted",
                extra={"field_id": definition_id, "field_type": target.field_type, "scope": scope.label()},
            )

    def reconfirm_definition(
        self,
        session: Session,
        scope: FieldScope,
        definition_id: str,
        actor_user: AuthUser,
    ) -> FieldDefinition:
        """Clears the reconfirmation flag once the rollup is valid against its source's current type."""
        self._enforce_manage_permission(actor_user)
        with tracer.start_as_current_span("custom_fields.reconfirm_definition") as span:
            span.set_attribute("field_id", definition_id)
            stores = self.stores_factory(session)
            normalizer = self.engine.normalizer
            current = self._load_definitions(stores, scope)
            target = next((definition for definition in current if definition.id == definition_id), None)
            if target is None:
                raise DefinitionNotFound(definition_id)
            if not target.requires_reconfirmation:
                return target

            raws = [
                normalizer.serialize(
                    definition.model_copy(update={"requires_reconfirmation": False})
                    if definition.id == definition_id
                    else definition
                )
                for definition in current
            ]
            try:
                linked = {definition.id: definition for definition in normalizer.normalize_scope(raws)}
            except (DefinitionInvalid, CyclicDependency) as exc:
                self._observe_rejection(exc, scope)
                raise

            stored = stores.definitions.upsert(normalizer.serialize(linked[definition_id]))
            stores.values.invalidate([definition_id])
            confirmed = linked[definition_id].model_copy(update={"updated_at": stored.get("updated_at")})
            audit.record(
                actor_user_id=actor_user.sub,
                entity_type=DEFINITION_ENTITY_TYPE,
                entity_id=definition_id,
                action="reconfirm",
                before=normalizer.serialize(target),
                after=normalizer.serialize(confirmed),
            )
            session.commit()
            events.publish(
                events.build_envelope(
                    "custom_fields.definition.reconfirmed",
                    actor_user.sub,
                    scope.label(),
                    {"definition_id": definition_id, "field_type": confirmed.field_type},
                )
            )
            return confirmed

    def initialize_entity(
        self,
        session: Session,
        scope: FieldScope,
        entity_id: str,
        overrides: Mapping[str, Any] | None = None,
    ) -> EntityFieldState:
        """Seeds defaults for a new entity; required fields are enforced on later edits, not here."""
        with tracer.start_as_current_span("custom_fields.initialize_entity") as span:
            span.set_attribute("entity_id", entity_id)
            stores = self.stores_factory(session)
            definitions = self._load_definitions(stores, scope)

            values = self.engine.initial_values(definitions)
            values.update(self._validate_writes(definitions, overrides or {}, entity_id))
            derived = self.engine.refresh(definitions, values, self._related_snapshot(stores, definitions, entity_id))
            self._persist(stores, entity_id, values, derived)
            session.commit()
            return self._state(entity_id, definitions, {**values, **derived.values}, derived)

    def get_entity_fields(self, session: Session, scope: FieldScope, entity_id: str) -> EntityFieldState:
        with tracer.start_as_current_span("custom_fields.get_entity_fields") as span:
            span.set_attribute("entity_id", entity_id)
            stores = self.stores_factory(session)
            definitions = self._load_definitions(stores, scope)
            stored = stores.values.get(entity_id)
            values = {field_id: item.value for field_id, item in stored.items()}

            stale = [
                definition.id
                for definition in definitions
                if definition.source_field_id() is not None
                and not definition.requires_reconfirmation
                and self.engine.is_stale(
                    definition,
                    stored.get(definition.id),
                    stores.relationships.changed_at(entity_id, definition.relationship_name() or ""),
                )
            ]
            if stale:
                derived = self.engine.refresh(definitions, values, self._related_snapshot(stores, definitions, entity_id))
                logger.info(
                    "custom_field.stale_recomputed",
                    extra={"entity_id": entity_id, "recomputed": len(stale), "scope": scope.label()},
                )
            else:
                derived = self.engine.evaluate_formulas(definitions, values)

            changed = {
                field_id: value
                for field_id, value in derived.values.items()
                if field_id not in stored
                or stored[field_id].computed_at is None
                or stored[field_id].value != value
                or field_id in derived.stale
            }
            if changed:
                self._persist(stores, entity_id, {}, derived, only=set(changed))
                session.commit()
            return self._state(entity_id, definitions, {**values, **derived.values}, derived)

    def set_entity_values(
        self,
        session: Session,
        scope: FieldScope,
        entity_id: str,
        updates: Mapping[str, Any],
    ) -> EntityFieldState:
        with tracer.start_as_current_span("custom_fields.set_entity_values") as span:
            span.set_attribute("entity_id", entity_id)
            stores = self.stores_factory(session)
            definitions = self._load_definitions(stores, scope)
            accepted = self._validate_writes(definitions, updates, entity_id)

            values = {field_id: item.value for field_id, item in stores.values.get(entity_id).items()}
            values.update(accepted)
            derived = self.engine.evaluate_formulas(definitions, values)
            merged = {**values, **derived.values}

            visibility = self._visibility(definitions, merged)
            missing = self.engine.missing_required(definitions, merged, visibility.visible)
            if missing:
                logger.info(
                    "custom_field.required_missing",
                    extra={"entity_id": entity_id, "field_id": missing[0], "reason": "required"},
                )
                raise FieldValueInvalid(missing[0], "required")

            self._persist(stores, entity_id, accepted, derived)
            self._invalidate_parents(stores, definitions, entity_id, set(accepted) | set(derived.values))
            session.commit()
            return self._state(entity_id, definitions, merged, derived, visibility)

    def set_relationship(
        self,
        session: Session,
        scope: FieldScope,
        entity_id: str,
        relationship_name: str,
        related_entity_ids: Iterable[str],
    ) -> EntityFieldState:
        with tracer.start_as_current_span("custom_fields.set_relationship") as span:
            span.set_attribute("entity_id", entity_id)
            span.set_attribute("relationship_name", relationship_name)
            stores = self.stores_factory(session)
            definitions = self._load_definitions(stores, scope)
            stores.relationships.set_members(entity_id, relationship_name, related_entity_ids)

            values = {field_id: item.value for field_id, item in stores.values.get(entity_id).items()}
            related = {relationship_name: self._related_entities(stores, entity_id, relationship_name)}
            derived = self.engine.refresh(definitions, values, related, relationship_name=relationship_name)
            self._persist(stores, entity_id, {}, derived)
            session.commit()
            logger.info(
                "custom_field.relationship_changed",
                extra={"entity_id": entity_id, "relationship_name": relationship_name, "recomputed": len(derived.values)},
            )
            return self._state(entity_id, definitions, {**values, **derived.values}, derived)

    def refresh_entity(self, session: Session, scope: FieldScope, entity_id: str) -> EntityFieldState:
        with tracer.start_as_current_span("custom_fields.refresh_entity") as span:
            span.set_attribute("entity_id", entity_id)
            stores = self.stores_factory(session)
            definitions = self._load_definitions(stores, scope)
            values = {field_id: item.value for field_id, item in stores.values.get(entity_id).items()}
            derived = self.engine.refresh(definitions, values, self._related_snapshot(stores, definitions, entity_id))
            self._persist(stores, entity_id, {}, derived)
            session.commit()
            return self._state(entity_id, definitions, {**values, **derived.values}, derived)

    def delete_entity(self, session: Session, entity_id: str) -> None:
        """Drops an entity's values and removes it from every relationship that lists it."""
        stores = self.stores_factory(session)
        stores.values.delete_entity(entity_id)
        for parent_id, relationship_name in stores.relationships.referencing(entity_id):
            members = [item for item in stores.relationships.resolve(parent_id, relationship_name) if item != entity_id]
            stores.relationships.set_members(parent_id, relationship_name, members)
        session.commit()
        logger.info("custom_field.entity_deleted", extra={"entity_id": entity_id})

    def usage(self, session: Session, scope: FieldScope) -> UsageResult:
        with tracer.start_as_current_span("custom_fields.usage") as span:
            span.set_attribute("scope", scope.label())
            definitions = self._load_definitions(self.stores_factory(session), scope)
            source = SqlUsageSummarySource(session, enabled=get_settings().usage_summary_enabled)
            result = UsageMetricsAggregator(source).usage(scope, definitions)
            span.set_attribute("is_fallback", result.is_fallback)
            if result.is_fallback:
                observe_usage_fallback()
            return result

    def field_types(self) -> list[FieldTypeRead]:
        return [
            FieldTypeRead(
                name=spec.name,
                aliases=list(spec.aliases),
                value_type=spec.value_type,
                presentation_type=spec.presentation_type,
                derived=spec.derived,
                has_options=spec.has_options,
            )
            for spec in self.engine.registry.specs()
        ]

    def _load_definitions(self, stores: CustomFieldStores, scope: FieldScope) -> list[FieldDefinition]:
        definitions = self.engine.normalizer.normalize_scope(stores.definitions.list(scope))
        return sorted(definitions, key=lambda definition: (definition.position, definition.name.casefold()))

    def _scoped_raw(self, raw: Mapping[str, Any], scope: FieldScope) -> dict[str, Any]:
        if not isinstance(raw, Mapping):
            raise DefinitionInvalid("not_an_object")
        scoped = {key: value for key, value in raw.items() if key not in _SCOPE_KEYS}
        scoped["id"] = str(raw.get("id") or uuid.uuid4())
        scoped["scope"] = scope.kind
        scoped["project_id"] = scope.project_id if scope.kind == "project" else None
        scoped["workspace_id"] = scope.workspace_id if scope.kind == "global" else None
        return scoped

    def _validate_writes(
        self,
        definitions: list[FieldDefinition],
        updates: Mapping[str, Any],
        entity_id: str,
    ) -> dict[str, Any]:
        try:
            return self.engine.validate_writes(definitions, updates)
        except (DefinitionInvalid, FieldValueInvalid) as exc:
            logger.info(
                "custom_field.write_rejected",
                extra={"entity_id": entity_id, "field_id": exc.field_id, "reason": exc.reason},
            )
            raise

    def _related_entities(self, stores: CustomFieldStores, entity_id: str, relationship_name: str) -> list[RelatedEntity]:
        return [
            RelatedEntity(
                entity_id=related_id,
                values={field_id: item.value for field_id, item in stores.values.get(related_id).items()},
            )
            for related_id in stores.relationships.resolve(entity_id, relationship_name)
        ]

    def _related_snapshot(
        self,
        stores: CustomFieldStores,
        definitions: list[FieldDefinition],
        entity_id: str,
    ) -> dict[str, list[RelatedEntity]]:
        names = {definition.relationship_name() for definition in definitions} - {None}
        return {name: self._related_entities(stores, entity_id, name) for name in sorted(names)}

    def _visibility(self, definitions: list[FieldDefinition], values: Mapping[str, Any]) -> VisibilityOutcome:
        outcome = self.engine.visible(definitions, values)
        if outcome.failed_open:
            observe_visibility_fail_open()
        return outcome

    def _persist(
        self,
        stores: CustomFieldStores,
        entity_id: str,
        inputs: Mapping[str, Any],
        derived: DerivedOutcome,
        *,
        only: set[str] | None = None,
    ) -> None:
        computed_at = utcnow()
        rows = {
            field_id: FieldValue(entity_id=entity_id, field_id=field_id, value=value)
            for field_id, value in inputs.items()
        }
        for field_id, value in derived.values.items():
            if only is not None and field_id not in only:
                continue
            rows[field_id] = FieldValue(
                entity_id=entity_id,
                field_id=field_id,
                value=value,
                computed_at=None if field_id in derived.stale else computed_at,
            )
        if rows:
            stores.values.set(entity_id, rows)
        for field_type, count in derived.recomputed.items():
            observe_recomputation(field_type, count)
        for diagnostics in derived.diagnostics.values():
            for diagnostic in diagnostics:
                observe_formula_diagnostic(diagnostic.code)

    def _invalidate_parents(
        self,
        stores: CustomFieldStores,
        definitions: list[FieldDefinition],
        entity_id: str,
        changed: set[str],
    ) -> None:
        for parent_id, relationship_name in stores.relationships.referencing(entity_id):
            dependants = [
                definition.id
                for definition in definitions
                if definition.relationship_name() == relationship_name and definition.source_field_id() in changed
            ]
            if dependants:
                stores.values.invalidate(dependants, [parent_id])

    def _state(
        self,
        entity_id: str,
        definitions: list[FieldDefinition],
        values: Mapping[str, Any],
        derived: DerivedOutcome,
        visibility: VisibilityOutcome | None = None,
    ) -> EntityFieldState:
        known = {definition.id for definition in definitions}
        current = {field_id: value for field_id, value in values.items() if field_id in known}
        stale = set(derived.stale)
        for definition in definitions:
            if definition.requires_reconfirmation:
                current[definition.id] = None
                stale.add(definition.id)

        if visibility is None:
            visibility = self._visibility(definitions, current)
        diagnostics: dict[str, list[FormulaDiagnostic]] = {
            field_id: items for field_id, items in derived.diagnostics.items() if field_id in known
        }
        return EntityFieldState(
            entity_id=entity_id,
            values=current,
            visible_field_ids=[definition.id for definition in definitions if definition.id in visibility.visible],
            stale_field_ids=sorted(stale),
            diagnostics=diagnostics,
        )

    def _observe_rejection(self, exc: DefinitionInvalid | CyclicDependency, scope: FieldScope) -> None:
        if isinstance(exc, CyclicDependency):
            observe_definition_rejected("cyclic_dependency")
            logger.warning("custom_field.definition_rejected", extra={"reason": "cyclic_dependency", "cycle": exc.cycle, "scope": scope.label()})
            return
        observe_definition_rejected(exc.reason)
        logger.warning(
            "custom_field.definition_rejected",
            extra={"reason": exc.reason, "field_id": exc.field_id, "scope": scope.label()},
        )

    def _enforce_manage_permission(self, actor_user: AuthUser) -> None:
        if not actor_user.can(MANAGE_PERMISSION):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {MANAGE_PERMISSION}")


custom_field_service = CustomFieldService()
