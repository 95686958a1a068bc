from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from workhub.custom_fields.defaults import DefaultValueResolver
from workhub.custom_fields.errors import FieldValueInvalid
from workhub.custom_fields.formula import FormulaEvaluator
from workhub.custom_fields.graph import definition_dependencies
from workhub.custom_fields.mirror import MirrorResolver
from workhub.custom_fields.normalizer import FieldDefinitionNormalizer
from workhub.custom_fields.registry import FieldTypeRegistry, default_registry
from workhub.custom_fields.rollup import RollupAggregator
from workhub.custom_fields.schemas import FieldDefinition, FieldValue, FormulaDiagnostic, RelatedEntity
from workhub.custom_fields.values import is_set
from workhub.custom_fields.visibility import ConditionalVisibilityEvaluator, VisibilityOutcome


# relationship name -> related entities in resolver order
RelatedSnapshot = Mapping[str, Sequence[RelatedEntity]]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(slots=True)
class DerivedOutcome:
    values: dict[str, Any] = field(default_factory=dict)
    stale: set[str] = field(default_factory=set)
    diagnostics: dict[str, list[FormulaDiagnostic]] = field(default_factory=dict)
    recomputed: dict[str, int] = field(default_factory=dict)

    def count(self, field_type: str) -> None:
        self.recomputed[field_type] = self.recomputed.get(field_type, 0) + 1


class CustomFieldEngine:
    """Pure computation over already-loaded definitions, values and related entities.

    Holds one ``FieldTypeRegistry`` and the evaluators built on it. Callers load their
    snapshot first, run the engine, then persist whatever the engine returns.
    """

    def __init__(self, registry: FieldTypeRegistry | None = None, *, formula_max_length: int | None = None) -> None:
        self.registry = registry or default_registry()
        self.normalizer = FieldDefinitionNormalizer(self.registry, formula_max_length=formula_max_length)
        self.defaults = DefaultValueResolver(self.registry)
        self.visibility = ConditionalVisibilityEvaluator()
        self.rollups = RollupAggregator()
        self.mirrors = MirrorResolver()

    def initial_values(self, definitions: Iterable[FieldDefinition]) -> dict[str, Any]:
        return self.defaults.defaults(definitions)

    def validate_writes(self, definitions: Iterable[FieldDefinition], updates: Mapping[str, Any]) -> dict[str, Any]:
        """Coerce user input; derived targets raise ``DefinitionInvalid``, bad values ``FieldValueInvalid``."""
        by_id = {definition.id: definition for definition in definitions}
        accepted: dict[str, Any] = {}
        for field_id, value in updates.items():
            definition = by_id.get(field_id)
            if definition is None:
                raise FieldValueInvalid(field_id, "unknown_field")
            if definition.mirror is not None:
                self.mirrors.reject_write(definition, value)
            accepted[field_id] = self.registry.coerce(definition, value)
        return accepted

    def is_stale(
        self,
        definition: FieldDefinition,
        stored: FieldValue | None,
        relationship_changed_at: datetime | None = None,
    ) -> bool:
        if not definition.is_derived:
            return False
        if definition.requires_reconfirmation:
            return True
        if stored is None or stored.computed_at is None:
            return True
        if relationship_changed_at is None:
            return False
        return _as_utc(stored.computed_at) < _as_utc(relationship_changed_at)

    def refresh(
        self,
        definitions: Iterable[FieldDefinition],
        values: Mapping[str, Any],
        related: RelatedSnapshot,
        *,
        relationship_name: str | None = None,
    ) -> DerivedOutcome:
        """Recompute derived fields.

        With ``relationship_name`` only rollups and mirrors reading through that relationship
        are refreshed; without it every rollup and mirror is. Formulas always re-run, since they
        may read any refreshed value.
        """
        items = list(definitions)
        outcome = DerivedOutcome()
        related_values = {
            name: self._source_values(entities, items, name) for name, entities in related.items()
        }

        if relationship_name is None:
            rollup_results = self.rollups.refresh_full(items, related_values)
        else:
            rollup_results = self.rollups.refresh_incremental(items, relationship_name, related_values)
        for field_id, result in rollup_results.items():
            outcome.values[field_id] = result.value
            if result.stale:
                outcome.stale.add(field_id)
            else:
                outcome.count("rollup")

        mirrors = [
            definition
            for definition in items
            if definition.mirror is not None
            and (relationship_name is None or definition.mirror.relationship_name == relationship_name)
        ]
        first_related = {name: (entities[0] if entities else None) for name, entities in related.items()}
        for field_id, result in self.mirrors.resolve_all(mirrors, first_related).items():
            outcome.values[field_id] = result.value
            if result.stale:
                outcome.stale.add(field_id)
            else:
                outcome.count("mirror")

        self._formulas(items, {**values, **outcome.values}, outcome)
        return outcome

    def evaluate_formulas(self, definitions: Iterable[FieldDefinition], values: Mapping[str, Any]) -> DerivedOutcome:
        outcome = DerivedOutcome()
        self._formulas(list(definitions), values, outcome)
        return outcome

    def visible(self, definitions: Iterable[FieldDefinition], values: Mapping[str, Any]) -> VisibilityOutcome:
        return self.visibility.evaluate(definitions, values)

    def missing_required(
        self,
        definitions: Iterable[FieldDefinition],
        values: Mapping[str, Any],
        visible: set[str],
    ) -> list[str]:
        """Required input fields that are visible but unset; hidden fields are never enforced."""
        return [
            definition.id
            for definition in definitions
            if definition.is_required
            and not definition.is_derived
            and definition.id in visible
            and not is_set(values, definition.id)
        ]

    def referencing(self, definitions: Iterable[FieldDefinition], field_id: str) -> list[str]:
        return [
            definition.id
            for definition in definitions
            if definition.id != field_id and field_id in definition_dependencies(definition)
        ]

    def type_changed(
        self,
        before: FieldDefinition,
        after: FieldDefinition,
        definitions: Mapping[str, FieldDefinition],
    ) -> bool:
        """True when an edit changes the value type that rollups over this field aggregate."""
        if before.field_type != after.field_type:
            return True
        after_scope = {**definitions, after.id: after}
        return self.registry.value_type(before, definitions) != self.registry.value_type(after, after_scope)

    def _source_values(
        self,
        entities: Sequence[RelatedEntity],
        definitions: list[FieldDefinition],
        relationship_name: str,
    ) -> dict[str, list[Any]]:
        sources = {
            definition.rollup.source_field_id
            for definition in definitions
            if definition.rollup is not None and definition.rollup.relationship_name == relationship_name
        }
        return {source: [entity.values.get(source) for entity in entities] for source in sources}

    def _formulas(self, items: list[FieldDefinition], values: Mapping[str, Any], outcome: DerivedOutcome) -> None:
        results = FormulaEvaluator(items).evaluate_all(items, values)
        for field_id, result in results.items():
            outcome.values[field_id] = result.value
            outcome.count("formula")
            if result.diagnostics:
                outcome.diagnostics[field_id] = list(result.diagnostics)
