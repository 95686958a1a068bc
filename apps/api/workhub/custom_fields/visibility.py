from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from workhub.custom_fields.graph import dependency_edges, find_cycle
from workhub.custom_fields.schemas import ConditionalRule, FieldDefinition
from workhub.custom_fields.values import collection_contains, is_set, values_equal


logger = logging.getLogger("workhub.custom_fields.visibility")


@dataclass(slots=True)
class VisibilityOutcome:
    visible: set[str] = field(default_factory=set)
    cycle: list[str] | None = None

    @property
    def failed_open(self) -> bool:
        return self.cycle is not None


class ConditionalVisibilityEvaluator:
    """Computes which definitions render for a value snapshot.

    Rules on one definition combine with AND. A dependency cycle anywhere in the scope makes
    every field visible instead of hiding data entry behind an inconsistent graph.
    """

    def visible(self, definitions: Iterable[FieldDefinition], values: Mapping[str, Any]) -> set[str]:
        return self.evaluate(definitions, values).visible

    def evaluate(self, definitions: Iterable[FieldDefinition], values: Mapping[str, Any]) -> VisibilityOutcome:
        items = list(definitions)
        cycle = find_cycle(dependency_edges(items))
        if cycle is not None:
            logger.warning("visibility.fail_open", extra={"cycle": cycle})
            return VisibilityOutcome(visible={definition.id for definition in items}, cycle=cycle)
        return VisibilityOutcome(visible={definition.id for definition in items if self.is_visible(definition, values)})

    def is_visible(self, definition: FieldDefinition, values: Mapping[str, Any]) -> bool:
        return all(self.rule_holds(rule, values) for rule in definition.conditional_rules)

    def rule_holds(self, rule: ConditionalRule, values: Mapping[str, Any]) -> bool:
        operator = rule.operator
        if operator == "is_set":
            return is_set(values, rule.field_id)
        if operator == "is_not_set":
            return not is_set(values, rule.field_id)

        current = values.get(rule.field_id)
        if operator == "equals":
            return values_equal(current, rule.value)
        if operator == "not_equals":
            return not values_equal(current, rule.value)

        contained = collection_contains(current, rule.value)
        if operator == "contains":
            return contained is True
        return contained is not True
