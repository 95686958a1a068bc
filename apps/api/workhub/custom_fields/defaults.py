from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from workhub.custom_fields.registry import FieldTypeRegistry
from workhub.custom_fields.schemas import FieldDefinition


class DefaultValueResolver:
    def __init__(self, registry: FieldTypeRegistry) -> None:
        self.registry = registry

    def defaults(self, definitions: Iterable[FieldDefinition]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for definition in definitions:
            if definition.is_private or self.registry.is_derived(definition.field_type):
                continue
            values[definition.id] = self.resolve(definition)
        return values

    def resolve(self, definition: FieldDefinition) -> Any:
        if definition.default_value is not None:
            return definition.default_value

        if definition.option_set is not None:
            preselected = [option.option_id for option in definition.option_set.options if option.is_default]
            if definition.field_type == "multiselect":
                return preselected
            if preselected:
                return preselected[0]

        return self.registry.empty_value(definition)
