from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
import math
from decimal import Decimal
from typing import Any
from urllib.parse import urlparse

from workhub.custom_fields.errors import DefinitionInvalid, FieldValueInvalid
from workhub.custom_fields.schemas import FieldDefinition


ValueCoercer = Callable[[FieldDefinition, Any], Any]

NUMERIC_VALUE_TYPES = frozenset({"number"})
ORDERABLE_VALUE_TYPES = frozenset({"number", "date", "string"})


def _empty_none() -> Any:
    return None


def _coerce_text(definition: FieldDefinition, value: Any) -> Any:
    if not isinstance(value, str):
        raise FieldValueInvalid(definition.id, "must_be_text")
    return value


def _coerce_number(definition: FieldDefinition, value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise FieldValueInvalid(definition.id, "must_be_number")
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, float) and not math.isfinite(value):
        raise FieldValueInvalid(definition.id, "must_be_finite_number")
    return value


def _coerce_estimate(definition: FieldDefinition, value: Any) -> Any:
    number = _coerce_number(definition, value)
    if number < 0:
        raise FieldValueInvalid(definition.id, "must_not_be_negative")
    return number


def _coerce_url(definition: FieldDefinition, value: Any) -> Any:
    if not isinstance(value, str):
        raise FieldValueInvalid(definition.id, "must_be_text")
    value = value.strip()
    if not value:
        return value
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise FieldValueInvalid(definition.id, "must_be_http_url")
    return value


def _coerce_member_ids(definition: FieldDefinition, value: Any) -> Any:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise FieldValueInvalid(definition.id, "must_be_id_list")
    members: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise FieldValueInvalid(definition.id, "must_be_id_list")
        if item.strip() not in members:
            members.append(item.strip())
    return members


def _coerce_boolean(definition: FieldDefinition, value: Any) -> Any:
    if not isinstance(value, bool):
        raise FieldValueInvalid(definition.id, "must_be_boolean")
    return value


def _coerce_date(definition: FieldDefinition, value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value).isoformat()
        except ValueError:
            raise FieldValueInvalid(definition.id, "must_be_iso_date")
    raise FieldValueInvalid(definition.id, "must_be_date")


def _coerce_date_range(definition: FieldDefinition, value: Any) -> Any:
    if not isinstance(value, Mapping) or "start" not in value or "end" not in value:
        raise FieldValueInvalid(definition.id, "must_be_date_range")
    start = _coerce_date(definition, value["start"])
    end = _coerce_date(definition, value["end"])
    if end < start:
        raise FieldValueInvalid(definition.id, "range_end_before_start")
    return {"start": start, "end": end}


def _allowed_option(definition: FieldDefinition, option_id: Any) -> bool:
    option_set = definition.option_set
    if option_set is None:
        return False
    if option_set.allow_custom_options:
        return isinstance(option_id, str) and bool(option_id.strip())
    return option_id in option_set.option_ids()


def _coerce_select(definition: FieldDefinition, value: Any) -> Any:
    if not isinstance(value, str):
        raise FieldValueInvalid(definition.id, "must_be_option_id")
    if not _allowed_option(definition, value):
        raise FieldValueInvalid(definition.id, "unknown_option")
    return value


def _coerce_multiselect(definition: FieldDefinition, value: Any) -> Any:
    if not isinstance(value, (list, tuple)):
        raise FieldValueInvalid(definition.id, "must_be_option_list")
    selected: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise FieldValueInvalid(definition.id, "must_be_option_id")
        if not _allowed_option(definition, item):
            raise FieldValueInvalid(definition.id, "unknown_option")
        if item not in selected:
            selected.append(item)
    return selected


def _reject_derived(definition: FieldDefinition, value: Any) -> Any:
    if definition.field_type == "mirror":
        raise DefinitionInvalid("mirror_is_read_only", field_id=definition.id)
    raise DefinitionInvalid("computed_field_is_read_only", field_id=definition.id)


@dataclass(frozen=True, slots=True)
class FieldTypeSpec:
    name: str
    value_type: str
    presentation_type: str
    coerce: ValueCoercer
    derived: bool = False
    has_options: bool = False
    empty_value: Callable[[], Any] = _empty_none
    aliases: tuple[str, ...] = field(default_factory=tuple)


class FieldTypeRegistry:
    """Closed set of field types known to one engine instance.

    Types are registered up front; a definition's type is resolved (and sealed) when it is
    normalized against the registry. Registries are plain values handed to each component.
    """

    def __init__(self, specs: Iterable[FieldTypeSpec] = ()) -> None:
        self._specs: dict[str, FieldTypeSpec] = {}
        self._aliases: dict[str, str] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: FieldTypeSpec) -> None:
        names = (spec.name, *spec.aliases)
        taken = [name for name in names if name in self._specs or name in self._aliases]
        if taken:
            raise ValueError(f"field type already registered: {', '.join(taken)}")
        self._specs[spec.name] = spec
        for alias in spec.aliases:
            self._aliases[alias] = spec.name

    def canonical_name(self, name: Any) -> str | None:
        if not isinstance(name, str):
            return None
        key = name.strip().lower()
        if key in self._specs:
            return key
        return self._aliases.get(key)

    def get(self, name: str) -> FieldTypeSpec:
        canonical = self.canonical_name(name)
        if canonical is None:
            raise DefinitionInvalid("unknown_field_type", detail=name)
        return self._specs[canonical]

    def names(self) -> list[str]:
        return sorted(self._specs)

    def specs(self) -> list[FieldTypeSpec]:
        return [self._specs[name] for name in self.names()]

    def is_derived(self, name: str) -> bool:
        return self.get(name).derived

    def empty_value(self, definition: FieldDefinition) -> Any:
        return self.get(definition.field_type).empty_value()

    def coerce(self, definition: FieldDefinition, value: Any) -> Any:
        spec = self.get(definition.field_type)
        if spec.derived:
            return _reject_derived(definition, value)
        if value is None:
            return None
        return spec.coerce(definition, value)

    def value_type(self, definition: FieldDefinition, definitions: Mapping[str, FieldDefinition]) -> str:
        return self._derive(definition, definitions, "value", set())

    def presentation_type(self, definition: FieldDefinition, definitions: Mapping[str, FieldDefinition]) -> str:
        return self._derive(definition, definitions, "presentation", set())

    def _derive(
        self,
        definition: FieldDefinition,
        definitions: Mapping[str, FieldDefinition],
        kind: str,
        seen: set[str],
    ) -> str:
        if definition.id in seen:
            return "any"
        seen.add(definition.id)

        spec = self.get(definition.field_type)
        if not spec.derived:
            return spec.value_type if kind == "value" else spec.presentation_type

        if definition.formula is not None:
            if definition.formula.format == "text":
                return "string" if kind == "value" else "text"
            return "number"

        if definition.rollup is not None:
            aggregation = definition.rollup.aggregation
            if aggregation in {"count", "sum", "avg"}:
                return "number"
            if aggregation == "concat_distinct":
                return "list"
            source = definitions.get(definition.rollup.source_field_id)
            return "any" if source is None else self._derive(source, definitions, kind, seen)

        if definition.mirror is not None:
            source = definitions.get(definition.mirror.source_field_id)
            if source is None:
                if kind == "presentation" and definition.mirror.presentation_type:
                    return definition.mirror.presentation_type
                return "any"
            return self._derive(source, definitions, kind, seen)

        return "any"


def default_registry() -> FieldTypeRegistry:
    return FieldTypeRegistry(
        [
            FieldTypeSpec("text", "string", "text", _coerce_text, empty_value=str),
            FieldTypeSpec("number", "number", "number", _coerce_number),
            FieldTypeSpec("boolean", "boolean", "boolean", _coerce_boolean, empty_value=lambda: False, aliases=("bool",)),
            FieldTypeSpec("date", "date", "date", _coerce_date),
            FieldTypeSpec("date_range", "date_range", "date_range", _coerce_date_range),
            FieldTypeSpec("url", "string", "url", _coerce_url, empty_value=str),
            FieldTypeSpec("user", "id_list", "user", _coerce_member_ids, empty_value=list),
            FieldTypeSpec("team", "id_list", "team", _coerce_member_ids, empty_value=list),
            FieldTypeSpec("story_points", "number", "story_points", _coerce_estimate),
            FieldTypeSpec("time_estimate", "number", "duration", _coerce_estimate),
            FieldTypeSpec("effort", "number", "effort", _coerce_estimate),
            FieldTypeSpec("risk", "number", "risk", _coerce_estimate),
            FieldTypeSpec("select", "option", "select", _coerce_select, has_options=True, aliases=("single_select",)),
            FieldTypeSpec(
                "multiselect",
                "option_list",
                "multiselect",
                _coerce_multiselect,
                has_options=True,
                empty_value=list,
                aliases=("multi_select",),
            ),
            FieldTypeSpec("formula", "any", "number", _reject_derived, derived=True),
            FieldTypeSpec("rollup", "any", "number", _reject_derived, derived=True),
            FieldTypeSpec("mirror", "any", "any", _reject_derived, derived=True),
        ]
    )
