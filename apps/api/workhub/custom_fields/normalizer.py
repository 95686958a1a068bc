from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from workhub.custom_fields.errors import CyclicDependency, DefinitionInvalid, FieldValueInvalid
from workhub.custom_fields.formula import MAX_PRECISION, FormulaSyntaxError, extract_references, parse_formula
from workhub.custom_fields.graph import definition_dependencies, ensure_acyclic
from workhub.custom_fields.registry import NUMERIC_VALUE_TYPES, ORDERABLE_VALUE_TYPES, FieldTypeRegistry
from workhub.custom_fields.schemas import (
    FIELD_CONTEXTS,
    ROLLUP_AGGREGATIONS,
    RULE_OPERATORS,
    ConditionalRule,
    FieldDefinition,
    FormulaConfig,
    GovernanceMetadata,
    MirrorConfig,
    OptionSet,
    OptionSetOption,
    RollupConfig,
)


_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_EDGE_UNDERSCORES_RE = re.compile(r"^_+|_+$")
_FORMULA_FORMATS = {"number", "percent", "currency", "text"}


def to_api_name(name: str) -> str:
    return _EDGE_UNDERSCORES_RE.sub("", _NON_ALNUM_RE.sub("_", name.strip().lower()))


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _as_id(value: Any) -> str | None:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_bool(value: Any) -> bool:
    return bool(value) if value is not None else False


def _as_datetime(value: Any, field_id: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            raise DefinitionInvalid("invalid_timestamp", field_id=field_id, detail=value)
    raise DefinitionInvalid("invalid_timestamp", field_id=field_id, detail=str(value))


def _option_id(definition_id: str, folded_label: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"workhub-option:{definition_id}:{folded_label}"))


class FieldDefinitionNormalizer:
    """Turns loosely typed field configuration into canonical ``FieldDefinition`` values.

    ``normalize`` handles one definition (optionally checked against its scope siblings),
    ``normalize_scope`` a whole scope at once. Both are pure; every rejection is a
    ``DefinitionInvalid`` or ``CyclicDependency`` naming the offending field.
    """

    def __init__(self, registry: FieldTypeRegistry, *, formula_max_length: int | None = None) -> None:
        self.registry = registry
        self.formula_max_length = formula_max_length

    def normalize(
        self,
        raw: Mapping[str, Any],
        siblings: Iterable[FieldDefinition] | None = None,
    ) -> FieldDefinition:
        definition = self._normalize_structure(raw)
        if siblings is None:
            self._reject_self_reference(definition)
            return definition
        scope_definitions = [item for item in siblings if item.id != definition.id]
        scope_definitions.append(definition)
        return self._link(scope_definitions)[definition.id]

    def normalize_scope(self, raws: Iterable[Mapping[str, Any]]) -> list[FieldDefinition]:
        definitions = [self._normalize_structure(raw) for raw in raws]
        seen: set[str] = set()
        for definition in definitions:
            if definition.id in seen:
                raise DefinitionInvalid("duplicate_id", field_id=definition.id)
            seen.add(definition.id)
        linked = self._link(definitions)
        return [linked[definition.id] for definition in definitions]

    def serialize(self, definition: FieldDefinition) -> dict[str, Any]:
        return definition.model_dump(mode="json")

    def _normalize_structure(self, raw: Mapping[str, Any]) -> FieldDefinition:
        if not isinstance(raw, Mapping):
            raise DefinitionInvalid("not_an_object")

        definition_id = _as_id(raw.get("id")) or str(uuid.uuid4())
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise DefinitionInvalid("missing_name", field_id=definition_id)
        name = name.strip()
        api_name = to_api_name(name)
        if not api_name:
            raise DefinitionInvalid("invalid_api_name", field_id=definition_id, detail=name)

        raw_type = _pick(raw, "field_type", "fieldType", "data_type")
        field_type = self.registry.canonical_name(raw_type)
        if field_type is None:
            raise DefinitionInvalid("unknown_field_type", field_id=definition_id, detail=raw_type)
        spec = self.registry.get(field_type)
        if spec.derived:
            if _as_bool(_pick(raw, "is_required", "isRequired")):
                raise DefinitionInvalid("derived_field_cannot_be_required", field_id=definition_id)
            if _pick(raw, "option_set", "optionSet", "options", "allowed_values"):
                raise DefinitionInvalid("derived_field_cannot_have_options", field_id=definition_id)

        project_id = _as_id(_pick(raw, "project_id", "projectId"))
        workspace_id = _as_id(_pick(raw, "workspace_id", "workspaceId"))
        scope = raw.get("scope")
        if scope is None:
            scope = "global" if workspace_id else "project"
        if scope not in {"project", "global"}:
            raise DefinitionInvalid("unknown_scope", field_id=definition_id, detail=scope)

        position = raw.get("position", 0)
        if position is None:
            position = 0
        if isinstance(position, bool) or not isinstance(position, int):
            raise DefinitionInvalid("invalid_position", field_id=definition_id, detail=position)

        description = raw.get("description")
        definition = FieldDefinition(
            id=definition_id,
            name=name,
            api_name=api_name,
            description=description if isinstance(description, str) else None,
            scope=scope,
            project_id=project_id,
            workspace_id=workspace_id,
            field_type=field_type,
            contexts=self._contexts(_pick(raw, "contexts", "applies_to", "appliesTo"), definition_id),
            option_set=self._option_set(raw, definition_id) if spec.has_options else None,
            formula=self._formula(raw, definition_id) if field_type == "formula" else None,
            rollup=self._rollup(raw, definition_id) if field_type == "rollup" else None,
            mirror=self._mirror(raw, definition_id) if field_type == "mirror" else None,
            governance=self._governance(raw.get("governance")),
            conditional_rules=self._rules(_pick(raw, "conditional_rules", "conditionalRules", "conditions"), definition_id),
            is_required=False if spec.derived else _as_bool(_pick(raw, "is_required", "isRequired")),
            is_private=_as_bool(_pick(raw, "is_private", "isPrivate")),
            position=position,
            requires_reconfirmation=spec.derived and _as_bool(
                _pick(raw, "requires_reconfirmation", "requiresReconfirmation")
            ),
            created_at=_as_datetime(_pick(raw, "created_at", "createdAt"), definition_id),
            updated_at=_as_datetime(_pick(raw, "updated_at", "updatedAt"), definition_id),
        )

        default_value = _pick(raw, "default_value", "defaultValue")
        if default_value is None or spec.derived:
            return definition
        try:
            coerced = self.registry.coerce(definition, default_value)
        except FieldValueInvalid as exc:
            raise DefinitionInvalid("invalid_default_value", field_id=definition_id, detail=exc.reason)
        return definition.model_copy(update={"default_value": coerced})

    def _contexts(self, value: Any, definition_id: str) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str) or not isinstance(value, Iterable):
            raise DefinitionInvalid("invalid_contexts", field_id=definition_id, detail=value)
        contexts: list[str] = []
        for item in value:
            context = item.strip().lower() if isinstance(item, str) else None
            if context not in FIELD_CONTEXTS:
                raise DefinitionInvalid("unknown_context", field_id=definition_id, detail=item)
            if context not in contexts:
                contexts.append(context)
        return contexts

    def _option_set(self, raw: Mapping[str, Any], definition_id: str) -> OptionSet:
        value = _pick(raw, "option_set", "optionSet", "options", "allowed_values")
        if isinstance(value, Mapping):
            raw_options = value.get("options") or []
            set_id = _as_id(value.get("id"))
            allow_custom = _as_bool(_pick(value, "allow_custom_options", "allowCustomOptions"))
        else:
            raw_options = value or []
            set_id = None
            allow_custom = False
        if not isinstance(raw_options, list):
            raise DefinitionInvalid("invalid_option_set", field_id=definition_id)

        options: list[OptionSetOption] = []
        seen_labels: set[str] = set()
        seen_ids: set[str] = set()
        for entry in raw_options:
            if isinstance(entry, str):
                entry = {"label": entry}
            if not isinstance(entry, Mapping):
                raise DefinitionInvalid("invalid_option", field_id=definition_id, detail=entry)
            label = _pick(entry, "label", "name")
            if not isinstance(label, str) or not label.strip():
                raise DefinitionInvalid("invalid_option", field_id=definition_id, detail=dict(entry))
            label = label.strip()
            folded = label.casefold()
            if folded in seen_labels:
                continue
            seen_labels.add(folded)

            option_id = _as_id(_pick(entry, "option_id", "optionId", "id", "value")) or _option_id(definition_id, folded)
            if option_id in seen_ids:
                raise DefinitionInvalid("duplicate_option_id", field_id=definition_id, detail=option_id)
            seen_ids.add(option_id)

            description = entry.get("description")
            color = entry.get("color")
            options.append(
                OptionSetOption(
                    option_id=option_id,
                    label=label,
                    description=description if isinstance(description, str) else None,
                    color=color if isinstance(color, str) else None,
                    is_default=_as_bool(_pick(entry, "is_default", "isDefault", "default")),
                )
            )

        if not options:
            raise DefinitionInvalid("empty_option_set", field_id=definition_id)
        return OptionSet(
            id=set_id or str(uuid.uuid5(uuid.NAMESPACE_URL, f"workhub-option-set:{definition_id}")),
            options=options,
            allow_custom_options=allow_custom,
        )

    def _formula(self, raw: Mapping[str, Any], definition_id: str) -> FormulaConfig:
        value = raw.get("formula")
        if isinstance(value, str):
            value = {"expression": value}
        if not isinstance(value, Mapping):
            raise DefinitionInvalid("missing_formula_config", field_id=definition_id)
        expression = _pick(value, "expression", "formula")
        if not isinstance(expression, str) or not expression.strip():
            raise DefinitionInvalid("missing_formula_config", field_id=definition_id)
        expression = expression.strip()
        if self.formula_max_length is not None and len(expression) > self.formula_max_length:
            raise DefinitionInvalid("bad_formula", field_id=definition_id, detail="expression too long")
        try:
            tree = parse_formula(expression)
        except FormulaSyntaxError as exc:
            raise DefinitionInvalid("bad_formula", field_id=definition_id, detail=str(exc))

        precision = value.get("precision")
        valid_precision = isinstance(precision, int) and not isinstance(precision, bool) and 0 <= precision <= MAX_PRECISION
        if precision is not None and not valid_precision:
            raise DefinitionInvalid("bad_formula_precision", field_id=definition_id, detail=precision)
        formula_format = value.get("format") or "number"
        if formula_format not in _FORMULA_FORMATS:
            raise DefinitionInvalid("unknown_formula_format", field_id=definition_id, detail=formula_format)

        return FormulaConfig(
            expression=expression,
            dependencies=extract_references(tree),
            precision=precision,
            format=formula_format,
        )

    def _source_config(self, raw: Mapping[str, Any], keys: tuple[str, ...], definition_id: str, variant: str) -> Mapping[str, Any]:
        value = _pick(raw, *keys)
        if not isinstance(value, Mapping):
            raise DefinitionInvalid(f"missing_{variant}_config", field_id=definition_id)
        if _as_id(_pick(value, "source_field_id", "sourceFieldId")) is None:
            raise DefinitionInvalid(f"missing_{variant}_config", field_id=definition_id, detail="source_field_id")
        relationship = _pick(value, "relationship_name", "relationshipName")
        if not isinstance(relationship, str) or not relationship.strip():
            raise DefinitionInvalid("missing_relationship_name", field_id=definition_id)
        return value

    def _rollup(self, raw: Mapping[str, Any], definition_id: str) -> RollupConfig:
        value = self._source_config(raw, ("rollup", "rollup_config", "rollupConfig"), definition_id, "rollup")
        aggregation = value.get("aggregation")
        if aggregation not in ROLLUP_AGGREGATIONS:
            raise DefinitionInvalid("unknown_aggregation", field_id=definition_id, detail=aggregation)
        return RollupConfig(
            source_field_id=_as_id(_pick(value, "source_field_id", "sourceFieldId")) or "",
            relationship_name=str(_pick(value, "relationship_name", "relationshipName")).strip(),
            aggregation=aggregation,
        )

    def _mirror(self, raw: Mapping[str, Any], definition_id: str) -> MirrorConfig:
        value = self._source_config(raw, ("mirror", "mirror_config", "mirrorConfig", "rollup_config"), definition_id, "mirror")
        presentation_type = _pick(value, "presentation_type", "presentationType")
        return MirrorConfig(
            source_field_id=_as_id(_pick(value, "source_field_id", "sourceFieldId")) or "",
            relationship_name=str(_pick(value, "relationship_name", "relationshipName")).strip(),
            presentation_type=presentation_type if isinstance(presentation_type, str) else None,
        )

    def _governance(self, value: Any) -> GovernanceMetadata | None:
        if not isinstance(value, Mapping):
            return None
        managed_by = _pick(value, "managed_by", "managedBy", "owner_scope")
        visibility = value.get("visibility")
        tags = _pick(value, "compliance_tags", "complianceTags", "tags")
        cadence = _pick(value, "review_cadence_days", "reviewCadenceDays")
        description = value.get("description")
        return GovernanceMetadata(
            managed_by=managed_by if managed_by in {"workspace", "project", "team"} else None,
            compliance_tags=[tag for tag in tags if isinstance(tag, str)] if isinstance(tags, list) else [],
            visibility=visibility if visibility in {"public", "restricted", "confidential"} else None,
            review_cadence_days=cadence if isinstance(cadence, int) and not isinstance(cadence, bool) else None,
            audit_trail_enabled=_as_bool(_pick(value, "audit_trail_enabled", "auditTrailEnabled")),
            description=description if isinstance(description, str) else None,
        )

    def _rules(self, value: Any, definition_id: str) -> list[ConditionalRule]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise DefinitionInvalid("invalid_conditional_rules", field_id=definition_id)
        rules: list[ConditionalRule] = []
        for entry in value:
            if not isinstance(entry, Mapping):
                raise DefinitionInvalid("invalid_conditional_rule", field_id=definition_id, detail=entry)
            target = _as_id(_pick(entry, "field_id", "fieldId"))
            if target is None:
                raise DefinitionInvalid("invalid_conditional_rule", field_id=definition_id, detail=dict(entry))
            operator = _pick(entry, "operator", "op")
            if operator not in RULE_OPERATORS:
                raise DefinitionInvalid("unknown_rule_operator", field_id=definition_id, detail=operator)
            rules.append(ConditionalRule(field_id=target, operator=operator, value=entry.get("value")))
        return rules

    def _reject_self_reference(self, definition: FieldDefinition) -> None:
        if definition.id in definition_dependencies(definition):
            raise CyclicDependency([definition.id, definition.id])

    def _link(self, definitions: list[FieldDefinition]) -> dict[str, FieldDefinition]:
        """Cross-definition checks for one scope: references, api names, cycles, aggregations."""
        by_id = {definition.id: definition for definition in definitions}

        api_names: dict[tuple[str, str | None, str], str] = {}
        for definition in definitions:
            key = (definition.scope, definition.project_id or definition.workspace_id, definition.api_name)
            if key in api_names and api_names[key] != definition.id:
                raise DefinitionInvalid("duplicate_api_name", field_id=definition.id, detail=definition.api_name)
            api_names[key] = definition.id

        def same_scope(left: FieldDefinition, right: FieldDefinition) -> bool:
            return left.scope == right.scope and (left.project_id, left.workspace_id) == (
                right.project_id,
                right.workspace_id,
            )

        def require(definition: FieldDefinition, target_id: str) -> FieldDefinition:
            target = by_id.get(target_id)
            if target is None or not same_scope(definition, target):
                raise DefinitionInvalid("dangling_reference", field_id=definition.id, detail=target_id)
            return target

        linked: dict[str, FieldDefinition] = {}
        for definition in definitions:
            for rule in definition.conditional_rules:
                require(definition, rule.field_id)
            source_id = definition.source_field_id()
            if source_id is not None:
                require(definition, source_id)

            if definition.formula is not None:
                scope_key = (definition.scope, definition.project_id or definition.workspace_id)
                resolved: list[str] = []
                for reference in definition.formula.dependencies:
                    if reference in by_id and same_scope(definition, by_id[reference]):
                        target = reference
                    else:
                        target = api_names.get((*scope_key, reference), reference)
                    if target not in resolved:
                        resolved.append(target)
                definition = definition.model_copy(
                    update={"formula": definition.formula.model_copy(update={"dependencies": resolved})}
                )
            linked[definition.id] = definition

        ensure_acyclic(linked.values())

        for field_id, definition in list(linked.items()):
            if definition.rollup is not None and not definition.requires_reconfirmation:
                source = linked[definition.rollup.source_field_id]
                self._check_aggregation(definition.id, definition.rollup, self.registry.value_type(source, linked))
            if definition.mirror is not None:
                source = linked[definition.mirror.source_field_id]
                presentation = self.registry.presentation_type(source, linked)
                linked[field_id] = definition.model_copy(
                    update={"mirror": definition.mirror.model_copy(update={"presentation_type": presentation})}
                )
        return linked

    def _check_aggregation(self, field_id: str, rollup: RollupConfig, source_value_type: str) -> None:
        aggregation = rollup.aggregation
        if aggregation in {"sum", "avg"} and source_value_type not in NUMERIC_VALUE_TYPES:
            compatible = False
        elif aggregation in {"min", "max"} and source_value_type not in ORDERABLE_VALUE_TYPES:
            compatible = False
        else:
            compatible = True
        if not compatible:
            raise DefinitionInvalid(
                "incompatible_aggregation",
                field_id=field_id,
                detail={"aggregation": aggregation, "source_value_type": source_value_type},
            )
