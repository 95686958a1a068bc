from __future__ import annotations

import pytest

from workhub.custom_fields.errors import CyclicDependency, DefinitionInvalid
from workhub.custom_fields.normalizer import FieldDefinitionNormalizer, to_api_name
from workhub.custom_fields.registry import FieldTypeRegistry, FieldTypeSpec, default_registry


@pytest.fixture()
def normalizer() -> FieldDefinitionNormalizer:
    return FieldDefinitionNormalizer(default_registry(), formula_max_length=200)


def _number(field_id: str, name: str, **extra: object) -> dict:
    return {"id": field_id, "name": name, "field_type": "number", "project_id": "p1", **extra}


def test_api_name_is_lowercase_snake_case() -> None:
    assert to_api_name("  Story Points ") == "story_points"
    assert to_api_name("Due-Date (UTC)") == "due_date_utc"
    assert to_api_name("__Already__Snake__") == "already_snake"


def test_normalize_accepts_aliases_and_defaults_scope(normalizer: FieldDefinitionNormalizer) -> None:
    definition = normalizer.normalize(
        {
            "id": "sp",
            "name": " Story Points ",
            "fieldType": "Number",
            "projectId": "p1",
            "isRequired": True,
            "appliesTo": ["Tasks", "boards", "tasks"],
        }
    )

    assert definition.name == "Story Points"
    assert definition.api_name == "story_points"
    assert definition.field_type == "number"
    assert definition.scope == "project"
    assert definition.project_id == "p1"
    assert definition.is_required is True
    assert definition.contexts == ["tasks", "boards"]


def test_workspace_id_implies_global_scope(normalizer: FieldDefinitionNormalizer) -> None:
    definition = normalizer.normalize({"name": "Region", "field_type": "text", "workspace_id": "w1"})
    assert definition.scope == "global"
    assert definition.workspace_id == "w1"
    assert definition.id


def test_normalize_serialize_round_trip(normalizer: FieldDefinitionNormalizer) -> None:
    raw = {
        "id": "priority",
        "name": "Priority",
        "field_type": "select",
        "project_id": "p1",
        "options": [{"label": "High", "color": "red"}, {"label": "Low", "isDefault": True}],
        "conditional_rules": [{"field_id": "flag", "operator": "is_set"}],
        "governance": {"managedBy": "team", "tags": ["pii"], "reviewCadenceDays": 30},
        "position": 3,
    }
    first = normalizer.normalize(raw)
    second = normalizer.normalize(normalizer.serialize(first))

    assert second == first
    assert first.governance is not None
    assert first.governance.managed_by == "team"
    assert first.governance.compliance_tags == ["pii"]


def test_option_labels_are_deduplicated_case_insensitively(normalizer: FieldDefinitionNormalizer) -> None:
    definition = normalizer.normalize(
        {"id": "tags", "name": "Tags", "field_type": "multi_select", "options": ["High", "high", " Low "]}
    )

    assert definition.field_type == "multiselect"
    assert definition.option_set is not None
    assert [option.label for option in definition.option_set.options] == ["High", "Low"]
    again = normalizer.normalize(
        {"id": "tags", "name": "Tags", "field_type": "multiselect", "options": ["High", "Low"]}
    )
    assert again.option_set is not None
    assert again.option_set.option_ids() == definition.option_set.option_ids()


@pytest.mark.parametrize(
    ("raw", "reason"),
    [
        ({"name": "Broken", "field_type": "hologram"}, "unknown_field_type"),
        ({"name": "  ", "field_type": "text"}, "missing_name"),
        ({"name": "Choice", "field_type": "select", "options": []}, "empty_option_set"),
        ({"name": "Score", "field_type": "formula", "formula": "IF(1, 2"}, "bad_formula"),
        ({"name": "Score", "field_type": "formula", "formula": "FOO(1)"}, "bad_formula"),
        ({"name": "Score", "field_type": "formula", "formula": "ROUND()"}, "bad_formula"),
        ({"name": "Score", "field_type": "formula", "formula": "1 +" * 80 + "1"}, "bad_formula"),
        ({"name": "Score", "field_type": "formula", "formula": "1", "is_required": True}, "derived_field_cannot_be_required"),
        ({"name": "Score", "field_type": "formula", "formula": {"expression": "1", "precision": 30}}, "bad_formula_precision"),
        ({"name": "Score", "field_type": "formula", "formula": {"expression": "1", "precision": -1}}, "bad_formula_precision"),
        (
            {"name": "Total", "field_type": "rollup", "options": ["a"], "rollup": {}},
            "derived_field_cannot_have_options",
        ),
        ({"name": "Total", "field_type": "rollup", "rollup": {"source_field_id": "x"}}, "missing_relationship_name"),
        (
            {"name": "Total", "field_type": "rollup", "rollup": {"source_field_id": "x", "relationship_name": "r", "aggregation": "median"}},
            "unknown_aggregation",
        ),
        ({"name": "Where", "field_type": "text", "contexts": ["galaxy"]}, "unknown_context"),
        ({"name": "Due", "field_type": "date", "default_value": "tomorrow"}, "invalid_default_value"),
        ({"name": "Flag", "field_type": "text", "conditional_rules": [{"field_id": "x", "operator": "near"}]}, "unknown_rule_operator"),
    ],
)
def test_structural_rejections(normalizer: FieldDefinitionNormalizer, raw: dict, reason: str) -> None:
    with pytest.raises(DefinitionInvalid) as exc_info:
        normalizer.normalize(raw)
    assert exc_info.value.reason == reason


def test_non_mapping_is_rejected(normalizer: FieldDefinitionNormalizer) -> None:
    with pytest.raises(DefinitionInvalid) as exc_info:
        normalizer.normalize(["not", "a", "definition"])  # type: ignore[arg-type]
    assert exc_info.value.reason == "not_an_object"


def test_formula_identifiers_resolve_to_sibling_ids(normalizer: FieldDefinitionNormalizer) -> None:
    definitions = normalizer.normalize_scope(
        [
            _number("sp", "Story Points"),
            {"id": "double", "name": "Double", "field_type": "formula", "project_id": "p1", "formula": "story_points * 2 + {sp} + ghost"},
        ]
    )
    formula = definitions[1].formula
    assert formula is not None
    assert formula.dependencies == ["sp", "ghost"]


def test_cycle_between_formulas_is_rejected(normalizer: FieldDefinitionNormalizer) -> None:
    with pytest.raises(CyclicDependency) as exc_info:
        normalizer.normalize_scope(
            [
                {"id": "a", "name": "A", "field_type": "formula", "project_id": "p1", "formula": "{b} + 1"},
                {"id": "b", "name": "B", "field_type": "formula", "project_id": "p1", "formula": "{a} + 1"},
            ]
        )
    assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]
    assert set(exc_info.value.cycle) == {"a", "b"}


def test_self_referencing_rollup_is_a_cycle(normalizer: FieldDefinitionNormalizer) -> None:
    with pytest.raises(CyclicDependency):
        normalizer.normalize_scope(
            [
                {
                    "id": "total",
                    "name": "Total",
                    "field_type": "rollup",
                    "project_id": "p1",
                    "rollup": {"source_field_id": "total", "relationship_name": "children", "aggregation": "count"},
                }
            ]
        )


def test_dangling_and_cross_scope_references_are_rejected(normalizer: FieldDefinitionNormalizer) -> None:
    rollup = {
        "id": "total",
        "name": "Total",
        "field_type": "rollup",
        "project_id": "p1",
        "rollup": {"source_field_id": "points", "relationship_name": "children", "aggregation": "sum"},
    }
    with pytest.raises(DefinitionInvalid) as missing:
        normalizer.normalize_scope([rollup])
    assert missing.value.reason == "dangling_reference"

    with pytest.raises(DefinitionInvalid) as other_scope:
        normalizer.normalize_scope([_number("points", "Points", project_id="p2"), rollup])
    assert other_scope.value.reason == "dangling_reference"


def test_duplicate_api_name_within_scope(normalizer: FieldDefinitionNormalizer) -> None:
    with pytest.raises(DefinitionInvalid) as exc_info:
        normalizer.normalize_scope([_number("a", "Points"), _number("b", "points ")])
    assert exc_info.value.reason == "duplicate_api_name"

    definitions = normalizer.normalize_scope([_number("a", "Points"), _number("b", "Points", project_id="p2")])
    assert len(definitions) == 2


def test_incompatible_aggregation_is_rejected(normalizer: FieldDefinitionNormalizer) -> None:
    with pytest.raises(DefinitionInvalid) as exc_info:
        normalizer.normalize_scope(
            [
                {"id": "title", "name": "Title", "field_type": "text", "project_id": "p1"},
                {
                    "id": "total",
                    "name": "Total",
                    "field_type": "rollup",
                    "project_id": "p1",
                    "rollup": {"source_field_id": "title", "relationship_name": "children", "aggregation": "sum"},
                },
            ]
        )
    assert exc_info.value.reason == "incompatible_aggregation"
    assert exc_info.value.detail == {"aggregation": "sum", "source_value_type": "string"}


def test_reconfirmation_suspends_aggregation_check(normalizer: FieldDefinitionNormalizer) -> None:
    definitions = normalizer.normalize_scope(
        [
            {"id": "title", "name": "Title", "field_type": "text", "project_id": "p1"},
            {
                "id": "total",
                "name": "Total",
                "field_type": "rollup",
                "project_id": "p1",
                "requires_reconfirmation": True,
                "rollup": {"source_field_id": "title", "relationship_name": "children", "aggregation": "sum"},
            },
        ]
    )
    assert definitions[1].requires_reconfirmation is True


def test_mirror_takes_presentation_type_of_source(normalizer: FieldDefinitionNormalizer) -> None:
    definitions = normalizer.normalize_scope(
        [
            {"id": "status", "name": "Status", "field_type": "select", "project_id": "p1", "options": ["Open", "Done"]},
            {
                "id": "parent_status",
                "name": "Parent Status",
                "field_type": "mirror",
                "project_id": "p1",
                "mirror": {"sourceFieldId": "status", "relationshipName": "parent"},
            },
        ]
    )
    mirror = definitions[1].mirror
    assert mirror is not None
    assert mirror.presentation_type == "select"


def test_custom_registry_controls_known_types() -> None:
    registry = FieldTypeRegistry([FieldTypeSpec("text", "string", "text", lambda definition, value: value)])
    normalizer = FieldDefinitionNormalizer(registry)

    assert normalizer.normalize({"name": "Note", "field_type": "text"}).field_type == "text"
    with pytest.raises(DefinitionInvalid):
        normalizer.normalize({"name": "Count", "field_type": "number"})
    with pytest.raises(ValueError):
        registry.register(FieldTypeSpec("text", "string", "text", lambda definition, value: value))


@pytest.mark.parametrize(
    "raw",
    [
        {"id": "f1", "name": "F1", "field_type": "formula", "formula": "{f1} + 1"},
        {
            "id": "total",
            "name": "Total",
            "field_type": "rollup",
            "rollup": {"source_field_id": "total", "relationship_name": "children", "aggregation": "count"},
        },
        {"id": "flag", "name": "Flag", "field_type": "text", "conditional_rules": [{"field_id": "flag", "operator": "is_set"}]},
    ],
)
def test_self_reference_is_rejected_without_siblings(normalizer: FieldDefinitionNormalizer, raw: dict) -> None:
    with pytest.raises(CyclicDependency) as exc_info:
        normalizer.normalize(raw)
    assert exc_info.value.cycle == [raw["id"], raw["id"]]


LINKED_SCOPE = [
    _number("sp", "Story Points", position=0),
    {
        "id": "status",
        "name": "Status",
        "field_type": "single_select",
        "project_id": "p1",
        "options": [{"label": "Open", "isDefault": True}, {"label": "Done", "color": "green"}],
    },
    {"id": "tags", "name": "Tags", "field_type": "multiselect", "project_id": "p1", "options": ["ui", "api"]},
    {"id": "due", "name": "Due", "field_type": "date", "project_id": "p1", "default_value": "2026-01-31"},
    {
        "id": "note",
        "name": "Note",
        "field_type": "text",
        "project_id": "p1",
        "conditional_rules": [{"field_id": "status", "operator": "is_set"}],
        "governance": {"managedBy": "project", "tags": ["pii"]},
    },
    {
        "id": "double",
        "name": "Double",
        "field_type": "formula",
        "project_id": "p1",
        "formula": {"expression": "story_points * 2 + {sp}", "precision": 1, "format": "number"},
    },
    {
        "id": "total",
        "name": "Total",
        "field_type": "rollup",
        "project_id": "p1",
        "rollup": {"source_field_id": "double", "relationship_name": "children", "aggregation": "sum"},
    },
    {
        "id": "epic_status",
        "name": "Epic Status",
        "field_type": "mirror",
        "project_id": "p1",
        "mirror": {"source_field_id": "status", "relationship_name": "epic"},
    },
    {"id": "window", "name": "Window", "field_type": "date_range", "project_id": "p1"},
    {"id": "owners", "name": "Owners", "field_type": "user", "project_id": "p1", "default_value": ["u1"]},
    {"id": "effort", "name": "Effort", "field_type": "effort", "project_id": "p1", "is_required": True},
]


@pytest.mark.parametrize("field_id", [raw["id"] for raw in LINKED_SCOPE])
def test_linked_scope_round_trips_through_serialize(normalizer: FieldDefinitionNormalizer, field_id: str) -> None:
    first = {definition.id: definition for definition in normalizer.normalize_scope(LINKED_SCOPE)}
    second = {
        definition.id: definition
        for definition in normalizer.normalize_scope([normalizer.serialize(item) for item in first.values()])
    }

    assert second[field_id] == first[field_id]
    assert normalizer.normalize(normalizer.serialize(first[field_id]), siblings=first.values()) == first[field_id]


def test_linked_scope_resolves_formula_and_mirror(normalizer: FieldDefinitionNormalizer) -> None:
    linked = {definition.id: definition for definition in normalizer.normalize_scope(LINKED_SCOPE)}

    assert linked["double"].formula is not None
    assert linked["double"].formula.dependencies == ["sp"]
    assert linked["epic_status"].mirror is not None
    assert linked["epic_status"].mirror.presentation_type == "select"
    assert linked["status"].field_type == "select"
