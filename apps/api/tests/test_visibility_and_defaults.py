from __future__ import annotations

import logging

import pytest

from workhub.custom_fields.defaults import DefaultValueResolver
from workhub.custom_fields.normalizer import FieldDefinitionNormalizer
from workhub.custom_fields.registry import default_registry
from workhub.custom_fields.schemas import ConditionalRule, FieldDefinition
from workhub.custom_fields.visibility import ConditionalVisibilityEvaluator


registry = default_registry()
normalizer = FieldDefinitionNormalizer(registry)


def _text(field_id: str, rules: list[dict] | None = None, **extra: object) -> FieldDefinition:
    return normalizer.normalize(
        {"id": field_id, "name": field_id.title(), "field_type": "text", "conditional_rules": rules, **extra}
    )


def test_field_without_rules_is_always_visible() -> None:
    evaluator = ConditionalVisibilityEvaluator()
    assert evaluator.visible([_text("notes")], {}) == {"notes"}


def test_rules_on_one_field_combine_with_and() -> None:
    definition = _text(
        "reason",
        [
            {"field_id": "status", "operator": "equals", "value": "blocked"},
            {"field_id": "owner", "operator": "is_set"},
        ],
    )
    evaluator = ConditionalVisibilityEvaluator()

    assert evaluator.is_visible(definition, {"status": "blocked", "owner": "u1"}) is True
    assert evaluator.is_visible(definition, {"status": "blocked", "owner": ""}) is False
    assert evaluator.is_visible(definition, {"status": "open", "owner": "u1"}) is False


@pytest.mark.parametrize(
    ("operator", "value", "current", "expected"),
    [
        ("equals", 1, 1.0, True),
        ("equals", True, 1, False),
        ("not_equals", "a", "b", True),
        ("contains", "x", ["x", "y"], True),
        ("contains", "ell", "hello", True),
        ("contains", "x", 5, False),
        ("not_contains", "x", ["y"], True),
        ("not_contains", "x", None, True),
        ("is_set", None, [], False),
        ("is_not_set", None, None, True),
        ("is_not_set", None, 0, False),
    ],
)
def test_rule_operators(operator: str, value: object, current: object, expected: bool) -> None:
    rule = ConditionalRule(field_id="target", operator=operator, value=value)
    assert ConditionalVisibilityEvaluator().rule_holds(rule, {"target": current}) is expected


def test_cycle_fails_open(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    first = _text("first", [{"field_id": "second", "operator": "is_set"}])
    second = _text("second", [{"field_id": "first", "operator": "is_set"}])
    hidden = _text("hidden", [{"field_id": "first", "operator": "equals", "value": "show"}])

    outcome = ConditionalVisibilityEvaluator().evaluate([first, second, hidden], {})

    assert outcome.failed_open is True
    assert outcome.visible == {"first", "second", "hidden"}
    assert any(record.getMessage() == "visibility.fail_open" for record in caplog.records)


def test_defaults_for_new_entity() -> None:
    definitions = normalizer.normalize_scope(
        [
            {"id": "summary", "name": "Summary", "field_type": "text", "project_id": "p1", "default_value": "TBD"},
            {"id": "labels", "name": "Labels", "field_type": "multiselect", "project_id": "p1", "options": ["a", "b"]},
            {"id": "estimate", "name": "Estimate", "field_type": "number", "project_id": "p1"},
            {
                "id": "total",
                "name": "Total",
                "field_type": "rollup",
                "project_id": "p1",
                "rollup": {"source_field_id": "estimate", "relationship_name": "children", "aggregation": "sum"},
            },
        ]
    )

    defaults = DefaultValueResolver(registry).defaults(definitions)

    assert defaults == {"summary": "TBD", "labels": [], "estimate": None}
    assert "total" not in defaults


def test_defaults_use_preselected_options_and_skip_private_fields() -> None:
    definitions = [
        normalizer.normalize(
            {
                "id": "priority",
                "name": "Priority",
                "field_type": "select",
                "options": [{"label": "Low", "option_id": "low"}, {"label": "High", "option_id": "high", "is_default": True}],
            }
        ),
        normalizer.normalize(
            {
                "id": "tags",
                "name": "Tags",
                "field_type": "multiselect",
                "options": [
                    {"label": "A", "option_id": "a", "isDefault": True},
                    {"label": "B", "option_id": "b"},
                    {"label": "C", "option_id": "c", "isDefault": True},
                ],
            }
        ),
        normalizer.normalize({"id": "done", "name": "Done", "field_type": "boolean"}),
        normalizer.normalize({"id": "secret", "name": "Secret", "field_type": "text", "is_private": True}),
    ]

    defaults = DefaultValueResolver(registry).defaults(definitions)

    assert defaults == {"priority": "high", "tags": ["a", "c"], "done": False}


def test_literal_default_wins_over_option_flags() -> None:
    definition = normalizer.normalize(
        {
            "id": "priority",
            "name": "Priority",
            "field_type": "select",
            "default_value": "low",
            "options": [{"label": "Low", "option_id": "low"}, {"label": "High", "option_id": "high", "is_default": True}],
        }
    )
    assert DefaultValueResolver(registry).resolve(definition) == "low"
