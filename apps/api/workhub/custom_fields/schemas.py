from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


ScopeKind = Literal["project", "global"]
RuleOperator = Literal["equals", "not_equals", "contains", "not_contains", "is_set", "is_not_set"]
RollupAggregation = Literal["count", "sum", "avg", "min", "max", "concat_distinct"]
FormulaFormat = Literal["number", "percent", "currency", "text"]
GovernanceManagedBy = Literal["workspace", "project", "team"]
GovernanceVisibility = Literal["public", "restricted", "confidential"]

RULE_OPERATORS: frozenset[str] = frozenset(
    {"equals", "not_equals", "contains", "not_contains", "is_set", "is_not_set"}
)
ROLLUP_AGGREGATIONS: frozenset[str] = frozenset({"count", "sum", "avg", "min", "max", "concat_distinct"})
FIELD_CONTEXTS: tuple[str, ...] = ("tasks", "forms", "boards", "reports", "automations", "docs", "items")
DERIVED_FIELD_TYPES: frozenset[str] = frozenset({"formula", "rollup", "mirror"})


class FieldScope(BaseModel):
    """Where a set of definitions lives: one project, or the whole workspace."""

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    project_id: str | None = None
    workspace_id: str | None = None

    @classmethod
    def for_project(cls, project_id: str) -> "FieldScope":
        return cls(kind="project", project_id=project_id)

    @classmethod
    def for_workspace(cls, workspace_id: str) -> "FieldScope":
        return cls(kind="global", workspace_id=workspace_id)

    def contains(self, definition: "FieldDefinition") -> bool:
        if definition.scope != self.kind:
            return False
        if self.kind == "global":
            return definition.workspace_id == self.workspace_id
        return definition.project_id == self.project_id

    def label(self) -> str:
        if self.kind == "global":
            return f"global:{self.workspace_id}"
        return f"project:{self.project_id}"


class OptionSetOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    option_id: str
    label: str
    description: str | None = None
    color: str | None = None
    is_default: bool = False


class OptionSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    options: list[OptionSetOption]
    allow_custom_options: bool = False

    def option_ids(self) -> list[str]:
        return [option.option_id for option in self.options]


class FormulaConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    expression: str
    dependencies: list[str] = Field(default_factory=list)
    precision: int | None = None
    format: FormulaFormat = "number"


class RollupConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_field_id: str
    relationship_name: str
    aggregation: RollupAggregation


class MirrorConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_field_id: str
    relationship_name: str
    presentation_type: str | None = None


class GovernanceMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    managed_by: GovernanceManagedBy | None = None
    compliance_tags: list[str] = Field(default_factory=list)
    visibility: GovernanceVisibility | None = None
    review_cadence_days: int | None = None
    audit_trail_enabled: bool = False
    description: str | None = None


class ConditionalRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    field_id: str
    operator: RuleOperator
    value: Any = None


class FieldDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    api_name: str
    description: str | None = None
    scope: ScopeKind
    project_id: str | None = None
    workspace_id: str | None = None
    field_type: str
    contexts: list[str] = Field(default_factory=list)
    option_set: OptionSet | None = None
    formula: FormulaConfig | None = None
    rollup: RollupConfig | None = None
    mirror: MirrorConfig | None = None
    governance: GovernanceMetadata | None = None
    conditional_rules: list[ConditionalRule] = Field(default_factory=list)
    default_value: Any = None
    is_required: bool = False
    is_private: bool = False
    position: int = 0
    requires_reconfirmation: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_derived(self) -> bool:
        return self.field_type in DERIVED_FIELD_TYPES

    def source_field_id(self) -> str | None:
        if self.rollup is not None:
            return self.rollup.source_field_id
        if self.mirror is not None:
            return self.mirror.source_field_id
        return None

    def relationship_name(self) -> str | None:
        if self.rollup is not None:
            return self.rollup.relationship_name
        if self.mirror is not None:
            return self.mirror.relationship_name
        return None


class FieldValue(BaseModel):
    entity_id: str
    field_id: str
    value: Any = None
    computed_at: datetime | None = None


class FormulaDiagnostic(BaseModel):
    code: str
    message: str
    reference: str | None = None


class FormulaResult(BaseModel):
    value: Any = None
    diagnostics: list[FormulaDiagnostic] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.diagnostics


class RollupResult(BaseModel):
    value: Any = None
    stale: bool = False


class MirrorResult(BaseModel):
    value: Any = None
    stale: bool = False


class RelatedEntity(BaseModel):
    entity_id: str
    values: dict[str, Any] = Field(default_factory=dict)


class UsageMetric(BaseModel):
    field_id: str
    field_name: str
    screens: list[str] = Field(default_factory=list)
    automations: list[str] = Field(default_factory=list)
    reports: list[str] = Field(default_factory=list)
    last_used_at: datetime | None = None
    usage_count: int = 0


class UsageResult(BaseModel):
    metrics: list[UsageMetric] = Field(default_factory=list)
    is_fallback: bool = False


class EntityFieldState(BaseModel):
    entity_id: str
    values: dict[str, Any] = Field(default_factory=dict)
    visible_field_ids: list[str] = Field(default_factory=list)
    stale_field_ids: list[str] = Field(default_factory=list)
    diagnostics: dict[str, list[FormulaDiagnostic]] = Field(default_factory=dict)


class EntityValuesUpdate(BaseModel):
    values: dict[str, Any] = Field(default_factory=dict)


class EntityInitializeRequest(BaseModel):
    values: dict[str, Any] = Field(default_factory=dict)


class RelationshipUpdate(BaseModel):
    related_entity_ids: list[str] = Field(default_factory=list)


class FieldTypeRead(BaseModel):
    name: str
    aliases: list[str] = Field(default_factory=list)
    value_type: str
    presentation_type: str
    derived: bool
    has_options: bool
