from workhub.custom_fields.engine import CustomFieldEngine, DerivedOutcome
from workhub.custom_fields.errors import (
    CustomFieldError,
    CyclicDependency,
    DefinitionInUse,
    DefinitionInvalid,
    DefinitionNotFound,
    FieldValueInvalid,
)
from workhub.custom_fields.models import (
    CustomFieldDefinition,
    CustomFieldRelationship,
    CustomFieldRelationshipChange,
    CustomFieldUsageSummary,
    CustomFieldValue,
)
from workhub.custom_fields.registry import FieldTypeRegistry, default_registry
from workhub.custom_fields.schemas import FieldDefinition, FieldScope, FieldValue

__all__ = [
    "CustomFieldEngine",
    "DerivedOutcome",
    "FieldTypeRegistry",
    "default_registry",
    "FieldDefinition",
    "FieldScope",
    "FieldValue",
    "CustomFieldError",
    "CyclicDependency",
    "DefinitionInUse",
    "DefinitionInvalid",
    "DefinitionNotFound",
    "FieldValueInvalid",
    "CustomFieldDefinition",
    "CustomFieldValue",
    "CustomFieldRelationship",
    "CustomFieldRelationshipChange",
    "CustomFieldUsageSummary",
]
