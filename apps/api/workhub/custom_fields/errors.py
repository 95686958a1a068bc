from __future__ import annotations

from typing import Any


class CustomFieldError(Exception):
    """Base error for structural custom field problems surfaced to callers."""


class DefinitionInvalid(CustomFieldError):
    """Raised when a field definition (or a write against one) is rejected at normalization time."""

    def __init__(self, reason: str, *, field_id: str | None = None, detail: Any = None) -> None:
        self.reason = reason
        self.field_id = field_id
        self.detail = detail
        message = reason if field_id is None else f"{reason} ({field_id})"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "field_id": self.field_id, "detail": self.detail}


class CyclicDependency(CustomFieldError):
    """Raised when formula, rollup, mirror or conditional rule edges form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"cyclic dependency: {' -> '.join(self.cycle)}")

    def to_dict(self) -> dict[str, Any]:
        return {"reason": "cyclic_dependency", "cycle": self.cycle}


class FieldValueInvalid(CustomFieldError):
    def __init__(self, field_id: str, reason: str) -> None:
        self.field_id = field_id
        self.reason = reason
        super().__init__(f"{field_id}: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "field_id": self.field_id}


class DefinitionNotFound(CustomFieldError):
    def __init__(self, definition_id: str) -> None:
        self.definition_id = definition_id
        super().__init__(f"custom field definition not found: {definition_id}")


class UsageSummaryUnavailable(Exception):
    """Signal from a usage summary source that the precomputed aggregate does not exist."""


class DefinitionInUse(CustomFieldError):
    def __init__(self, definition_id: str, referenced_by: list[str]) -> None:
        self.definition_id = definition_id
        self.referenced_by = list(referenced_by)
        super().__init__(f"custom field definition {definition_id} is referenced by {', '.join(self.referenced_by)}")

    def to_dict(self) -> dict[str, Any]:
        return {"reason": "definition_in_use", "field_id": self.definition_id, "referenced_by": self.referenced_by}
