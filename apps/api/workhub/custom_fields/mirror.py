from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, NoReturn

from workhub.custom_fields.errors import DefinitionInvalid
from workhub.custom_fields.schemas import FieldDefinition, MirrorResult, RelatedEntity


class MirrorResolver:
    """Read-only view of a value that lives on a related entity."""

    def resolve(self, definition: FieldDefinition, related_entity: RelatedEntity | None) -> MirrorResult:
        if definition.mirror is None:
            raise DefinitionInvalid("missing_mirror_config", field_id=definition.id)
        if related_entity is None:
            return MirrorResult(value=None, stale=True)
        return MirrorResult(value=related_entity.values.get(definition.mirror.source_field_id))

    def resolve_all(
        self,
        definitions: Iterable[FieldDefinition],
        related: Mapping[str, RelatedEntity | None],
    ) -> dict[str, MirrorResult]:
        """``related`` maps relationship name to the first related entity (or ``None``)."""
        return {
            definition.id: self.resolve(definition, related.get(definition.mirror.relationship_name))
            for definition in definitions
            if definition.mirror is not None
        }

    def reject_write(self, definition: FieldDefinition, value: Any = None) -> NoReturn:
        raise DefinitionInvalid("mirror_is_read_only", field_id=definition.id)
