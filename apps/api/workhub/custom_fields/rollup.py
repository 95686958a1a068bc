from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from workhub.custom_fields.errors import DefinitionInvalid
from workhub.custom_fields.schemas import FieldDefinition, RollupResult
from workhub.custom_fields.values import is_number


logger = logging.getLogger("workhub.custom_fields.rollup")

# relationship name -> source values of every related entity, in resolver order
RelatedValues = Mapping[str, Mapping[str, Sequence[Any]]]


def _hashable(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_hashable(item) for item in value)
    if isinstance(value, dict):
        return tuple(sorted((key, _hashable(item)) for key, item in value.items()))
    return value


class RollupAggregator:
    def aggregate(self, definition: FieldDefinition, related_values: Sequence[Any]) -> Any:
        if definition.rollup is None:
            raise DefinitionInvalid("missing_rollup_config", field_id=definition.id)
        aggregation = definition.rollup.aggregation
        present = [value for value in related_values if value is not None]

        if aggregation == "count":
            return len(present)
        if aggregation == "concat_distinct":
            seen: set[Any] = set()
            distinct: list[Any] = []
            for value in present:
                for item in value if isinstance(value, (list, tuple)) else [value]:
                    key = _hashable(item)
                    if item is None or key in seen:
                        continue
                    seen.add(key)
                    distinct.append(item)
            return distinct

        if aggregation in {"sum", "avg"}:
            numbers = [value for value in present if is_number(value)]
            if len(numbers) != len(present):
                logger.warning(
                    "rollup.non_numeric_values_skipped",
                    extra={"field_id": definition.id, "reason": aggregation},
                )
            if aggregation == "sum":
                return sum(numbers)
            return sum(numbers) / len(numbers) if numbers else None

        if not present:
            return None
        try:
            return min(present) if aggregation == "min" else max(present)
        except TypeError:
            logger.warning("rollup.incomparable_values", extra={"field_id": definition.id, "reason": aggregation})
            return None

    def refresh_incremental(
        self,
        definitions: Iterable[FieldDefinition],
        relationship_name: str,
        related_values: RelatedValues,
    ) -> dict[str, RollupResult]:
        """Recompute only the rollups reading through ``relationship_name``."""
        return self._refresh(definitions, related_values, relationship_name)

    def refresh_full(self, definitions: Iterable[FieldDefinition], related_values: RelatedValues) -> dict[str, RollupResult]:
        return self._refresh(definitions, related_values)

    def _refresh(
        self,
        definitions: Iterable[FieldDefinition],
        related_values: RelatedValues,
        relationship_name: str | None = None,
    ) -> dict[str, RollupResult]:
        results: dict[str, RollupResult] = {}
        for definition in definitions:
            rollup = definition.rollup
            if rollup is None or relationship_name not in (None, rollup.relationship_name):
                continue
            if definition.requires_reconfirmation:
                results[definition.id] = RollupResult(value=None, stale=True)
                continue
            by_source = related_values.get(rollup.relationship_name, {})
            values = by_source.get(rollup.source_field_id, [])
            results[definition.id] = RollupResult(value=self.aggregate(definition, values))
        return results
