from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Protocol

from workhub.custom_fields.errors import UsageSummaryUnavailable
from workhub.custom_fields.schemas import FieldDefinition, FieldScope, UsageMetric, UsageResult


logger = logging.getLogger("workhub.custom_fields.usage")

_SCREEN_CONTEXTS = ("boards", "forms")


class UsageSummarySource(Protocol):
    def summary(self, scope: FieldScope) -> list[dict[str, Any]]:
        """Precomputed usage rows for ``scope``; raises ``UsageSummaryUnavailable`` when absent."""
        ...


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class UsageMetricsAggregator:
    def __init__(self, summary_source: UsageSummarySource | None = None) -> None:
        self.summary_source = summary_source

    def usage(self, scope: FieldScope, definitions: Iterable[FieldDefinition]) -> UsageResult:
        in_scope = sorted(
            (definition for definition in definitions if scope.contains(definition)),
            key=lambda definition: (definition.name.casefold(), definition.id),
        )
        if self.summary_source is None:
            return self.fallback(in_scope)
        try:
            rows = self.summary_source.summary(scope)
        except UsageSummaryUnavailable:
            logger.info("usage.fallback", extra={"scope": scope.label(), "is_fallback": True})
            return self.fallback(in_scope)
        return UsageResult(metrics=self._from_rows(rows, in_scope), is_fallback=False)

    def fallback(self, definitions: Iterable[FieldDefinition]) -> UsageResult:
        metrics = [
            UsageMetric(
                field_id=definition.id,
                field_name=definition.name,
                screens=[context for context in definition.contexts if context in _SCREEN_CONTEXTS],
                reports=["Reports"] if "reports" in definition.contexts else [],
                automations=["Automations"] if "automations" in definition.contexts else [],
                last_used_at=None,
                usage_count=0,
            )
            for definition in sorted(definitions, key=lambda item: (item.name.casefold(), item.id))
        ]
        return UsageResult(metrics=metrics, is_fallback=True)

    def _from_rows(self, rows: Iterable[Mapping[str, Any]], definitions: list[FieldDefinition]) -> list[UsageMetric]:
        names = {definition.id: definition.name for definition in definitions}
        order = {definition.id: index for index, definition in enumerate(definitions)}
        metrics: list[UsageMetric] = []
        for row in rows:
            field_id = row.get("field_id")
            if not field_id:
                continue
            field_id = str(field_id)
            usage_count = row.get("usage_count")
            metrics.append(
                UsageMetric(
                    field_id=field_id,
                    field_name=names.get(field_id) or str(row.get("field_name") or field_id),
                    screens=_string_list(row.get("screens")),
                    automations=_string_list(row.get("automations")),
                    reports=_string_list(row.get("reports")),
                    last_used_at=_timestamp(row.get("last_used_at")),
                    usage_count=usage_count if isinstance(usage_count, int) and not isinstance(usage_count, bool) else 0,
                )
            )
        return sorted(metrics, key=lambda metric: (order.get(metric.field_id, len(order)), metric.field_name.casefold()))
