from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

custom_field_definition_rejections_total = Counter(
    "custom_field_definition_rejections_total",
    "Total rejected custom field definitions by reason",
    ["reason"],
)

custom_field_formula_diagnostics_total = Counter(
    "custom_field_formula_diagnostics_total",
    "Total formula evaluation diagnostics by code",
    ["code"],
)

custom_field_visibility_fail_open_total = Counter(
    "custom_field_visibility_fail_open_total",
    "Total visibility evaluations that rendered every field because of a dependency cycle",
)

custom_field_usage_fallback_total = Counter(
    "custom_field_usage_fallback_total",
    "Total usage metric requests served from declared contexts",
)

custom_field_recomputations_total = Counter(
    "custom_field_recomputations_total",
    "Total derived field recomputations by field type",
    ["field_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_definition_rejected(reason: str) -> None:
    custom_field_definition_rejections_total.labels(reason=reason).inc()


def observe_formula_diagnostic(code: str) -> None:
    custom_field_formula_diagnostics_total.labels(code=code).inc()


def observe_visibility_fail_open() -> None:
    custom_field_visibility_fail_open_total.inc()


def observe_usage_fallback() -> None:
    custom_field_usage_fallback_total.inc()


def observe_recomputation(field_type: str, count: int = 1) -> None:
    if count > 0:
        custom_field_recomputations_total.labels(field_type=field_type).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
