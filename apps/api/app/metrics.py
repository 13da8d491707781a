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

crm_side_effects_total = Counter(
    "crm_side_effects_total",
    "Total side-effect dispatches by effect and outcome",
    ["effect", "outcome"],
)

crm_lead_conversions_total = Counter(
    "crm_lead_conversions_total",
    "Total lead conversion attempts by outcome",
    ["outcome"],
)

crm_leads_imported_total = Counter(
    "crm_leads_imported_total",
    "Total leads created through bulk import",
)

crm_bulk_import_duration_seconds = Histogram(
    "crm_bulk_import_duration_seconds",
    "Bulk lead import duration in seconds",
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


def observe_side_effect(effect: str, outcome: str) -> None:
    crm_side_effects_total.labels(effect=effect, outcome=outcome).inc()


def observe_lead_conversion(outcome: str) -> None:
    crm_lead_conversions_total.labels(outcome=outcome).inc()


def observe_bulk_import(count: int, duration: float) -> None:
    if count > 0:
        crm_leads_imported_total.inc(count)
    crm_bulk_import_duration_seconds.observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
