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

lead_ingestion_items_total = Counter(
    "lead_ingestion_items_total",
    "Bulk ingestion items by outcome",
    ["outcome"],
)

lead_ingestion_batch_size = Histogram(
    "lead_ingestion_batch_size",
    "Items per bulk ingestion request",
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000),
)

lead_mapping_degraded_total = Counter(
    "lead_mapping_degraded_total",
    "Branch mappings that fell back to the default tenant",
    ["reason"],
)

lead_rate_limit_denials_total = Counter(
    "lead_rate_limit_denials_total",
    "Requests denied by the ingestion rate limiter",
)

lead_credential_rejections_total = Counter(
    "lead_credential_rejections_total",
    "Ingestion requests rejected by the credential gate",
    ["reason"],
)

lead_score_refresh_total = Counter(
    "lead_score_refresh_total",
    "Lead score refreshes by status",
    ["status"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_ingestion_batch(
    *,
    size: int,
    created: int,
    merged: int,
    skipped: int,
    quarantined: int,
) -> None:
    lead_ingestion_batch_size.observe(size)
    for outcome, count in (
        ("created", created),
        ("merged", merged),
        ("skipped", skipped),
        ("quarantined", quarantined),
    ):
        if count > 0:
            lead_ingestion_items_total.labels(outcome=outcome).inc(count)


def observe_mapping_degraded(reason: str) -> None:
    lead_mapping_degraded_total.labels(reason=reason).inc()


def observe_rate_limit_denial() -> None:
    lead_rate_limit_denials_total.inc()


def observe_credential_rejection(reason: str) -> None:
    lead_credential_rejections_total.labels(reason=reason).inc()


def observe_score_refresh(status: str, count: int = 1) -> None:
    if count > 0:
        lead_score_refresh_total.labels(status=status).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
