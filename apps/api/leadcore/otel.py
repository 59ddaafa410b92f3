from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from leadcore.core.config import Settings, get_settings

SERVICE_NAME = "lead-ingestion"

_provider: TracerProvider | None = None
_exporters_attached = False

_INGESTION_PATHS = frozenset({"/api/v1/leads/bulk", "/api/v1/branches"})


def _tracer_provider(settings: Settings) -> TracerProvider:
    global _provider
    if _provider is None:
        resource = Resource.create(
            {
                "service.name": SERVICE_NAME,
                "service.namespace": "leadcore",
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings | None = None) -> TracerProvider | None:
    """Install the lead-ingestion tracer provider and attach the configured exporters once."""
    global _exporters_attached
    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _tracer_provider(settings)
    if _exporters_attached:
        return provider
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_attached = True
    return provider


def capture_spans() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(get_settings()).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def route_kind(path: str) -> str | None:
    """Surface a request path belongs to, mirroring the router tags."""
    if not path.startswith("/api/v1/"):
        return None
    if path in _INGESTION_PATHS:
        return "ingestion"
    if path == "/api/v1/events" or path.endswith("/touchpoints"):
        return "tracking"
    if path == "/api/v1/leads/scores/refresh" or path.endswith("/score"):
        return "scoring"
    if path.startswith("/api/v1/attribution/") or path.endswith("/attribution"):
        return "attribution"
    return None


def ingestion_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
    if span is None or not span.is_recording():
        return
    headers = dict(scope.get("headers", []))
    correlation_raw = headers.get(b"x-correlation-id")
    if correlation_raw:
        span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))
    # Presence only; key material never reaches a span.
    span.set_attribute("ingestion.api_key_present", b"x-api-key" in headers)
    kind = route_kind(scope.get("path", ""))
    if kind is not None:
        span.set_attribute("leadcore.route_kind", kind)
