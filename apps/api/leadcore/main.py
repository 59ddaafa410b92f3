from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadcore.api.routes import router as api_router
from leadcore.core.config import get_settings
from leadcore.core.context import RequestContextMiddleware
from leadcore.core.events import InternalEvent, event_bus
from leadcore.logging import configure_logging
from leadcore.middleware.correlation_id import CorrelationIdMiddleware
from leadcore.middleware.rate_limit import IngestionRateLimitMiddleware
from leadcore.middleware.request_logging import RequestLoggingMiddleware
from leadcore.otel import configure_tracing, ingestion_request_hook


configure_logging()
logger = logging.getLogger("leadcore.lifecycle")
_subscriptions_registered = False

_lead_event_types = [
    "lead.ingested",
    "lead.score_refreshed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_lead_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") or {}
    lead_id = payload.get("lead_id") if isinstance(payload, dict) else None
    logger.debug(
        "lead_event",
        extra={"event_name": event.name, "lead_id": lead_id, "tenant_id": event.payload.get("tenant_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _lead_event_types:
            event_bus.subscribe(event_name, _on_lead_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "lead-ingestion"})
    yield


app = FastAPI(title="Lead Ingestion API", version="0.1.0", lifespan=lifespan)
app.add_middleware(IngestionRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()

configure_tracing(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=ingestion_request_hook)
