from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from workhub.api.routes import router as api_router
from workhub.core.config import get_settings
from workhub.core.events import DomainEvent, event_bus
from workhub.logging import configure_logging
from workhub.middleware.correlation_id import CorrelationIdMiddleware
from workhub.middleware.request_logging import RequestLoggingMiddleware
from workhub.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("workhub.lifecycle")
DEFINITION_EVENTS = "custom_fields.definition.*"


def _on_system_started(event: DomainEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_definition_event(event: DomainEvent) -> None:
    payload = event.payload.get("payload") or {}
    logger.info(
        "custom_field.definition_event",
        extra={
            "event_name": event.name,
            "field_id": payload.get("definition_id"),
            "field_type": payload.get("field_type"),
            "scope": event.payload.get("scope"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe(DEFINITION_EVENTS, _on_definition_event)
    event_bus.publish("system.started", {"service": "custom-fields-api"})
    yield


app = FastAPI(title="WorkHub Custom Fields API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("custom-fields-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
