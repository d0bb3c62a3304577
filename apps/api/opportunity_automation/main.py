from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from opportunity_automation.api.routes import router as api_router
from opportunity_automation.core.config import get_settings
from opportunity_automation.events import OPPORTUNITY_EVENT_TYPES, InternalEvent, event_bus
from opportunity_automation.logging import configure_logging
from opportunity_automation.middleware.request_context import RequestContextMiddleware
from opportunity_automation.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("opportunity_automation.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_opportunity_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    opportunity_id = payload.get("opportunity_id") if isinstance(payload, dict) else None
    logger.info("domain_event", extra={"event_name": event.name, "opportunity_id": opportunity_id})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in OPPORTUNITY_EVENT_TYPES:
        event_bus.subscribe(event_name, _on_opportunity_event)
    event_bus.publish("system.started", {"service": SERVICE_NAME})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(SERVICE_NAME, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
