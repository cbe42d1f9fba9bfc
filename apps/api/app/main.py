from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.database import SessionLocal, create_schema, get_db
from app.core.events import InternalEvent, event_bus
from app.crosssell.notifications import CROSSSELL_EVENT_TYPES, notification_dispatcher
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _event_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_crosssell_domain_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    try:
        with _event_session_scope() as session:
            notification_dispatcher.handle_event(session, envelope)
    except Exception as exc:
        logger.exception("notification_dispatch_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    settings = get_settings()
    if settings.create_schema_on_startup and get_db not in app.dependency_overrides:
        create_schema()
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in CROSSSELL_EVENT_TYPES:
            event_bus.subscribe(event_name, _on_crosssell_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Cross-Sell API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "code": "http_error",
            "message": detail.get("message", str(detail)) if isinstance(detail, dict) else str(detail),
            "details": detail,
            "correlation_id": get_correlation_id() or getattr(request.state, "correlation_id", None),
        },
        headers=getattr(exc, "headers", None),
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel("crosssell-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
