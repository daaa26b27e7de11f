from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from autoflow.api.routes import router as api_router
from autoflow.automations.engine import AutomationEngine, get_automation_engine
from autoflow.automations.enums import EventKind, RuleDomain
from autoflow.automations.errors import AutomationError
from autoflow.automations.queue import InMemoryDeferredJobQueue
from autoflow.automations.schemas import EntityRef, RuleChangeNotice
from autoflow.context import reset_correlation_id, set_correlation_id
from autoflow.core.config import get_settings
from autoflow.core.database import SessionLocal, get_db
from autoflow.core.events import InternalEvent, event_bus
from autoflow.events import ENTITY_CHANGED_EVENT, RULE_CHANGED_EVENT
from autoflow.logging import configure_logging
from autoflow.middleware.correlation_id import CorrelationIdMiddleware
from autoflow.middleware.request_logging import RequestLoggingMiddleware
from autoflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("autoflow.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _automation_session_scope():
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


def _resolve_engine() -> AutomationEngine:
    override = app.dependency_overrides.get(get_automation_engine) if "app" in globals() else None
    if override is not None:
        return override()
    return get_automation_engine()


def _on_entity_changed(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    correlation_id = envelope.get("correlation_id") if isinstance(envelope.get("correlation_id"), str) else None
    token = set_correlation_id(correlation_id)
    try:
        entity = EntityRef.model_validate(envelope.get("entity"))
        company_id = int(envelope["company_id"])
        column_id = envelope.get("column_id")
        event_kind = EventKind(envelope.get("event_kind") or EventKind.COLUMN_CHANGED)
        engine = _resolve_engine()
        with _automation_session_scope() as session:
            engine.triggers.trigger_event(session, company_id, entity, column_id, event_kind)
            if get_settings().automation_auto_process and isinstance(engine.queue, InMemoryDeferredJobQueue):
                engine.run_due_jobs(session)
    except (KeyError, TypeError, ValueError, AutomationError) as exc:
        logger.warning("automation.event_rejected", extra={"event_name": event.name, "error": str(exc)[:500]})
    except Exception as exc:
        logger.exception("automation.event_failed", extra={"event_name": event.name, "error": str(exc)[:500]})
    finally:
        reset_correlation_id(token)


def _on_rule_changed(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    try:
        domain = RuleDomain(envelope.get("domain"))
        notice = RuleChangeNotice.model_validate(envelope)
        with _automation_session_scope() as session:
            _resolve_engine().triggers.on_rule_changed(session, domain, notice)
    except ValueError as exc:
        logger.warning("automation.event_rejected", extra={"event_name": event.name, "error": str(exc)[:500]})
    except Exception as exc:
        logger.exception("automation.event_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


def register_subscriptions() -> None:
    global _subscriptions_registered
    if _subscriptions_registered:
        return
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe(ENTITY_CHANGED_EVENT, _on_entity_changed)
    event_bus.subscribe(RULE_CHANGED_EVENT, _on_rule_changed)
    _subscriptions_registered = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    register_subscriptions()
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Autoflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("autoflow-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
