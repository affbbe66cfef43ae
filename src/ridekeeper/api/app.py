"""FastAPI application factory and component wiring."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from ridekeeper.adapters.claude import ClaudeInference
from ridekeeper.adapters.ride_provider import HttpRideProvider, SimulatedRideProvider
from ridekeeper.adapters.twilio_sms import LoggingTransport, TwilioSmsTransport
from ridekeeper.api.routes import (
    appointments,
    dashboard,
    events,
    health,
    ingest,
    rides,
    scheduler,
    sms,
)
from ridekeeper.conversation.handler import ReplyHandler
from ridekeeper.conversation.intent import IntentResolver
from ridekeeper.errors import RideKeeperError
from ridekeeper.events import EventFeed
from ridekeeper.logging import configure_logging, correlation_id_var, new_correlation_id
from ridekeeper.models import utcnow
from ridekeeper.orchestration.orchestrator import Orchestrator
from ridekeeper.orchestration.scheduler import AsyncioScheduler
from ridekeeper.outreach.dispatcher import OutreachDispatcher
from ridekeeper.rides.lifecycle import RideLifecycleManager
from ridekeeper.scoring.adjustment import RiskAssessor
from ridekeeper.settings import Settings
from ridekeeper.storage.event_store import InMemoryEventLog, PostgresEventLog
from ridekeeper.storage.repository import InMemoryDataStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from datetime import datetime

    import psycopg
    import redis

    from ridekeeper.adapters.ride_provider import RideProvider
    from ridekeeper.adapters.twilio_sms import MessageTransport
    from ridekeeper.storage.event_store import EventLogProtocol
    from ridekeeper.storage.repository import DataStore

__all__ = ["Services", "attach_services", "build_services", "create_app"]

logger = logging.getLogger(__name__)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    401: "SIGNATURE_INVALID",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


# ── Component wiring ─────────────────────────────────────────────────


@dataclass
class Services:
    settings: Settings
    store: DataStore
    feed: EventFeed
    transport: MessageTransport
    provider: RideProvider
    inference: ClaudeInference | None
    assessor: RiskAssessor
    resolver: IntentResolver
    dispatcher: OutreachDispatcher
    lifecycle: RideLifecycleManager
    replies: ReplyHandler
    orchestrator: Orchestrator
    scheduler: AsyncioScheduler
    redis_client: redis.Redis | None = None  # type: ignore[type-arg]
    pg_conn: psycopg.Connection[Any] | None = None
    clock: Callable[[], datetime] = utcnow


def build_services(
    settings: Settings,
    *,
    store: DataStore | None = None,
    transport: MessageTransport | None = None,
    provider: RideProvider | None = None,
    inference: Any = None,
    event_log: EventLogProtocol | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """Construct every component explicitly; anything passed in wins."""
    store = store or InMemoryDataStore()
    feed = EventFeed(log=event_log if event_log is not None else InMemoryEventLog())

    if transport is None:
        if settings.test_mode or not settings.twilio_account_sid:
            transport = LoggingTransport()
        else:
            transport = TwilioSmsTransport(
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                from_number=settings.twilio_from_number,
                status_callback_url=settings.twilio_status_callback_url,
            )

    if provider is None:
        if settings.ride_provider_url:
            provider = HttpRideProvider(
                settings.ride_provider_url,
                token=settings.ride_provider_token,
                timeout=settings.external_timeout_seconds,
            )
        else:
            provider = SimulatedRideProvider(clock=clock)

    if inference is None and settings.inference_configured:
        inference = ClaudeInference(
            api_key=settings.anthropic_api_key,
            risk_model=settings.risk_model,
            intent_model=settings.intent_model,
        )

    assessor = RiskAssessor(store, settings, inference=inference, clock=clock)
    resolver = IntentResolver(settings, inference=inference)
    dispatcher = OutreachDispatcher(store, transport, feed, settings, clock=clock)
    lifecycle = RideLifecycleManager(store, provider, dispatcher, feed, settings, clock=clock)
    replies = ReplyHandler(store, dispatcher, resolver, assessor, lifecycle, feed, settings)
    orchestrator = Orchestrator(store, assessor, dispatcher, lifecycle, feed, settings, clock=clock)
    scheduler_ = AsyncioScheduler(clock=clock)
    orchestrator.register_defaults(scheduler_)

    return Services(
        settings=settings,
        store=store,
        feed=feed,
        transport=transport,
        provider=provider,
        inference=inference if isinstance(inference, ClaudeInference) else None,
        assessor=assessor,
        resolver=resolver,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        replies=replies,
        orchestrator=orchestrator,
        scheduler=scheduler_,
        clock=clock,
    )


def attach_services(app: FastAPI, services: Services) -> None:
    app.state.services = services
    app.state.settings = services.settings


# ── Middleware & error handlers ──────────────────────────────────────


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Inject correlation_id and record request metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        cid = request.headers.get("x-correlation-id") or new_correlation_id()
        correlation_id_var.set(cid)
        request.state.request_id = cid

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        response.headers["x-correlation-id"] = cid
        response.headers["x-request-duration-ms"] = f"{duration * 1000:.1f}"
        health.record_request(response.status_code)
        return response


def _resolve_request_id(request: Request) -> str:
    state_request_id = getattr(request.state, "request_id", "")
    if state_request_id:
        return state_request_id
    header_request_id = request.headers.get("x-correlation-id", "")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = new_correlation_id()
    request.state.request_id = generated
    return generated


def _error_payload(
    error_code: str, message: str, request_id: str, *, details: Any = None
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error_code": error_code,
        "message": message,
        "request_id": request_id,
    }
    if details is not None:
        payload["details"] = details
    return payload


async def _domain_exception_handler(request: Request, exc: RideKeeperError) -> JSONResponse:
    request_id = _resolve_request_id(request)
    if exc.status_code >= 500:
        logger.warning("%s: %s", exc.error_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.error_code, exc.message, request_id),
    )


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    request_id = _resolve_request_id(request)
    status_code = exc.status_code

    if status_code in _ERROR_CODE_BY_STATUS:
        error_code = _ERROR_CODE_BY_STATUS[status_code]
    elif 400 <= status_code < 500:
        error_code = "INVALID_REQUEST"
    else:
        error_code = "INTERNAL_ERROR"

    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=status_code,
        content=_error_payload(error_code, message, request_id),
    )


async def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    request_id = _resolve_request_id(request)
    return JSONResponse(
        status_code=422,
        content=_error_payload(
            "INVALID_REQUEST",
            "Request validation failed",
            request_id,
            details=exc.errors(),
        ),
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _resolve_request_id(request)
    logger.exception("Unhandled application exception", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=_error_payload("INTERNAL_ERROR", "Internal server error", request_id),
    )


# ── Lifespan ─────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = Settings()
    configure_logging(json_output=settings.log_json, level=settings.log_level)

    # Event log: PostgreSQL when configured, in-memory otherwise
    pg_conn = None
    event_log: EventLogProtocol | None = None
    if settings.pg_dsn:
        from ridekeeper.storage.postgres import ensure_event_schema, get_connection

        pg_conn = get_connection(settings.pg_dsn)
        ensure_event_schema(pg_conn)
        event_log = PostgresEventLog(pg_conn)

    services = build_services(settings, event_log=event_log)
    services.pg_conn = pg_conn

    # Redis (inbound webhook idempotency)
    if settings.redis_url:
        from ridekeeper.storage.redis import get_redis_client

        services.redis_client = get_redis_client(settings.redis_url)

    attach_services(app, services)
    if settings.scheduler_enabled:
        services.scheduler.start()

    logger.info(
        "RideKeeper started (test_mode=%s, inference=%s, provider=%s)",
        settings.test_mode,
        services.assessor.available,
        type(services.provider).__name__,
    )

    yield

    await services.scheduler.stop()
    if isinstance(services.provider, HttpRideProvider):
        await services.provider.close()
    if services.inference is not None:
        await services.inference.close()
    if services.redis_client is not None:
        services.redis_client.close()
    if pg_conn is not None:
        pg_conn.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="RideKeeper",
        version="0.1.0",
        description="Risk-driven ride outreach for medical appointments.",
        lifespan=lifespan,
    )
    app.add_exception_handler(RideKeeperError, _domain_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)
    app.add_middleware(ObservabilityMiddleware)
    app.include_router(health.router, tags=["health"])
    app.include_router(ingest.router, tags=["ingest"])
    app.include_router(appointments.router, tags=["appointments"])
    app.include_router(rides.router, tags=["rides"])
    app.include_router(sms.router, tags=["sms"])
    app.include_router(scheduler.router, tags=["scheduler"])
    app.include_router(events.router, tags=["events"])
    app.include_router(dashboard.router, tags=["dashboard"])
    return app


app = create_app()
