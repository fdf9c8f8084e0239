"""
IntakeWire - outbound webhooks and scheduled follow-ups for legal intake.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from intakewire.config import get_settings
from intakewire.api.router import api_router
from intakewire.database import dispose_engine
from intakewire.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)
from intakewire.workers.dispatcher import build_dispatcher, set_dispatcher

logger = logging.getLogger("intakewire")

DISPATCHER_DRAIN_SECONDS = 10.0


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("IntakeWire starting up (env=%s)", settings.app_env)

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    if not settings.twilio_account_sid:
        logger.warning("TWILIO_ACCOUNT_SID not set - SMS follow-ups are recorded, not sent")

    # Work dispatcher (deliveries + follow-up jobs)
    dispatcher = build_dispatcher()
    await dispatcher.start()
    set_dispatcher(dispatcher)

    worker_tasks: list[asyncio.Task] = []

    # Recovery sweeper re-arms durable work lost by a restart
    if settings.sweeper_enabled:
        from intakewire.workers.recovery_sweeper import run_recovery_sweeper
        worker_tasks.append(asyncio.create_task(
            run_recovery_sweeper(settings.sweep_interval_seconds)
        ))
        logger.info("Recovery sweeper started")
    else:
        logger.info("Recovery sweeper disabled (SWEEPER_ENABLED=false)")

    yield

    # Graceful shutdown - stop the sweeper, then drain in-flight work
    logger.info("IntakeWire shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)

    await dispatcher.stop(timeout=DISPATCHER_DRAIN_SECONDS)
    set_dispatcher(None)
    await dispose_engine()
    logger.info("IntakeWire shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="IntakeWire",
        description="Outbound webhooks and scheduled follow-ups for legal intake",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS - allow dashboard origin
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type", "X-Correlation-ID", "X-Org-Id",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    # Include all routes
    application.include_router(api_router)

    return application


app = create_app()
