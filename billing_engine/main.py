"""FastAPI application entry point and lifecycle management."""

import asyncio
import os
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_engine.logging_config import configure_logging, get_logger
from billing_engine.middleware import ContextMiddleware, RequestLoggingMiddleware
from billing_engine.models.billing import BillingContext
from billing_engine.utils.billing_cycle import BillingIntegrityError

logger = get_logger(__name__)

VERSION = "0.1.0"


async def run_billing_scheduler(orchestrator, interval_minutes: int, cancel_event: threading.Event) -> None:
    """Run a billing cycle every ``interval_minutes`` until cancelled.

    The first cycle runs one interval after startup. Cycles run in a worker
    thread so the event loop keeps serving requests.
    """
    interval = interval_minutes * 60
    while not cancel_event.is_set():
        await asyncio.sleep(interval)
        if cancel_event.is_set():
            break
        context = BillingContext(actor="scheduler", cancel_event=cancel_event)
        try:
            summary = await asyncio.to_thread(orchestrator.run_cycle, context)
            logger.info(
                "scheduled_cycle_completed",
                processed=summary.processed,
                succeeded=summary.succeeded,
                failed=summary.failed,
                suspended=summary.suspended,
            )
        except Exception as e:
            logger.error("scheduled_cycle_failed", error=str(e), error_type=type(e).__name__, exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Handles startup and shutdown events.
    """
    logger.info("billing_engine_starting", version=VERSION)

    from billing_engine.services.billing_orchestrator import get_billing_orchestrator
    from billing_engine.services.event_dispatcher import get_event_dispatcher

    cancel_event = threading.Event()
    scheduler = None
    try:
        dispatcher = get_event_dispatcher()
        if dispatcher.is_enabled():
            logger.info("pubsub_enabled", message="Audit events are published to Pub/Sub")
        else:
            logger.info("pubsub_disabled", message="Audit events are only logged")

        orchestrator = get_billing_orchestrator()
        logger.info(
            "billing_engine_started",
            status="ready",
            plans=len(orchestrator.plan_repo),
            run_interval_minutes=orchestrator.settings.run_interval_minutes,
        )

        if os.getenv("BILLING_SCHEDULER", "true").lower() == "true":
            scheduler = asyncio.create_task(
                run_billing_scheduler(orchestrator, orchestrator.settings.run_interval_minutes, cancel_event)
            )
        yield
    finally:
        logger.info("billing_engine_shutting_down")
        if scheduler is not None:
            cancel_event.set()
            scheduler.cancel()
        get_event_dispatcher().shutdown()
        get_billing_orchestrator().executor.shutdown()
        logger.info("billing_engine_stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="Subscription Billing Engine",
        description="Recurring billing, renewals, payment retries and plan changes for subscriptions",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Allow all origins for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(ContextMiddleware)

    from billing_engine.api.billing import router as billing_router
    from billing_engine.api.control import router as control_router

    app.include_router(billing_router)
    app.include_router(control_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        logger.debug("root_endpoint_called")
        return {
            "service": "billing-engine",
            "status": "running",
            "version": VERSION,
        }

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Detailed health check."""
        from billing_engine.repositories.plan_repository import get_plan_repository
        from billing_engine.services.event_dispatcher import get_event_dispatcher

        pubsub_status = "connected" if get_event_dispatcher().is_enabled() else "disabled"
        return {
            "status": "healthy",
            "pubsub": pubsub_status,
            "config": f"loaded ({len(get_plan_repository())} plans)",
        }

    @app.exception_handler(BillingIntegrityError)
    async def integrity_exception_handler(request, exc: BillingIntegrityError) -> JSONResponse:
        """Invalid billing data is a data bug, never a client error."""
        logger.critical(
            "billing_integrity_error",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "billing_integrity_error", "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app


app = create_app()
