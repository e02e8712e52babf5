"""
Shipwatch - Main Application
=============================

SLA-risk and escalation engine for shipments.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, notification sinks, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from shipwatch.config import settings
from shipwatch.core import ApplicationException
from shipwatch.infrastructure.database import (
    close_database, create_tables, get_session_maker, init_database,
)
from shipwatch.escalation.application import EscalationNotifier
from shipwatch.escalation.infrastructure.external import (
    ChannelBroadcaster,
    EngineConfigManager,
    EscalationScheduler,
    FanoutNotificationSink,
    SlackNotificationSink,
)
from shipwatch.escalation.interfaces import escalation_router
from shipwatch.escalation.services import PeriodicLadderAdvancer, PeriodicRiskScanner
from shipwatch.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from shipwatch.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load escalation policy and watch the file
    4. Build notification sinks and jobs
    5. Start the scheduler (when this instance runs the jobs)

    SHUTDOWN:
    1. Stop scheduler
    2. Stop config watcher
    3. Close Slack client and database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting escalation engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()
    try:
        await create_tables()
    except Exception as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    config_manager = EngineConfigManager()
    config_manager.load(settings.escalation_config_path)
    config_manager.start_watching()

    broadcaster = ChannelBroadcaster()
    slack_sink = SlackNotificationSink()
    notifier = EscalationNotifier(FanoutNotificationSink([broadcaster, slack_sink]))

    session_factory = get_session_maker()
    risk_scanner = PeriodicRiskScanner(session_factory, config_manager, notifier)
    ladder_advancer = PeriodicLadderAdvancer(session_factory, config_manager, notifier)

    scheduler = EscalationScheduler(
        risk_scan_interval_seconds=settings.risk_scan_interval_seconds,
        ladder_advance_interval_seconds=settings.ladder_advance_interval_seconds,
    )
    if settings.scheduler_enabled:
        await scheduler.start(risk_scanner.run, ladder_advancer.run)
    else:
        logger.info("Scheduler disabled on this instance")

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.config_provider = config_manager
    app.state.broadcaster = broadcaster
    app.state.notifier = notifier
    app.state.risk_scanner = risk_scanner
    app.state.ladder_advancer = ladder_advancer
    app.state.scheduler = scheduler

    logger.info("Escalation engine started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down escalation engine")
    await scheduler.stop()
    config_manager.stop_watching()
    await slack_sink.close()
    await close_database()
    logger.info("Escalation engine shutdown complete")


app = FastAPI(
    title="Shipwatch Escalation API",
    description="""
    ## Shipment SLA-Risk & Escalation Engine

    - Periodic SLA risk scoring of active shipments
    - Escalation chains walking an ordered contact ladder
    - Timed advancement to the next contact until someone acknowledges

    **Endpoints:**
    - `POST /escalations/trigger` - Open a chain
    - `POST /escalations/{shipment_id}/advance` - Move to the next contact
    - `POST /escalations/{shipment_id}/acknowledge` - Close the chain
    - `GET /escalations/` - List chains
    - `GET /escalations/{shipment_id}` - Chain history
    - `GET /escalations/stream` - Live escalation events (SSE)
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.include_router(escalation_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint for load balancers and orchestrators."""
    scheduler = getattr(request.app.state, "scheduler", None)
    config_provider = getattr(request.app.state, "config_provider", None)
    checks = {
        "escalation_config": "loaded" if config_provider is not None else "not_loaded",
        "scheduler": "running" if scheduler and scheduler.is_running else "stopped",
    }

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Shipwatch Escalation Engine",
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "escalations": {
                "prefix": "/escalations",
                "endpoints": [
                    "POST /escalations/trigger - Open an escalation chain",
                    "POST /escalations/{shipment_id}/advance - Advance to next contact",
                    "POST /escalations/{shipment_id}/acknowledge - Acknowledge chain",
                    "GET /escalations/ - List chains",
                    "GET /escalations/{shipment_id} - Chain history",
                    "GET /escalations/contacts - List ladder contacts",
                    "POST /escalations/contacts - Add ladder contact",
                    "POST /escalations/issues/{issue_id}/evaluate - Evaluate issue",
                    "POST /escalations/jobs/risk-scan - Run risk scan",
                    "POST /escalations/jobs/ladder-advance - Run ladder sweep",
                    "GET /escalations/stream - Live escalation events (SSE)",
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "shipwatch.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
