"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, ingestion, records, sources, stats
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.database import async_session_maker
from core.events import EventBus
from core.exceptions import (
    ConcurrencyConflict,
    ETLException,
    InvalidStateTransition,
    PersistenceError,
    RunNotFoundError,
    SourceNotFoundError,
)
from core.logging import setup_logging
from ingestion.coordinator import RunCoordinator
from ingestion.notifications import FailureAlert, ReportTrigger
from ingestion.scheduler import ETLScheduler
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Marketing ETL Orchestrator API",
    description="Ingestion runs over marketing data sources, run status and processed records",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Shared run machinery; the API, the scheduler and the report trigger all use it
event_bus = EventBus()
app.state.coordinator = RunCoordinator(async_session_maker, event_bus=event_bus)
scheduler = ETLScheduler(app.state.coordinator)

# Include routers
app.include_router(health.router)
app.include_router(ingestion.router)
app.include_router(records.router)
app.include_router(sources.router)
app.include_router(stats.router)


# ============================================================================
# Error mapping
# ============================================================================

def _error_body(exc: ETLException, **extra) -> dict:
    return {
        "error": type(exc).__name__,
        "detail": exc.message,
        "timestamp": datetime.utcnow().isoformat(),
        **extra,
    }


@app.exception_handler(SourceNotFoundError)
@app.exception_handler(RunNotFoundError)
async def not_found_handler(request: Request, exc: ETLException):
    return JSONResponse(status_code=404, content=_error_body(exc))


@app.exception_handler(ConcurrencyConflict)
async def conflict_handler(request: Request, exc: ConcurrencyConflict):
    logger.warning(f"Rejected start for scope '{exc.scope}': run {exc.active_run_id} is active")
    return JSONResponse(
        status_code=409,
        content=_error_body(
            exc,
            scope=exc.scope,
            active_run_id=exc.active_run_id,
            active_run_started_at=exc.active_run_started_at.isoformat() if exc.active_run_started_at else None,
        ),
    )


@app.exception_handler(InvalidStateTransition)
async def invalid_transition_handler(request: Request, exc: InvalidStateTransition):
    return JSONResponse(status_code=409, content=_error_body(exc))


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    # Constraint violations on admin writes (duplicate source name)
    logger.warning(f"Persistence error: {exc}")
    return JSONResponse(status_code=409, content=_error_body(exc))


@app.exception_handler(ETLException)
async def etl_exception_handler(request: Request, exc: ETLException):
    logger.error(f"Unhandled ETL error: {exc.message}", extra={"error_context": exc.to_dict()})
    return JSONResponse(status_code=500, content=_error_body(exc))


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    setup_logging()
    logger.info("Starting Marketing ETL Orchestrator API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    ReportTrigger().register(event_bus)
    FailureAlert().register(event_bus)
    await app.state.coordinator.recover_interrupted_runs()

    # Start Scheduler
    if settings.SCHEDULER_ENABLED:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Marketing ETL Orchestrator API")
    scheduler.stop()
    await app.state.coordinator.shutdown()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Marketing ETL Orchestrator API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "ingestion": "/ingestion",
            "records": "/records",
            "sources": "/sources",
            "stats": "/stats"
        }
    }
