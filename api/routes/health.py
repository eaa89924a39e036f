"""
Health check endpoint with database and ingestion status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, func, text
from api.dependencies import get_coordinator, get_db
from ingestion.coordinator import RunCoordinator
from ingestion.run_log import IngestionLog
from schemas.api import HealthCheckResponse
from models.base import ProbeStatus
from models.source import DataSource
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Runs currently executing in this process
    - State of the most recent run
    - Sources whose last probe failed
    """
    db_connected = False
    latest_state = None
    total_sources = 0
    unreachable_sources = 0

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True

        latest = await IngestionLog(db).latest()
        latest_state = latest.state if latest else None

        total_sources = (await db.execute(
            select(func.count()).select_from(DataSource).where(DataSource.active.is_(True))
        )).scalar()
        unreachable_sources = (await db.execute(
            select(func.count()).select_from(DataSource).where(
                DataSource.active.is_(True),
                DataSource.last_probe_status == ProbeStatus.UNREACHABLE,
            )
        )).scalar()
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        active_runs=len(coordinator.active_run_ids()),
        latest_run_state=latest_state,
        total_sources=total_sources,
        unreachable_sources=unreachable_sources,
    )
