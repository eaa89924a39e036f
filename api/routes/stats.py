"""
Catalog and pipeline statistics endpoint
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from schemas.api import StatsResponse
from models.base import RunState
from models.etl_run import IngestionRun
from models.normalized_data import EnrichedRecord
from models.source import DataSource
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


def _label(value) -> str:
    if value is None:
        return "unknown"
    return value.value if hasattr(value, "value") else str(value)


async def _grouped_counts(db: AsyncSession, column) -> dict:
    result = await db.execute(select(column, func.count()).group_by(column))
    return {_label(key): count for key, count in result.all()}


@router.get("/stats", response_model=StatsResponse)
async def get_stats(db: AsyncSession = Depends(get_db)):
    """
    Get catalog and pipeline statistics.

    Returns:
    - Sources by type and active count
    - Records by source, category and entity
    - Runs by state, last success/failure and average duration
    """
    request_id = f"req_{uuid.uuid4().hex[:12]}"

    logger.info(f"[{request_id}] GET /stats")

    # ========== Sources ==========

    sources_by_type = await _grouped_counts(db, DataSource.type)
    active_sources = (await db.execute(
        select(func.count()).select_from(DataSource).where(DataSource.active.is_(True))
    )).scalar()

    # ========== Records ==========

    total_records = (await db.execute(select(func.count()).select_from(EnrichedRecord))).scalar()
    records_by_source = await _grouped_counts(db, EnrichedRecord.source_id)
    records_by_category = await _grouped_counts(db, EnrichedRecord.category)
    records_by_entity = await _grouped_counts(db, EnrichedRecord.entity)

    # ========== Runs ==========

    runs_by_state = await _grouped_counts(db, IngestionRun.state)

    last_success_at = (await db.execute(
        select(func.max(IngestionRun.finished_at)).where(IngestionRun.state == RunState.COMPLETED)
    )).scalar()
    last_failure_at = (await db.execute(
        select(func.max(IngestionRun.finished_at)).where(IngestionRun.state == RunState.FAILED)
    )).scalar()
    avg_duration = (await db.execute(
        select(func.avg(IngestionRun.duration_seconds)).where(IngestionRun.state == RunState.COMPLETED)
    )).scalar()

    return StatsResponse(
        total_sources=sum(sources_by_type.values()),
        active_sources=active_sources,
        sources_by_type=sources_by_type,
        total_records=total_records,
        records_by_source=records_by_source,
        records_by_category=records_by_category,
        records_by_entity=records_by_entity,
        runs_by_state=runs_by_state,
        last_success_at=last_success_at,
        last_failure_at=last_failure_at,
        avg_run_duration_seconds=round(float(avg_duration), 3) if avg_duration is not None else None,
    )
