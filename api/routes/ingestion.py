"""
Ingestion control endpoints: start, status, history, cancel
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_coordinator, get_db
from ingestion.coordinator import RunCoordinator
from ingestion.registry import normalize_scope
from ingestion.run_log import IngestionLog
from schemas.api import (
    ConflictResponse,
    ErrorResponse,
    IngestionRunSnapshot,
    IngestionStartResponse,
    IngestionStatusResponse,
    RunDetailResponse,
    RunEventInfo,
    RunListResponse,
    StartIngestionRequest,
)
from models.base import RunState
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ingestion", tags=["Ingestion"])


@router.post(
    "/start",
    response_model=IngestionStartResponse,
    status_code=202,
    responses={404: {"model": ErrorResponse}, 409: {"model": ConflictResponse}},
)
async def start_ingestion(
    payload: Optional[StartIngestionRequest] = None,
    coordinator: RunCoordinator = Depends(get_coordinator),
):
    """
    Start an ingestion run and return immediately.

    - 202 with the new run id
    - 409 when a run for the same scope is still active (with its start time)
    - 404 when the scope names an unknown source
    """
    payload = payload or StartIngestionRequest()
    logger.info(
        f"POST /ingestion/start - scope={payload.source_scope}, "
        f"since={payload.since_date}, mode={payload.stage.value}"
    )

    run = await coordinator.start(payload.source_scope, since=payload.since_date, mode=payload.stage)

    return IngestionStartResponse(
        run_id=str(run.run_id),
        scope=run.scope,
        mode=run.mode,
        state=run.state,
        started_at=run.started_at,
    )


@router.get("/status", response_model=IngestionStatusResponse)
async def ingestion_status(
    scope: Optional[str] = Query(None, description="'all' or a source id; omit for any scope"),
    db: AsyncSession = Depends(get_db),
):
    """Snapshot of the most recent run"""
    normalized = normalize_scope(scope) if scope is not None else None
    run = await IngestionLog(db).latest(normalized)

    if run is None:
        return IngestionStatusResponse(scope=normalized, run=None, message="No ingestion runs yet")

    return IngestionStatusResponse(scope=normalized, run=IngestionRunSnapshot.from_run(run))


@router.get("/runs", response_model=RunListResponse)
async def list_runs(
    scope: Optional[str] = Query(None, description="Filter by scope"),
    state: Optional[RunState] = Query(None, description="Filter by state"),
    limit: int = Query(20, ge=1, le=200, description="Number of runs to return"),
    db: AsyncSession = Depends(get_db),
):
    normalized = normalize_scope(scope) if scope is not None else None
    runs = await IngestionLog(db).list_runs(normalized, limit=limit, state=state)
    return RunListResponse(runs=[IngestionRunSnapshot.from_run(run) for run in runs], count=len(runs))


@router.get("/runs/{run_id}", response_model=RunDetailResponse, responses={404: {"model": ErrorResponse}})
async def get_run(run_id: str, db: AsyncSession = Depends(get_db)):
    """One run with its transition history"""
    log = IngestionLog(db)
    run = await log.get(run_id)
    events = await log.history(run_id)
    return RunDetailResponse.from_run(
        run,
        events=[RunEventInfo.model_validate(event) for event in events],
    )


@router.post(
    "/runs/{run_id}/cancel",
    response_model=IngestionRunSnapshot,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_run(run_id: str, coordinator: RunCoordinator = Depends(get_coordinator)):
    """Cancel a non-terminal run (409 when it has already finished)"""
    run = await coordinator.cancel(run_id)
    return IngestionRunSnapshot.from_run(run)
