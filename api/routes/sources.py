"""
Source administration endpoints (catalog CRUD and connection tests)
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db
from ingestion.extractors.factory import build_extractor
from ingestion.registry import SourceAdmin
from models.base import SourceType
from schemas.api import ErrorResponse, ProbeResponse, SourceListResponse, SourceResponse
from schemas.source import SourceCreate, SourceUpdate
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sources", tags=["Sources"])


@router.get("", response_model=SourceListResponse)
async def list_sources(
    type: Optional[SourceType] = Query(None, description="Filter by source type"),
    active_only: bool = Query(False, description="Only active sources"),
    db: AsyncSession = Depends(get_db),
):
    sources = await SourceAdmin(db).list(active_only=active_only, source_type=type)
    return SourceListResponse(
        sources=[SourceResponse.model_validate(source) for source in sources],
        count=len(sources),
    )


@router.get("/{source_id}", response_model=SourceResponse, responses={404: {"model": ErrorResponse}})
async def get_source(source_id: int, db: AsyncSession = Depends(get_db)):
    return SourceResponse.model_validate(await SourceAdmin(db).get(source_id))


@router.post("", response_model=SourceResponse, status_code=201)
async def create_source(payload: SourceCreate, db: AsyncSession = Depends(get_db)):
    source = await SourceAdmin(db).create(payload)
    return SourceResponse.model_validate(source)


@router.put("/{source_id}", response_model=SourceResponse, responses={404: {"model": ErrorResponse}})
async def update_source(source_id: int, payload: SourceUpdate, db: AsyncSession = Depends(get_db)):
    source = await SourceAdmin(db).update(source_id, payload)
    return SourceResponse.model_validate(source)


@router.delete("/{source_id}", response_model=SourceResponse, responses={404: {"model": ErrorResponse}})
async def deactivate_source(source_id: int, db: AsyncSession = Depends(get_db)):
    """Soft delete: the source stays referenced by past runs but is skipped by new ones"""
    source = await SourceAdmin(db).deactivate(source_id)
    return SourceResponse.model_validate(source)


@router.post(
    "/{source_id}/test-connection",
    response_model=ProbeResponse,
    responses={404: {"model": ErrorResponse}},
)
async def test_connection(source_id: int, db: AsyncSession = Depends(get_db)):
    """Run the protocol-level probe for the source and store its outcome"""
    admin = SourceAdmin(db)
    source = await admin.get(source_id)

    result = await build_extractor(source).probe()
    await admin.record_probe(source_id, result)

    return ProbeResponse(
        source_id=source_id,
        status=result.status,
        healthy=result.healthy,
        detail=result.detail,
        latency_ms=result.latency_ms,
        checked_at=result.checked_at,
    )
