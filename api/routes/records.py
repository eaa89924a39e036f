"""
Enriched record retrieval with pagination and filtering
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from schemas.api import EnrichedRecordResponse, PaginationMetadata, RecordsResponse
from models.normalized_data import EnrichedRecord
from typing import Optional
import time
import uuid
import math
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Records"])


@router.get("/records", response_model=RecordsResponse)
async def get_records(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=1000, description="Items per page"),
    source_id: Optional[int] = Query(None, description="Filter by source id"),
    category: Optional[str] = Query(None, description="Filter by category"),
    entity: Optional[str] = Query(None, description="Filter by entity (sale, product, record)"),
    db: AsyncSession = Depends(get_db)
):
    """
    Retrieve paginated, filtered records from the enriched_records table.

    One row per fingerprint: the latest ingested version of each record.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(
        f"[{request_id}] GET /records - page={page}, page_size={page_size}, "
        f"filters: source_id={source_id}, category={category}, entity={entity}"
    )

    filters = []
    if source_id is not None:
        filters.append(EnrichedRecord.source_id == source_id)
    if category:
        filters.append(EnrichedRecord.category == category)
    if entity:
        filters.append(EnrichedRecord.entity == entity)

    query = select(EnrichedRecord)
    count_query = select(func.count()).select_from(EnrichedRecord)
    if filters:
        query = query.where(and_(*filters))
        count_query = count_query.where(and_(*filters))

    total_items = (await db.execute(count_query)).scalar()

    # Calculate pagination
    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0
    offset = (page - 1) * page_size

    query = query.order_by(EnrichedRecord.ingested_at.desc(), EnrichedRecord.id.desc())
    query = query.offset(offset).limit(page_size)

    result = await db.execute(query)
    items = [EnrichedRecordResponse.model_validate(item) for item in result.scalars().all()]

    api_latency_ms = (time.time() - start_time) * 1000
    logger.info(f"[{request_id}] Returned {len(items)} records ({api_latency_ms:.2f}ms)")

    return RecordsResponse(
        items=items,
        pagination=PaginationMetadata(
            current_page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1
        ),
        filters_applied={k: v for k, v in {
            "source_id": source_id,
            "category": category,
            "entity": entity,
        }.items() if v is not None}
    )
