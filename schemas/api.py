"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import RunMode, RunState, SourceType, ProbeStatus, TERMINAL_STATES

# Descriptor keys never echoed back by the API
SECRET_KEYS = ("password", "api_key", "token", "secret")


# ============================================================================
# Ingestion Schemas
# ============================================================================

class StartIngestionRequest(BaseModel):
    """Body of POST /ingestion/start"""
    source_scope: Optional[str] = Field("all", description="'all' or a source id")
    since_date: Optional[datetime] = Field(None, description="Only extract records after this instant")
    stage: RunMode = Field(RunMode.INCREMENTAL, description="incremental (watermark-driven) or full")

    @validator("source_scope", pre=True, always=True)
    def clean_scope(cls, v):
        if v is None:
            return "all"
        v = str(v).strip()
        return v or "all"

    @validator("since_date")
    def naive_utc(cls, v):
        if v is not None and v.tzinfo is not None:
            offset = v.utcoffset()
            return (v - offset).replace(tzinfo=None)
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "source_scope": "all",
                "since_date": "2024-01-01T00:00:00",
                "stage": "incremental"
            }
        }


class IngestionStartResponse(BaseModel):
    run_id: str
    scope: str
    mode: RunMode
    state: RunState
    started_at: datetime

    class Config:
        use_enum_values = True


class ConflictResponse(BaseModel):
    """409 body: another run holds the scope"""
    detail: str
    scope: Optional[str] = None
    active_run_id: Optional[str] = None
    active_run_started_at: Optional[datetime] = None


class RunEventInfo(BaseModel):
    from_state: Optional[RunState] = None
    to_state: RunState
    stage: Optional[str] = None
    message: Optional[str] = None
    occurred_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class IngestionRunSnapshot(BaseModel):
    """Point-in-time view of one run"""
    run_id: str
    scope: str
    mode: RunMode
    state: RunState
    is_running: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_extracted: int = 0
    records_rejected: int = 0
    records_processed: int = 0
    duplicates_collapsed: int = 0
    enrichment_warnings: int = 0
    error_stage: Optional[str] = None
    error_message: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None

    @classmethod
    def from_run(cls, run, **extra):
        """Build from an IngestionRun row, converting the UUID explicitly"""
        state = RunState(run.state)
        duration = run.duration_seconds
        if duration is None and run.started_at and state not in TERMINAL_STATES:
            duration = round((datetime.utcnow() - run.started_at).total_seconds(), 3)
        return cls(
            run_id=str(run.run_id),
            scope=run.scope,
            mode=run.mode,
            state=state,
            is_running=state not in TERMINAL_STATES,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=duration,
            records_extracted=run.records_extracted or 0,
            records_rejected=run.records_rejected or 0,
            records_processed=run.records_processed or 0,
            duplicates_collapsed=run.duplicates_collapsed or 0,
            enrichment_warnings=run.enrichment_warnings or 0,
            error_stage=run.error_stage,
            error_message=run.error_message,
            stats=run.stats,
            **extra,
        )

    class Config:
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "run_id": "550e8400-e29b-41d4-a716-446655440000",
                "scope": "all",
                "mode": "incremental",
                "state": "completed",
                "is_running": False,
                "started_at": "2024-01-15T02:00:00",
                "finished_at": "2024-01-15T02:00:41",
                "duration_seconds": 41.2,
                "records_extracted": 100,
                "records_rejected": 10,
                "records_processed": 90,
                "duplicates_collapsed": 0,
                "enrichment_warnings": 0
            }
        }


class RunDetailResponse(IngestionRunSnapshot):
    events: List[RunEventInfo] = Field(default_factory=list)


class IngestionStatusResponse(BaseModel):
    """Most recent run, or run=null when nothing has run yet"""
    scope: Optional[str] = None
    run: Optional[IngestionRunSnapshot] = None
    message: Optional[str] = None


class RunListResponse(BaseModel):
    runs: List[IngestionRunSnapshot]
    count: int


# ============================================================================
# Source Schemas
# ============================================================================

class SourceResponse(BaseModel):
    id: int
    name: str
    type: SourceType
    format: str
    description: Optional[str] = None
    connection: Dict[str, Any] = Field(default_factory=dict)
    active: bool
    last_probe_status: Optional[ProbeStatus] = None
    last_probe_at: Optional[datetime] = None
    last_probe_detail: Optional[str] = None

    @validator("connection")
    def mask_secrets(cls, v):
        return {
            key: "***" if any(secret in key.lower() for secret in SECRET_KEYS) else value
            for key, value in (v or {}).items()
        }

    class Config:
        from_attributes = True
        use_enum_values = True


class SourceListResponse(BaseModel):
    sources: List[SourceResponse]
    count: int


class ProbeResponse(BaseModel):
    source_id: int
    status: ProbeStatus
    healthy: bool
    detail: str
    latency_ms: Optional[float] = None
    checked_at: datetime

    class Config:
        use_enum_values = True


# ============================================================================
# Records Schemas
# ============================================================================

class EnrichedRecordResponse(BaseModel):
    id: int
    fingerprint: str
    source_id: int
    external_id: str
    entity: str
    category: Optional[str] = None
    value: Optional[float] = None
    canonical_fields: Dict[str, Any] = Field(default_factory=dict)
    derived_fields: Dict[str, Any] = Field(default_factory=dict)
    enrichment_warning: Optional[str] = None
    content_hash: str
    ingested_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class RecordsResponse(BaseModel):
    """Paginated records response"""
    items: List[EnrichedRecordResponse]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Health / Statistics Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    active_runs: int = 0
    latest_run_state: Optional[RunState] = None
    total_sources: int = 0
    unreachable_sources: int = 0
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if values.get("unreachable_sources", 0) or values.get("latest_run_state") == RunState.FAILED:
            return "degraded"
        return "healthy"

    class Config:
        use_enum_values = True


class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    # Source catalog
    total_sources: int
    active_sources: int
    sources_by_type: Dict[str, int]

    # Records
    total_records: int
    records_by_source: Dict[str, int]
    records_by_category: Dict[str, int]
    records_by_entity: Dict[str, int]

    # Runs
    runs_by_state: Dict[str, int]
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    avg_run_duration_seconds: Optional[float] = None


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "SourceNotFoundError",
                "detail": "Source 42 not found",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
