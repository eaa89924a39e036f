"""
Pydantic schemas for data source configuration
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any
from datetime import datetime
from models.base import SourceType, ProbeStatus

ALLOWED_FORMATS = ("json", "jsonl", "csv", "xml")


class SourceConfig(BaseModel):
    """Read-only view of a configured source, as used by the pipeline"""
    id: int
    name: str
    type: SourceType
    format: str
    connection: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    active: bool = True
    last_probe_status: Optional[ProbeStatus] = None
    last_probe_at: Optional[datetime] = None
    last_probe_detail: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True


class SourceCreate(BaseModel):
    """Payload for registering a new source"""
    name: str = Field(..., min_length=1, max_length=100)
    type: SourceType
    format: str = "json"
    connection: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    active: bool = True

    @validator("name")
    def clean_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("name cannot be empty after stripping")
        return v

    @validator("format")
    def validate_format(cls, v):
        v = v.lower()
        if v not in ALLOWED_FORMATS:
            raise ValueError(f"format must be one of: {', '.join(ALLOWED_FORMATS)}")
        return v


class SourceUpdate(BaseModel):
    """Partial update of a source; unset fields are left unchanged"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    type: Optional[SourceType] = None
    format: Optional[str] = None
    connection: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    active: Optional[bool] = None

    @validator("format")
    def validate_format(cls, v):
        if v is None:
            return v
        v = v.lower()
        if v not in ALLOWED_FORMATS:
            raise ValueError(f"format must be one of: {', '.join(ALLOWED_FORMATS)}")
        return v


class ProbeResult(BaseModel):
    """Outcome of a connectivity probe"""
    status: ProbeStatus
    detail: str = ""
    latency_ms: Optional[float] = None
    checked_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def healthy(self) -> bool:
        return self.status == ProbeStatus.HEALTHY
