"""
Pydantic schemas for records flowing through the pipeline.

RawRecordCreate -> (Validator) -> Accepted/Rejected -> (Transformer)
NormalizedRecord -> (Enricher) -> EnrichedRecordCreate -> (Deduplicator)

All of them are immutable once built.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum


class RawRecordCreate(BaseModel):
    """
    A record captured by an extractor.

    payload is the canonical JSON text of the source row; content_hash is
    its SHA-256. `id` is set once the record has been persisted.
    """
    source_id: int
    payload: str
    content_hash: str = Field(..., min_length=64, max_length=64)
    ingested_at: datetime
    id: Optional[int] = None

    class Config:
        frozen = True
        from_attributes = True


class RejectionReason(str, Enum):
    """Reason codes attached to rejected records"""
    EMPTY_PAYLOAD = "empty_payload"
    UNPARSEABLE = "unparseable"
    MISSING_FIELD = "missing_field"
    TYPE_COERCION = "type_coercion"
    OUT_OF_RANGE = "out_of_range"
    INTERNAL_ERROR = "internal_error"


class Accepted(BaseModel):
    """Validation passed; `row` is the decoded payload."""
    record: RawRecordCreate
    row: Dict[str, Any]

    class Config:
        frozen = True


class Rejected(BaseModel):
    """Validation failed with a reason code."""
    record: RawRecordCreate
    reason: RejectionReason
    detail: str = ""

    class Config:
        frozen = True


class NormalizedRecord(BaseModel):
    """
    Record in the canonical marketing schema.

    Derived one-way from a RawRecordCreate; origin is tracked through
    raw_record_id and content_hash.
    """
    # Lineage
    source_id: int
    raw_record_id: Optional[int] = None
    content_hash: str
    ingested_at: datetime

    # Canonical fields
    external_id: str = Field(..., min_length=1, max_length=255)
    entity: str
    category: Optional[str] = Field(None, max_length=200)
    value: Optional[float] = None
    quantity: Optional[int] = None
    customer: Optional[str] = None
    product: Optional[str] = None
    name: Optional[str] = None
    occurred_at: Optional[datetime] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    def canonical_fields(self) -> Dict[str, Any]:
        """JSON-safe view of the canonical fields (lineage excluded)."""
        return self.model_dump(
            mode="json",
            exclude={"source_id", "raw_record_id", "content_hash", "ingested_at"},
        )


class EnrichedRecordCreate(NormalizedRecord):
    """NormalizedRecord plus derived fields."""
    derived: Dict[str, Any] = Field(default_factory=dict)
    enrichment_warning: Optional[str] = None

    def canonical_fields(self) -> Dict[str, Any]:
        return self.model_dump(
            mode="json",
            exclude={
                "source_id", "raw_record_id", "content_hash", "ingested_at",
                "derived", "enrichment_warning",
            },
        )
