"""
Pydantic schemas for data validation and serialization.

Schemas:
    source: Source descriptors, admin payloads and probe results
    normalized: Raw, validated, canonical and enriched record shapes
    api: API endpoint request/response schemas

Usage:
    from schemas.normalized import RawRecordCreate, EnrichedRecordCreate
    from schemas.api import StartIngestionRequest, IngestionRunSnapshot
"""

__all__ = [
    "RawRecordCreate",
    "NormalizedRecord",
    "EnrichedRecordCreate",
    "SourceCreate",
    "ProbeResult",
    "StartIngestionRequest",
    "IngestionRunSnapshot",
    "StatsResponse",
]
