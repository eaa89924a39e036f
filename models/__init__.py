"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (SourceType, RunState, RunMode, ProbeStatus)
    source: Configured data sources (the source registry)
    raw_data: Raw records captured from sources, unique per content hash, and run membership
    normalized_data: Final enriched, deduplicated records
    etl_run: Ingestion runs, their append-only transition history and source locks
    checkpoint: Per-source watermarks for incremental extraction

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and plain JSON on other dialects.

Usage:
    from models import DataSource, RawRecord, EnrichedRecord, IngestionRun
    from models.base import SourceType, RunState

Relationships:
    - DataSource → RawRecord (one-to-many)
    - IngestionRun → IngestionRunEvent (one-to-many, append-only)
    - RawRecord → EnrichedRecord (lineage of the winning version)
    - DataSource → SourceWatermark (one-to-one)
"""

from models.base import Base, SourceType, RunState, RunMode, ProbeStatus
from models.source import DataSource
from models.raw_data import RawRecord, RunRawRecord
from models.normalized_data import EnrichedRecord
from models.etl_run import IngestionRun, IngestionRunEvent, IngestionSourceLock
from models.checkpoint import SourceWatermark

__all__ = [
    "Base",
    "SourceType",
    "RunState",
    "RunMode",
    "ProbeStatus",
    "DataSource",
    "RawRecord",
    "EnrichedRecord",
    "IngestionRun",
    "IngestionRunEvent",
    "IngestionSourceLock",
    "RunRawRecord",
    "SourceWatermark",
]
