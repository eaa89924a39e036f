from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Boolean
from datetime import datetime
from models.base import Base, JSONType, SourceType, ProbeStatus


class DataSource(Base):
    """
    Configured data source consumed by ingestion runs.

    Design:
    - `connection` is an opaque descriptor (paths, URLs, credentials) whose
      keys depend on `type`; only the matching extractor interprets it
    - Sources are referenced by runs, never owned by them
    - Deactivation is a soft delete (`active = False`)
    """
    __tablename__ = "data_sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    type = Column(Enum(SourceType), nullable=False, index=True)
    format = Column(String(20), nullable=False, default="json")
    description = Column(Text, nullable=True)
    connection = Column(JSONType, nullable=False, default=dict)
    active = Column(Boolean, nullable=False, default=True, index=True)

    # Last connectivity probe (health reporting)
    last_probe_status = Column(Enum(ProbeStatus), nullable=True)
    last_probe_at = Column(DateTime, nullable=True)
    last_probe_detail = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
