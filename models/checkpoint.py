from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, BigInteger
from datetime import datetime
from models.base import Base


class SourceWatermark(Base):
    """
    Tracks incremental ingestion state per source.

    Purpose:
    - Skip records already seen by a completed run
    - Advance only when a run reaches Completed, so failed runs re-read

    Design:
    - One row per source
    - watermark_value stores the max timestamp seen (ISO 8601)
    """
    __tablename__ = "source_watermarks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(Integer, ForeignKey("data_sources.id"), nullable=False, unique=True)

    watermark_field = Column(String(100), nullable=True)
    watermark_value = Column(String(64), nullable=True)

    last_run_id = Column(BigInteger, ForeignKey("ingestion_runs.id", ondelete="SET NULL"), nullable=True)
    total_records_processed = Column(BigInteger, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
