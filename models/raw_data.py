from sqlalchemy import Column, String, BigInteger, Integer, Text, DateTime, ForeignKey, Index, UniqueConstraint
from datetime import datetime
from models.base import Base


class RawRecord(Base):
    """
    Stores raw, unprocessed records captured from sources.

    Purpose:
    - Immutable audit trail
    - Reprocessing capability after a failed run
    - Idempotent re-ingestion

    Design Decisions:
    - payload is the canonical JSON text of the source row
    - content_hash (SHA-256 of payload) is unique per source, so re-reading an
      unchanged row is an INSERT ... ON CONFLICT instead of a second row
    - ingested_at is the latest capture of this content and is refreshed on
      every re-read; first_ingested_at keeps the original capture
    - which runs saw a row lives in run_raw_records, not on the row itself
    """
    __tablename__ = "raw_records"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    source_id = Column(Integer, ForeignKey("data_sources.id"), nullable=False, index=True)
    content_hash = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)

    ingested_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    first_ingested_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    first_run_id = Column(BigInteger, ForeignKey("ingestion_runs.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        UniqueConstraint("source_id", "content_hash", name="uq_raw_source_content"),
        Index("idx_raw_source_ingested", "source_id", "ingested_at"),
    )


class RunRawRecord(Base):
    """Membership of a raw record in a run (the rows that run has to validate)."""
    __tablename__ = "run_raw_records"

    run_pk = Column(BigInteger, ForeignKey("ingestion_runs.id", ondelete="CASCADE"), primary_key=True)
    raw_record_id = Column(BigInteger, ForeignKey("raw_records.id", ondelete="CASCADE"), primary_key=True)
