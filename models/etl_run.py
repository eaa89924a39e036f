from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from models.base import Base, JSONType, RunState, RunMode


class IngestionRun(Base):
    """
    One ingestion run over a source scope.

    Purpose:
    - Lifecycle state for the status API
    - Audit trail of every run
    - Atomic single-active-run-per-scope guard

    Design:
    - `active_scope` equals `scope` while the run is non-terminal and is
      cleared on Completed/Failed/Cancelled. The UNIQUE constraint on it makes
      the insert itself the check-and-set: a second open run for the same
      scope violates the constraint (NULLs never collide).
    - Overlapping scopes ("all" and a single source) are serialized by
      IngestionSourceLock rows claimed in the same transaction
    - `records_processed` is written only on completion
    """
    __tablename__ = "ingestion_runs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    run_id = Column(Uuid, default=uuid.uuid4, unique=True, nullable=False, index=True)

    scope = Column(String(100), nullable=False, index=True)
    active_scope = Column(String(100), nullable=True, unique=True)
    mode = Column(Enum(RunMode), nullable=False, default=RunMode.INCREMENTAL)
    since = Column(DateTime, nullable=True)  # caller-supplied lower bound

    state = Column(Enum(RunState), nullable=False, default=RunState.STARTED, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    finished_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    records_extracted = Column(Integer, default=0, nullable=False)
    records_rejected = Column(Integer, default=0, nullable=False)
    records_processed = Column(Integer, default=0, nullable=False)
    duplicates_collapsed = Column(Integer, default=0, nullable=False)
    enrichment_warnings = Column(Integer, default=0, nullable=False)

    # Error tracking
    error_stage = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)

    # Rejection reasons, per-source extraction counts, etc.
    stats = Column(JSONType, nullable=True)

    events = relationship(
        "IngestionRunEvent",
        back_populates="run",
        order_by="IngestionRunEvent.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_ingestion_run_scope_started", "scope", "started_at"),
        Index("idx_ingestion_run_state", "state", "started_at"),
    )


class IngestionRunEvent(Base):
    """
    Append-only transition history of a run.

    Rows are inserted, never updated.
    """
    __tablename__ = "ingestion_run_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    run_pk = Column(BigInteger, ForeignKey("ingestion_runs.id", ondelete="CASCADE"), nullable=False, index=True)

    from_state = Column(Enum(RunState), nullable=True)
    to_state = Column(Enum(RunState), nullable=False)
    stage = Column(String(50), nullable=True)
    message = Column(Text, nullable=True)
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    run = relationship("IngestionRun", back_populates="events")


class IngestionSourceLock(Base):
    """
    One row per source held by a non-terminal run.

    The primary key on source_id means two runs whose scopes share a source
    can never both be open. Rows are deleted when the run ends.
    """
    __tablename__ = "ingestion_source_locks"

    source_id = Column(Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), primary_key=True)
    run_pk = Column(BigInteger, ForeignKey("ingestion_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    acquired_at = Column(DateTime, nullable=False, default=datetime.utcnow)
