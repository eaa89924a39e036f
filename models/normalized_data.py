from sqlalchemy import Column, String, BigInteger, Integer, Float, DateTime, ForeignKey, Index, Text
from datetime import datetime
from models.base import Base, JSONType


class EnrichedRecord(Base):
    """
    Final, deduplicated records produced by the pipeline.

    Schema Design:
    - fingerprint is the deduplication key (hash of the key canonical
      fields) and is unique across all sources and runs
    - category/value/entity are promoted to columns for filtering
    - canonical_fields holds the full normalized record
    - derived_fields holds what the Enricher added

    Field Mapping Strategy (see ingestion.schema for the alias tables):
    - id / codigo / sku          -> external_id
    - categoria / category       -> category
    - precio / price / amount    -> value
    - cantidad / quantity        -> quantity
    - cliente / customer         -> customer
    - producto / product         -> product
    - fecha / date / created_at  -> occurred_at
    """
    __tablename__ = "enriched_records"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    fingerprint = Column(String(64), nullable=False, unique=True)

    # Lineage
    source_id = Column(Integer, ForeignKey("data_sources.id"), nullable=False, index=True)
    raw_record_id = Column(BigInteger, ForeignKey("raw_records.id", ondelete="SET NULL"), nullable=True)
    content_hash = Column(String(64), nullable=False)
    run_id = Column(BigInteger, ForeignKey("ingestion_runs.id", ondelete="SET NULL"), nullable=True, index=True)

    # Canonical fields
    external_id = Column(String(255), nullable=False)
    entity = Column(String(50), nullable=False, index=True)
    category = Column(String(200), nullable=True, index=True)
    value = Column(Float, nullable=True)
    canonical_fields = Column(JSONType, nullable=False, default=dict)
    derived_fields = Column(JSONType, nullable=False, default=dict)
    enrichment_warning = Column(Text, nullable=True)

    # Timestamps
    ingested_at = Column(DateTime, nullable=False, index=True)  # of the winning raw record
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_enriched_entity_category", "entity", "category"),
    )
