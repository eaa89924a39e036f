"""
Persist raw and enriched records with upsert logic (idempotency)
"""

from typing import AsyncIterator, Dict, List, Optional, Sequence
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import and_, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from core.exceptions import PersistenceError
from ingestion.deduplication import fingerprint
from models.checkpoint import SourceWatermark
from models.normalized_data import EnrichedRecord
from models.raw_data import RawRecord, RunRawRecord
from schemas.normalized import EnrichedRecordCreate, RawRecordCreate
import logging

logger = logging.getLogger(__name__)


class RecordLoader:
    """
    Write pipeline output with idempotent upsert operations.

    Ensures:
    - Re-ingesting an unchanged row never creates a second raw record
    - At most one enriched record per fingerprint, across runs
    - The most recently ingested version of a record wins
    - One transaction per batch

    Uses INSERT ... ON CONFLICT on PostgreSQL and SQLite alike.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    def _insert(self, model):
        dialect = self.db.bind.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise PersistenceError(f"Upserts are not supported on dialect '{dialect}'")

    async def _execute(self, stmt, operation: str, table_name: str, rows: int):
        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                f"{operation} into {table_name} failed",
                context={"operation": operation, "table_name": table_name, "rows": rows},
                original_exception=e,
            )

    # ===== RAW RECORDS =====

    async def save_raw(self, records: Sequence[RawRecordCreate], run_pk: int) -> int:
        """
        Insert a batch of raw records and link them to the run.

        Re-reading existing content refreshes its ingested_at to the new
        capture time instead of adding a row, so a version that comes back
        after being replaced counts as the latest one again.

        Returns:
            Number of distinct records in the batch
        """
        unique: Dict[tuple, Dict] = {}
        for record in records:
            unique.setdefault(
                (record.source_id, record.content_hash),
                {
                    "source_id": record.source_id,
                    "content_hash": record.content_hash,
                    "payload": record.payload,
                    "ingested_at": record.ingested_at,
                    "first_ingested_at": record.ingested_at,
                    "first_run_id": run_pk,
                },
            )
        if not unique:
            return 0

        stmt = self._insert(RawRecord).values(list(unique.values()))
        stmt = stmt.on_conflict_do_update(
            index_elements=["source_id", "content_hash"],
            set_={"ingested_at": stmt.excluded.ingested_at},
            where=stmt.excluded.ingested_at > RawRecord.__table__.c.ingested_at,
        )

        hashes_by_source: Dict[int, List[str]] = {}
        for source_id, content_hash in unique:
            hashes_by_source.setdefault(source_id, []).append(content_hash)

        try:
            await self.db.execute(stmt)
            raw_ids: List[int] = []
            for source_id, hashes in hashes_by_source.items():
                result = await self.db.execute(
                    select(RawRecord.id).where(
                        RawRecord.source_id == source_id,
                        RawRecord.content_hash.in_(hashes),
                    )
                )
                raw_ids.extend(result.scalars().all())

            link = self._insert(RunRawRecord).values(
                [{"run_pk": run_pk, "raw_record_id": raw_id} for raw_id in raw_ids]
            )
            await self.db.execute(link.on_conflict_do_nothing(index_elements=["run_pk", "raw_record_id"]))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                f"UPSERT into {RawRecord.__tablename__} failed",
                context={"operation": "UPSERT", "table_name": RawRecord.__tablename__, "rows": len(unique)},
                original_exception=e,
            )

        logger.debug(f"Saved {len(unique)} raw record(s) for run {run_pk}")
        return len(unique)

    async def iter_run_raw_records(self, run_pk: int, batch_size: int = 500) -> AsyncIterator[List[RawRecordCreate]]:
        """Raw records seen by a run, in id order, one batch at a time."""
        last_id = 0
        while True:
            result = await self.db.execute(
                select(RawRecord)
                .join(RunRawRecord, RunRawRecord.raw_record_id == RawRecord.id)
                .where(and_(RunRawRecord.run_pk == run_pk, RawRecord.id > last_id))
                .order_by(RawRecord.id)
                .limit(batch_size)
                .execution_options(populate_existing=True)
            )
            rows = result.scalars().all()
            if not rows:
                break
            last_id = rows[-1].id
            yield [RawRecordCreate.model_validate(row) for row in rows]

    # ===== ENRICHED RECORDS =====

    async def upsert_enriched(
        self,
        records: Sequence[EnrichedRecordCreate],
        run_pk: Optional[int] = None,
        batch_size: int = 500,
    ) -> int:
        """
        Upsert deduplicated records keyed by fingerprint.

        An existing row is replaced only when the incoming record was ingested
        later, or at the same time with a greater-or-equal content hash.

        Returns:
            Number of records submitted
        """
        table = EnrichedRecord.__table__
        total = 0

        for i in range(0, len(records), batch_size):
            batch = records[i:i + batch_size]
            now = datetime.utcnow()
            rows = [
                {
                    "fingerprint": fingerprint(record),
                    "source_id": record.source_id,
                    "raw_record_id": record.raw_record_id,
                    "content_hash": record.content_hash,
                    "run_id": run_pk,
                    "external_id": record.external_id,
                    "entity": record.entity,
                    "category": record.category,
                    "value": record.value,
                    "canonical_fields": record.canonical_fields(),
                    "derived_fields": record.derived,
                    "enrichment_warning": record.enrichment_warning,
                    "ingested_at": record.ingested_at,
                    "created_at": now,
                    "updated_at": now,
                }
                for record in batch
            ]

            stmt = self._insert(EnrichedRecord).values(rows)
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=["fingerprint"],
                set_={
                    "source_id": excluded.source_id,
                    "raw_record_id": excluded.raw_record_id,
                    "content_hash": excluded.content_hash,
                    "run_id": excluded.run_id,
                    "external_id": excluded.external_id,
                    "entity": excluded.entity,
                    "category": excluded.category,
                    "value": excluded.value,
                    "canonical_fields": excluded.canonical_fields,
                    "derived_fields": excluded.derived_fields,
                    "enrichment_warning": excluded.enrichment_warning,
                    "ingested_at": excluded.ingested_at,
                    "updated_at": excluded.updated_at,
                },
                where=or_(
                    excluded.ingested_at > table.c.ingested_at,
                    and_(
                        excluded.ingested_at == table.c.ingested_at,
                        excluded.content_hash >= table.c.content_hash,
                    ),
                ),
            )
            await self._execute(stmt, "UPSERT", EnrichedRecord.__tablename__, len(rows))
            total += len(rows)

            logger.info(f"Batch {i // batch_size + 1}: upserted {len(rows)} enriched record(s)")

        return total

    # ===== WATERMARKS =====

    async def get_watermark(self, source_id: int) -> Optional[datetime]:
        result = await self.db.execute(
            select(SourceWatermark).where(SourceWatermark.source_id == source_id)
        )
        watermark = result.scalar_one_or_none()
        if watermark is None or not watermark.watermark_value:
            return None
        return datetime.fromisoformat(watermark.watermark_value)

    async def advance_watermark(
        self,
        source_id: int,
        field: Optional[str],
        value: Optional[datetime],
        run_pk: int,
        records_processed: int = 0,
    ) -> SourceWatermark:
        """Record a completed run for a source; the watermark only moves forward."""
        result = await self.db.execute(
            select(SourceWatermark).where(SourceWatermark.source_id == source_id)
        )
        watermark = result.scalar_one_or_none()

        if watermark is None:
            watermark = SourceWatermark(
                source_id=source_id,
                watermark_field=field,
                watermark_value=value.isoformat() if value else None,
                last_run_id=run_pk,
                total_records_processed=records_processed,
            )
            self.db.add(watermark)
        else:
            current = datetime.fromisoformat(watermark.watermark_value) if watermark.watermark_value else None
            if value is not None and (current is None or value > current):
                watermark.watermark_value = value.isoformat()
            watermark.watermark_field = field or watermark.watermark_field
            watermark.last_run_id = run_pk
            watermark.total_records_processed = (watermark.total_records_processed or 0) + records_processed
            watermark.updated_at = datetime.utcnow()

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                "Watermark update failed",
                context={"operation": "UPSERT", "table_name": SourceWatermark.__tablename__, "source_id": source_id},
                original_exception=e,
            )
        return watermark
