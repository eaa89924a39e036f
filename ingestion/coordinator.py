"""
Run coordinator: drives an ingestion run through its state machine.

    Started -> Validating -> Transforming -> Enriching -> Deduplicating -> Completed
    any stage -> Failed
    any non-terminal -> Cancelled

start() creates the run (the ingestion log enforces one active run per
scope) and schedules the pipeline on its own asyncio task, returning
immediately. Every stage error is caught here, recorded with the stage name
and message, and the run marked Failed. Results already persisted by earlier
batches are kept.

Cancellation is cooperative: cancel() sets an event that the pipeline checks
at each batch boundary and marks the run Cancelled. If the pipeline then
tries another transition it finds the run terminal and stops.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from datetime import datetime
import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.events import RUN_COMPLETED, RUN_FAILED, EventBus
from core.exceptions import (
    ETLException,
    ExtractionError,
    InvalidStateTransition,
    PersistenceError,
    RetryableError,
    RunCancelled,
    SourceConnectionError,
)
from ingestion.base import SourceExtractor
from ingestion.deduplication import DedupeResult, Deduplicator
from ingestion.enrichment import Enricher, build_lookup_client
from ingestion.extractors.factory import build_extractor
from ingestion.loaders.record_loader import RecordLoader
from ingestion.registry import SourceRegistry, normalize_scope
from ingestion.run_log import IngestionLog, RunId, parse_run_id
from ingestion.transformers.normalizer import Normalizer
from ingestion.validators.validator import ValidationStats, Validator
from models.base import RunMode, RunState
from models.etl_run import IngestionRun
from schemas.normalized import Accepted, EnrichedRecordCreate, NormalizedRecord
from schemas.source import SourceConfig

logger = logging.getLogger(__name__)

# Stage label recorded for failures while the run is still in Started
STAGE_EXTRACTING = "extracting"

# Cap on duplicate groups kept in run stats
MAX_REPORTED_GROUPS = 50


def default_enricher() -> Enricher:
    return Enricher(lookup_client=build_lookup_client())


class RunCoordinator:
    """
    Orchestrates ingestion runs.

    Responsibilities:
    - Atomic run creation per scope (409 on clash)
    - Background execution, one asyncio task per run
    - Extraction retries with exponential backoff
    - Stage error capture (stage + message) and Failed marking
    - Cooperative cancellation
    - Watermark advancement and run.completed event on success
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        event_bus: Optional[EventBus] = None,
        extractor_factory: Callable[..., SourceExtractor] = build_extractor,
        enricher_factory: Callable[[], Enricher] = default_enricher,
        batch_size: int = settings.ETL_BATCH_SIZE,
        max_retries: int = settings.MAX_RETRIES,
        retry_backoff: float = settings.RETRY_BACKOFF_SECONDS,
        rejection_threshold: float = settings.REJECTION_ABORT_THRESHOLD,
        persist_timeout: float = settings.PERSIST_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.event_bus = event_bus or EventBus()
        self.extractor_factory = extractor_factory
        self.enricher_factory = enricher_factory
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.rejection_threshold = rejection_threshold
        self.persist_timeout = persist_timeout

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    # ========================================================================
    # Public API
    # ========================================================================

    async def start(
        self,
        scope: Optional[str] = None,
        since: Optional[datetime] = None,
        mode: RunMode = RunMode.INCREMENTAL,
    ) -> IngestionRun:
        """
        Create a run and schedule its pipeline; returns without waiting.

        Raises:
            SourceNotFoundError: scope names an unknown or inactive source
            ConcurrencyConflict: a run over the same scope or an overlapping
                source is still active
        """
        scope = normalize_scope(scope)
        mode = RunMode(mode)

        async with self.session_factory() as session:
            sources = await SourceRegistry(session).resolve_scope(scope)
            run = await IngestionLog(session).start(
                scope, mode=mode, since=since, source_ids=[source.id for source in sources]
            )

        run_id = str(run.run_id)
        cancel_event = asyncio.Event()
        self._cancel_events[run_id] = cancel_event
        task = asyncio.create_task(
            self._execute(run_id, sources, since, mode, cancel_event),
            name=f"ingestion-run-{run_id}",
        )
        self._tasks[run_id] = task
        task.add_done_callback(lambda _task, rid=run_id: self._forget(rid))

        logger.info(f"Scheduled run {run_id} over {len(sources)} source(s) for scope '{scope}'")
        return run

    async def cancel(self, run_id: RunId) -> IngestionRun:
        """
        Stop a run and mark it Cancelled.

        Raises:
            RunNotFoundError: unknown run
            InvalidStateTransition: the run is already terminal
        """
        key = str(parse_run_id(run_id))
        event = self._cancel_events.get(key)
        if event is not None:
            event.set()

        async with self.session_factory() as session:
            run = await IngestionLog(session).cancel(key)
        logger.info(f"Run {key} cancelled")
        return run

    async def join(self, run_id: RunId) -> IngestionRun:
        """Wait for a run scheduled by this coordinator, then return its final row."""
        key = str(parse_run_id(run_id))
        task = self._tasks.get(key)
        if task is not None:
            await asyncio.wait({task})
        async with self.session_factory() as session:
            return await IngestionLog(session).get(key)

    def active_run_ids(self) -> List[str]:
        return [run_id for run_id, task in self._tasks.items() if not task.done()]

    async def recover_interrupted_runs(self) -> int:
        """
        Fail runs left non-terminal by a previous process.

        Called at startup; without it a crash would block the scope forever.
        """
        recovered = 0
        async with self.session_factory() as session:
            log = IngestionLog(session)
            for run in await log.non_terminal():
                if str(run.run_id) in self._tasks:
                    continue
                try:
                    await log.fail(
                        run.run_id,
                        stage=RunState(run.state).value,
                        message="Run interrupted: the service stopped before it finished",
                    )
                    recovered += 1
                except InvalidStateTransition:
                    continue

        if recovered:
            logger.warning(f"Marked {recovered} interrupted run(s) as failed")
        return recovered

    async def shutdown(self):
        """Cancel in-flight pipeline tasks and wait for them to settle."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} in-flight run(s)")

    def _forget(self, run_id: str):
        self._tasks.pop(run_id, None)
        self._cancel_events.pop(run_id, None)

    # ========================================================================
    # Pipeline
    # ========================================================================

    async def _execute(
        self,
        run_id: str,
        sources: List[SourceConfig],
        since: Optional[datetime],
        mode: RunMode,
        cancel_event: asyncio.Event,
    ):
        stage = STAGE_EXTRACTING
        stats: Dict[str, Any] = {"sources": {}}
        enricher: Optional[Enricher] = None

        async with self.session_factory() as session:
            log = IngestionLog(session)
            loader = RecordLoader(session)

            try:
                run = await log.get(run_id)
                run_pk = run.id

                # --------------------------------------------------
                # PHASE 1: EXTRACTION (state: Started)
                # --------------------------------------------------
                extractors: Dict[int, SourceExtractor] = {}
                records_extracted = 0
                for source in sources:
                    self._check_cancel(cancel_event, run_id)
                    extractor, count = await self._extract_source(
                        source, run_pk, since, mode, loader, cancel_event
                    )
                    extractors[source.id] = extractor
                    records_extracted += count
                    stats["sources"][str(source.id)] = {
                        "name": source.name,
                        "extracted": count,
                        "skipped_by_watermark": extractor.records_skipped,
                    }
                await log.update_counters(run_id, records_extracted=records_extracted, stats=stats)

                # --------------------------------------------------
                # PHASE 2: VALIDATION
                # --------------------------------------------------
                self._check_cancel(cancel_event, run_id)
                stage = RunState.VALIDATING.value
                await log.advance(run_id, RunState.VALIDATING)

                accepted, validation = await self._validate(run_id, run_pk, sources, loader, cancel_event)
                stats["validation"] = validation.to_dict()
                await log.update_counters(run_id, records_rejected=validation.rejected, stats=stats)
                validation.check_threshold(self.rejection_threshold)

                # --------------------------------------------------
                # PHASE 3: TRANSFORMATION
                # --------------------------------------------------
                self._check_cancel(cancel_event, run_id)
                stage = RunState.TRANSFORMING.value
                await log.advance(run_id, RunState.TRANSFORMING)
                normalized = self._transform(accepted, sources)

                # --------------------------------------------------
                # PHASE 4: ENRICHMENT
                # --------------------------------------------------
                self._check_cancel(cancel_event, run_id)
                stage = RunState.ENRICHING.value
                await log.advance(run_id, RunState.ENRICHING)
                enricher = self.enricher_factory()
                enriched = await self._enrich(run_id, normalized, enricher, cancel_event)
                await log.update_counters(run_id, enrichment_warnings=enricher.warnings)

                # --------------------------------------------------
                # PHASE 5: DEDUPLICATION + PERSISTENCE
                # --------------------------------------------------
                self._check_cancel(cancel_event, run_id)
                stage = RunState.DEDUPLICATING.value
                await log.advance(run_id, RunState.DEDUPLICATING)
                result = Deduplicator().dedupe(enriched)
                await self._persist_enriched(run_id, run_pk, result, loader, cancel_event)

                stats["deduplication"] = {
                    "unique_records": len(result.records),
                    "duplicates_collapsed": result.duplicates_collapsed,
                    "groups": [group.model_dump() for group in result.groups[:MAX_REPORTED_GROUPS]],
                }

                # --------------------------------------------------
                # PHASE 6: COMPLETION
                # --------------------------------------------------
                stage = RunState.COMPLETED.value
                run = await log.complete(
                    run_id,
                    records_processed=len(result.records),
                    stats=stats,
                    duplicates_collapsed=result.duplicates_collapsed,
                    enrichment_warnings=enricher.warnings,
                )
                await self._advance_watermarks(run_pk, extractors, result, loader)

                logger.info(
                    f"Run {run_id} completed - Extracted: {records_extracted}, "
                    f"Rejected: {validation.rejected}, Processed: {run.records_processed}, "
                    f"Duplicates collapsed: {result.duplicates_collapsed}"
                )
                await self.event_bus.publish(RUN_COMPLETED, self._event_payload(run))

            except RunCancelled:
                await session.rollback()
                await self._mark_cancelled(log, run_id, "cancelled by request")

            except asyncio.CancelledError:
                await session.rollback()
                await self._mark_cancelled(log, run_id, "service shutdown")
                raise

            except InvalidStateTransition as e:
                # Run was finished elsewhere (usually cancelled through the API)
                await session.rollback()
                logger.info(f"Run {run_id} stopped during {stage}: {e.message}")

            except ETLException as e:
                logger.error(
                    f"Run {run_id} failed during {stage}: {e.message}",
                    extra={"error_context": e.to_dict()},
                )
                await self._mark_failed(log, session, run_id, stage, e.message, stats)

            except Exception as e:
                logger.exception(f"Unexpected error in run {run_id} during {stage}")
                await self._mark_failed(log, session, run_id, stage, f"{type(e).__name__}: {e}", stats)

            finally:
                if enricher is not None:
                    await enricher.aclose()

    # ===== EXTRACTION =====

    async def _extract_source(
        self,
        source: SourceConfig,
        run_pk: int,
        since: Optional[datetime],
        mode: RunMode,
        loader: RecordLoader,
        cancel_event: asyncio.Event,
    ) -> Tuple[SourceExtractor, int]:
        """
        Stream one source into raw_records, retrying retryable failures.

        Returns:
            (extractor, number of records persisted by the successful attempt)
        """
        extractor = self.extractor_factory(source, batch_size=self.batch_size)

        lower_bound = since
        if mode == RunMode.INCREMENTAL:
            watermark = await loader.get_watermark(source.id)
            if watermark is not None and (lower_bound is None or watermark > lower_bound):
                lower_bound = watermark

        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                probe = await extractor.probe()
                if not probe.healthy:
                    raise SourceConnectionError(
                        f"Source '{source.name}' unreachable: {probe.detail}",
                        context={"source_id": source.id, "operation": "probe"},
                    )
                count = await self._stream_source(extractor, run_pk, lower_bound, loader, cancel_event)
                return extractor, count

            except RetryableError as e:
                if attempt >= attempts:
                    raise
                delay = self.retry_backoff * (2 ** (attempt - 1))  # Exponential backoff
                logger.warning(
                    f"Extraction of source '{source.name}' failed (attempt {attempt}/{attempts}): "
                    f"{e.message}. Retrying in {delay}s"
                )
                await self._backoff(delay, cancel_event, source)

        raise SourceConnectionError(f"Extraction of source '{source.name}' exhausted retries")

    async def _stream_source(
        self,
        extractor: SourceExtractor,
        run_pk: int,
        since: Optional[datetime],
        loader: RecordLoader,
        cancel_event: asyncio.Event,
    ) -> int:
        persisted = 0
        batch = []
        stream = extractor.extract(since)
        try:
            async for raw in stream:
                batch.append(raw)
                if len(batch) >= self.batch_size:
                    persisted += await self._persist(loader.save_raw(batch, run_pk))
                    batch = []
                    self._check_cancel(cancel_event)
        except ExtractionError:
            # Keep what the source delivered before breaking
            if batch:
                persisted += await self._persist(loader.save_raw(batch, run_pk))
            raise
        finally:
            await stream.aclose()

        if batch:
            persisted += await self._persist(loader.save_raw(batch, run_pk))
        return persisted

    async def _backoff(self, delay: float, cancel_event: asyncio.Event, source: SourceConfig):
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RunCancelled(f"Cancelled while waiting to retry source '{source.name}'")

    # ===== VALIDATION / TRANSFORMATION / ENRICHMENT =====

    async def _validate(
        self,
        run_id: str,
        run_pk: int,
        sources: List[SourceConfig],
        loader: RecordLoader,
        cancel_event: asyncio.Event,
    ) -> Tuple[List[Accepted], ValidationStats]:
        validators = {source.id: Validator(source.type) for source in sources}
        stats = ValidationStats()
        accepted: List[Accepted] = []

        async for batch in loader.iter_run_raw_records(run_pk, batch_size=self.batch_size):
            for raw in batch:
                outcome = validators[raw.source_id].validate(raw)
                stats.record(outcome)
                if isinstance(outcome, Accepted):
                    accepted.append(outcome)
            self._check_cancel(cancel_event, run_id)

        logger.info(
            f"Run {run_id} validation: {stats.accepted} accepted, {stats.rejected} rejected "
            f"({stats.rejection_rate:.1%})"
        )
        return accepted, stats

    def _transform(self, accepted: List[Accepted], sources: List[SourceConfig]) -> List[NormalizedRecord]:
        normalizers = {
            source.id: Normalizer(source.type, entity=source.connection.get("entity"))
            for source in sources
        }
        return [normalizers[item.record.source_id].transform(item) for item in accepted]

    async def _enrich(
        self,
        run_id: str,
        records: List[NormalizedRecord],
        enricher: Enricher,
        cancel_event: asyncio.Event,
    ) -> List[EnrichedRecordCreate]:
        enriched = []
        for index, record in enumerate(records, start=1):
            enriched.append(await enricher.enrich(record))
            if index % self.batch_size == 0:
                self._check_cancel(cancel_event, run_id)
        return enriched

    # ===== PERSISTENCE =====

    async def _persist(self, operation: Awaitable[int]) -> int:
        try:
            return await asyncio.wait_for(operation, timeout=self.persist_timeout)
        except asyncio.TimeoutError as e:
            raise PersistenceError(
                f"Database write timed out after {self.persist_timeout}s",
                original_exception=e,
            )

    async def _persist_enriched(
        self,
        run_id: str,
        run_pk: int,
        result: DedupeResult,
        loader: RecordLoader,
        cancel_event: asyncio.Event,
    ):
        for i in range(0, len(result.records), self.batch_size):
            self._check_cancel(cancel_event, run_id)
            chunk = result.records[i:i + self.batch_size]
            await self._persist(loader.upsert_enriched(chunk, run_pk, batch_size=self.batch_size))

    async def _advance_watermarks(
        self,
        run_pk: int,
        extractors: Dict[int, SourceExtractor],
        result: DedupeResult,
        loader: RecordLoader,
    ):
        processed: Dict[int, int] = {}
        for record in result.records:
            processed[record.source_id] = processed.get(record.source_id, 0) + 1

        for source_id, extractor in extractors.items():
            try:
                await loader.advance_watermark(
                    source_id,
                    extractor.timestamp_field,
                    extractor.max_timestamp_seen,
                    run_pk,
                    records_processed=processed.get(source_id, 0),
                )
            except PersistenceError as e:
                # The run is already Completed; the next run re-reads idempotently
                logger.error(f"Watermark update failed for source {source_id}: {e}")

    # ===== TERMINAL HANDLING =====

    @staticmethod
    def _check_cancel(cancel_event: asyncio.Event, run_id: Optional[str] = None):
        if cancel_event.is_set():
            raise RunCancelled("Run cancelled", context={"run_id": run_id})

    async def _mark_cancelled(self, log: IngestionLog, run_id: str, message: str):
        try:
            await log.cancel(run_id, message=message)
        except InvalidStateTransition:
            pass  # cancel() already marked it

    async def _mark_failed(self, log: IngestionLog, session, run_id: str, stage: str, message: str, stats: Dict[str, Any]):
        await session.rollback()
        try:
            run = await log.fail(run_id, stage=stage, message=message, stats=stats)
        except InvalidStateTransition:
            logger.info(f"Run {run_id} was already terminal; failure during {stage} not recorded")
            return
        await self.event_bus.publish(RUN_FAILED, self._event_payload(run))

    @staticmethod
    def _event_payload(run: IngestionRun) -> Dict[str, Any]:
        return {
            "run_id": str(run.run_id),
            "scope": run.scope,
            "state": RunState(run.state).value,
            "records_processed": run.records_processed,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            "error_stage": run.error_stage,
            "error_message": run.error_message,
        }
