"""
End-to-end tests of ingestion runs through the RunCoordinator.

Each test gets its own SQLite database; sources are real JSON/XML files
unless a test needs to control extraction timing or failures, in which case
the StubExtractor from conftest is used.
"""

import asyncio
import pytest
from datetime import datetime
from sqlalchemy import func, select
from conftest import write_json
from core.events import RUN_COMPLETED, RUN_FAILED
from core.exceptions import ConcurrencyConflict, EnrichmentLookupError, SourceNotFoundError
from ingestion.coordinator import RunCoordinator
from ingestion.enrichment import Enricher
from ingestion.run_log import IngestionLog
from models.base import RunMode, RunState, SourceType
from models.checkpoint import SourceWatermark
from models.normalized_data import EnrichedRecord
from models.raw_data import RawRecord


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar()


async def enriched_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(EnrichedRecord).order_by(EnrichedRecord.external_id))
        return list(result.scalars().all())


async def run_once(coordinator: RunCoordinator, scope: str = "all", **kwargs):
    run = await coordinator.start(scope, **kwargs)
    return await coordinator.join(run.run_id)


class FailingEnricher(Enricher):
    """Enricher whose first call fails the stage"""

    async def enrich(self, record):
        raise EnrichmentLookupError("lookup service returned garbage")


class TestSuccessfulRuns:
    @pytest.mark.asyncio
    async def test_json_source_end_to_end(self, coordinator, create_source, sales_file, session_factory):
        await create_source("ventas", path=sales_file)

        run = await run_once(coordinator)

        assert run.state == RunState.COMPLETED
        assert run.records_extracted == 3
        assert run.records_rejected == 0
        assert run.records_processed == 3
        assert run.active_scope is None

        rows = await enriched_rows(session_factory)
        assert [r.external_id for r in rows] == ["V-001", "V-002", "V-003"]
        assert rows[0].entity == "sale"
        assert rows[0].derived_fields["revenue"] == 241.0
        assert rows[0].canonical_fields["customer"] == "ACME"

        async with session_factory() as session:
            history = await IngestionLog(session).history(run.run_id)
        assert [e.to_state for e in history] == [
            RunState.STARTED,
            RunState.VALIDATING,
            RunState.TRANSFORMING,
            RunState.ENRICHING,
            RunState.DEDUPLICATING,
            RunState.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_mixed_source_types(self, coordinator, create_source, sales_file, catalog_xml, session_factory):
        await create_source("ventas", path=sales_file)
        await create_source("catalogo", type=SourceType.XML, format="xml", path=catalog_xml, record_tag="producto")

        run = await run_once(coordinator)

        assert run.state == RunState.COMPLETED
        assert run.records_processed == 5
        entities = {r.external_id: r.entity for r in await enriched_rows(session_factory)}
        assert entities["P-10"] == "product"
        assert entities["V-001"] == "sale"

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, coordinator, create_source, sales_file, session_factory):
        await create_source("ventas", path=sales_file)

        first = await run_once(coordinator)
        before = {r.fingerprint: r.content_hash for r in await enriched_rows(session_factory)}
        second = await run_once(coordinator)
        after = {r.fingerprint: r.content_hash for r in await enriched_rows(session_factory)}

        assert first.state == second.state == RunState.COMPLETED
        assert second.records_processed == 3
        assert before == after
        assert await count(session_factory, RawRecord) == 3
        assert await count(session_factory, EnrichedRecord) == 3

    @pytest.mark.asyncio
    async def test_invalid_records_are_rejected_not_fatal(self, coordinator, create_source, tmp_path, session_factory):
        rows = [{"id": f"V-{i:03d}", "cliente": "ACME", "precio": str(i), "cantidad": "1"} for i in range(90)]
        rows += [{"cliente": "ACME", "precio": str(i), "nota": f"sin id {i}"} for i in range(5)]
        rows += [{"id": f"X-{i}", "precio": "gratis"} for i in range(5)]
        await create_source("ventas", path=write_json(tmp_path / "ventas.json", rows))

        run = await run_once(coordinator)

        assert run.state == RunState.COMPLETED
        assert run.records_extracted == 100
        assert run.records_rejected == 10
        assert run.records_processed == 90
        assert run.stats["validation"]["rejections_by_reason"] == {"missing_field": 5, "type_coercion": 5}
        assert await count(session_factory, EnrichedRecord) == 90

    @pytest.mark.asyncio
    async def test_duplicates_across_sources_collapse(self, coordinator, create_source, tmp_path, session_factory):
        await create_source("norte", path=write_json(tmp_path / "norte.json", [
            {"id": "P-1", "nombre": "Widget", "precio": "10"},
            {"id": "P-2", "nombre": "Gadget", "precio": "20"},
        ]))
        await create_source("sur", path=write_json(tmp_path / "sur.json", [
            {"id": "P-1", "nombre": "Widget", "precio": "11"},
        ]))

        run = await run_once(coordinator)

        assert run.records_extracted == 3
        assert run.records_processed == 2
        assert run.duplicates_collapsed == 1
        assert len(run.stats["deduplication"]["groups"]) == 1
        assert [r.external_id for r in await enriched_rows(session_factory)] == ["P-1", "P-2"]

    @pytest.mark.asyncio
    async def test_latest_ingested_version_wins_across_runs(self, coordinator, create_source, tmp_path, session_factory):
        path = tmp_path / "ventas.json"
        await create_source("ventas", path=write_json(path, [{"id": "V-1", "cliente": "ACME", "precio": "10"}]))
        await run_once(coordinator)

        write_json(path, [{"id": "V-1", "cliente": "ACME", "precio": "25"}])
        await run_once(coordinator)

        rows = await enriched_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].value == 25.0
        assert await count(session_factory, RawRecord) == 2

    @pytest.mark.asyncio
    async def test_reverted_content_wins_again(self, coordinator, create_source, tmp_path, session_factory):
        path = tmp_path / "ventas.json"
        await create_source("ventas", path=str(path))

        stored = []
        for categoria in ("A", "B", "A"):
            write_json(path, [{"id": "V-1", "cliente": "ACME", "precio": "10", "categoria": categoria}])
            run = await run_once(coordinator)
            assert run.state == RunState.COMPLETED
            stored.append([row.category for row in await enriched_rows(session_factory)])

        assert stored == [["A"], ["B"], ["A"]]
        assert await count(session_factory, RawRecord) == 2

    @pytest.mark.asyncio
    async def test_single_source_scope(self, coordinator, create_source, sales_file, catalog_xml):
        await create_source("ventas", path=sales_file)
        catalog = await create_source("catalogo", type=SourceType.XML, format="xml", path=catalog_xml)

        run = await run_once(coordinator, str(catalog.id))

        assert run.scope == str(catalog.id)
        assert run.records_extracted == 2

    @pytest.mark.asyncio
    async def test_completion_event_is_published(self, coordinator, create_source, sales_file):
        await create_source("ventas", path=sales_file)
        received = []
        coordinator.event_bus.subscribe(RUN_COMPLETED, received.append)

        run = await run_once(coordinator)

        assert received[0]["run_id"] == str(run.run_id)
        assert received[0]["state"] == "completed"
        assert received[0]["records_processed"] == 3

    @pytest.mark.asyncio
    async def test_no_active_sources_completes_empty(self, coordinator):
        run = await run_once(coordinator)

        assert run.state == RunState.COMPLETED
        assert run.records_processed == 0


class TestIncrementalRuns:
    @pytest.mark.asyncio
    async def test_watermark_skips_seen_records(self, coordinator, create_source, tmp_path, sales_rows, session_factory):
        path = tmp_path / "ventas.json"
        source = await create_source("ventas", path=write_json(path, sales_rows), timestamp_field="fecha")
        first = await run_once(coordinator)

        newer = [
            {"id": "V-004", "cliente": "Umbrella", "precio": "40", "fecha": "2024-02-01T08:00:00"},
            {"id": "V-005", "cliente": "Hooli", "precio": "55", "fecha": "2024-02-02T08:00:00"},
        ]
        write_json(path, sales_rows + newer)
        second = await run_once(coordinator)

        assert first.records_extracted == 3
        assert second.records_extracted == 2
        assert second.records_processed == 2
        assert await count(session_factory, EnrichedRecord) == 5

        async with session_factory() as session:
            watermark = (await session.execute(
                select(SourceWatermark).where(SourceWatermark.source_id == source.id)
            )).scalar_one()
        assert watermark.watermark_value == "2024-02-02T08:00:00"
        assert watermark.watermark_field == "fecha"

    @pytest.mark.asyncio
    async def test_full_mode_ignores_watermark(self, coordinator, create_source, sales_file):
        await create_source("ventas", path=sales_file, timestamp_field="fecha")
        await run_once(coordinator)

        run = await run_once(coordinator, mode=RunMode.FULL)

        assert run.records_extracted == 3

    @pytest.mark.asyncio
    async def test_since_date_lower_bound(self, coordinator, create_source, sales_file):
        await create_source("ventas", path=sales_file, timestamp_field="fecha")

        run = await run_once(coordinator, since=datetime(2024, 1, 11))

        assert run.records_extracted == 2
        assert run.since == datetime(2024, 1, 11)


class TestFailures:
    @pytest.mark.asyncio
    async def test_enrichment_failure_leaves_no_partial_results(self, session_factory, create_source, sales_file):
        await create_source("ventas", path=sales_file)
        failed_events = []
        coordinator = RunCoordinator(session_factory, enricher_factory=FailingEnricher, retry_backoff=0)
        coordinator.event_bus.subscribe(RUN_FAILED, failed_events.append)

        run = await run_once(coordinator)

        assert run.state == RunState.FAILED
        assert run.error_stage == "enriching"
        assert "garbage" in run.error_message
        assert run.records_processed == 0
        assert await count(session_factory, EnrichedRecord) == 0
        assert failed_events[0]["error_stage"] == "enriching"

        # Raw capture survives for reprocessing
        assert await count(session_factory, RawRecord) == 3

    @pytest.mark.asyncio
    async def test_rejection_rate_above_threshold_aborts(self, coordinator, create_source, tmp_path, session_factory):
        rows = [{"id": f"V-{i}", "precio": "1"} for i in range(4)] + [{"precio": "1", "n": i} for i in range(6)]
        await create_source("ventas", path=write_json(tmp_path / "ventas.json", rows))

        run = await run_once(coordinator)

        assert run.state == RunState.FAILED
        assert run.error_stage == "validating"
        assert "Rejection rate" in run.error_message
        assert run.records_rejected == 6
        assert run.records_processed == 0
        assert await count(session_factory, EnrichedRecord) == 0

    @pytest.mark.asyncio
    async def test_rejection_rate_at_threshold_continues(self, coordinator, create_source, tmp_path):
        rows = [{"id": f"V-{i}", "precio": "1"} for i in range(5)] + [{"precio": "1", "n": i} for i in range(5)]
        await create_source("ventas", path=write_json(tmp_path / "ventas.json", rows))

        run = await run_once(coordinator)

        assert run.state == RunState.COMPLETED
        assert run.records_processed == 5

    @pytest.mark.asyncio
    async def test_missing_file_fails_in_extraction(self, coordinator, create_source, tmp_path):
        await create_source("ventas", path=str(tmp_path / "missing.json"))

        run = await run_once(coordinator)

        assert run.state == RunState.FAILED
        assert run.error_stage == "extracting"
        assert "unreachable" in run.error_message or "not found" in run.error_message

    @pytest.mark.asyncio
    async def test_unparseable_source_fails_without_retry(self, session_factory, create_source, tmp_path):
        path = tmp_path / "ventas.json"
        path.write_text("{broken", encoding="utf-8")
        await create_source("ventas", path=str(path))
        coordinator = RunCoordinator(session_factory, enricher_factory=Enricher, max_retries=3, retry_backoff=0)

        run = await run_once(coordinator)

        assert run.state == RunState.FAILED
        assert run.error_stage == "extracting"
        assert "Unparseable" in run.error_message

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, session_factory, create_source, stub_plan, stub_factory):
        await create_source("api", type=SourceType.API)
        stub_plan["rows"] = [{"id": "V-1", "precio": "3"}]
        stub_plan["failures"] = 2
        coordinator = RunCoordinator(
            session_factory, extractor_factory=stub_factory, enricher_factory=Enricher,
            max_retries=2, retry_backoff=0,
        )

        run = await run_once(coordinator)

        assert run.state == RunState.COMPLETED
        assert stub_plan["calls"] == 3
        assert run.records_processed == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, session_factory, create_source, stub_plan, stub_factory):
        await create_source("api", type=SourceType.API)
        stub_plan["failures"] = 10
        coordinator = RunCoordinator(
            session_factory, extractor_factory=stub_factory, enricher_factory=Enricher,
            max_retries=2, retry_backoff=0,
        )

        run = await run_once(coordinator)

        assert run.state == RunState.FAILED
        assert run.error_stage == "extracting"
        assert "connection reset" in run.error_message
        assert stub_plan["calls"] == 3


class TestConcurrencyAndCancellation:
    @pytest.mark.asyncio
    async def test_second_start_for_active_scope_conflicts(self, session_factory, create_source, stub_plan, stub_factory):
        await create_source("api", type=SourceType.API)
        gate = asyncio.Event()
        stub_plan.update(rows=[{"id": "V-1"}], gate=gate)
        coordinator = RunCoordinator(session_factory, extractor_factory=stub_factory, enricher_factory=Enricher)

        first = await coordinator.start("all")
        with pytest.raises(ConcurrencyConflict) as exc_info:
            await coordinator.start("all")

        assert exc_info.value.active_run_id == str(first.run_id)
        assert exc_info.value.active_run_started_at == first.started_at
        assert coordinator.active_run_ids() == [str(first.run_id)]

        gate.set()
        done = await coordinator.join(first.run_id)
        assert done.state == RunState.COMPLETED

        # Scope is free again once the run is terminal
        third = await run_once(coordinator)
        assert third.state == RunState.COMPLETED

    @pytest.mark.asyncio
    async def test_simultaneous_starts_admit_exactly_one(self, session_factory, create_source, stub_plan, stub_factory):
        await create_source("api", type=SourceType.API)
        gate = asyncio.Event()
        stub_plan.update(rows=[{"id": "V-1"}], gate=gate)
        coordinator = RunCoordinator(session_factory, extractor_factory=stub_factory, enricher_factory=Enricher)

        outcomes = await asyncio.gather(*(coordinator.start("all") for _ in range(3)), return_exceptions=True)

        started = [o for o in outcomes if not isinstance(o, BaseException)]
        conflicts = [o for o in outcomes if isinstance(o, ConcurrencyConflict)]
        assert len(started) == 1
        assert len(conflicts) == 2
        assert all(c.active_run_id == str(started[0].run_id) for c in conflicts)

        gate.set()
        assert (await coordinator.join(started[0].run_id)).state == RunState.COMPLETED

    @pytest.mark.asyncio
    async def test_overlapping_scopes_are_serialized(self, session_factory, create_source, stub_plan, stub_factory):
        source = await create_source("api", type=SourceType.API)
        stub_plan.update(rows=[{"id": f"V-{i}"} for i in range(5)], gate=asyncio.Event())
        coordinator = RunCoordinator(session_factory, extractor_factory=stub_factory, enricher_factory=Enricher)

        everything = await coordinator.start("all")
        with pytest.raises(ConcurrencyConflict) as exc_info:
            await coordinator.start(str(source.id))
        assert exc_info.value.active_run_id == str(everything.run_id)

        stub_plan["gate"].set()
        done = await coordinator.join(everything.run_id)
        assert done.state == RunState.COMPLETED
        assert done.records_processed == 5

        # and the other way round
        stub_plan["gate"] = asyncio.Event()
        single = await coordinator.start(str(source.id))
        with pytest.raises(ConcurrencyConflict) as exc_info:
            await coordinator.start("all")
        assert exc_info.value.active_run_id == str(single.run_id)

        stub_plan["gate"].set()
        done = await coordinator.join(single.run_id)
        assert done.state == RunState.COMPLETED
        assert done.records_processed == 5

    @pytest.mark.asyncio
    async def test_cancel_running_run(self, session_factory, create_source, stub_plan, stub_factory):
        await create_source("api", type=SourceType.API)
        gate = asyncio.Event()
        stub_plan.update(rows=[{"id": f"V-{i}"} for i in range(10)], gate=gate)
        coordinator = RunCoordinator(session_factory, extractor_factory=stub_factory, enricher_factory=Enricher)

        run = await coordinator.start("all")
        cancelled = await coordinator.cancel(run.run_id)
        gate.set()
        final = await coordinator.join(run.run_id)

        assert cancelled.state == RunState.CANCELLED
        assert final.state == RunState.CANCELLED
        assert final.records_processed == 0
        assert await count(session_factory, EnrichedRecord) == 0

    @pytest.mark.asyncio
    async def test_unknown_scope(self, coordinator):
        with pytest.raises(SourceNotFoundError):
            await coordinator.start("99")

        async with coordinator.session_factory() as session:
            assert await IngestionLog(session).latest() is None

    @pytest.mark.asyncio
    async def test_recover_interrupted_runs(self, coordinator, session_factory):
        async with session_factory() as session:
            log = IngestionLog(session)
            stale = await log.start("all")
            await log.advance(stale.run_id, RunState.VALIDATING)

        assert await coordinator.recover_interrupted_runs() == 1

        async with session_factory() as session:
            recovered = await IngestionLog(session).get(stale.run_id)
        assert recovered.state == RunState.FAILED
        assert recovered.error_stage == "validating"

        run = await run_once(coordinator)
        assert run.state == RunState.COMPLETED

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight_runs(self, session_factory, create_source, stub_plan, stub_factory):
        await create_source("api", type=SourceType.API)
        stub_plan.update(rows=[{"id": "V-1"}], gate=asyncio.Event())
        coordinator = RunCoordinator(session_factory, extractor_factory=stub_factory, enricher_factory=Enricher)

        run = await coordinator.start("all")
        await asyncio.sleep(0.05)
        await coordinator.shutdown()

        async with session_factory() as session:
            final = await IngestionLog(session).get(run.run_id)
        assert final.state == RunState.CANCELLED
        assert coordinator.active_run_ids() == []
