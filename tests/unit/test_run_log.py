"""
Unit tests for the ingestion log state machine
"""

import asyncio
import uuid
import pytest
from datetime import datetime, timedelta
from sqlalchemy import select
from core.exceptions import ConcurrencyConflict, InvalidStateTransition, RunNotFoundError
from ingestion.run_log import IngestionLog, parse_run_id
from models.base import RunMode, RunState
from models.etl_run import IngestionSourceLock

PIPELINE = (RunState.VALIDATING, RunState.TRANSFORMING, RunState.ENRICHING, RunState.DEDUPLICATING)


async def run_to_deduplicating(log: IngestionLog, run_id):
    for state in PIPELINE:
        await log.advance(run_id, state)


class TestRunCreation:
    @pytest.mark.asyncio
    async def test_start_creates_started_run(self, db_session):
        log = IngestionLog(db_session)

        run = await log.start("all", mode=RunMode.FULL)

        assert run.state == RunState.STARTED
        assert run.active_scope == "all"
        assert run.mode == RunMode.FULL
        assert run.records_processed == 0
        assert [e.to_state for e in await log.history(run.run_id)] == [RunState.STARTED]

    @pytest.mark.asyncio
    async def test_second_start_for_same_scope_conflicts(self, session_factory):
        async with session_factory() as session:
            first = await IngestionLog(session).start("all")

        async with session_factory() as session:
            with pytest.raises(ConcurrencyConflict) as exc_info:
                await IngestionLog(session).start("all")

        assert exc_info.value.scope == "all"
        assert exc_info.value.active_run_id == str(first.run_id)
        assert exc_info.value.active_run_started_at == first.started_at

    @pytest.mark.asyncio
    async def test_different_scopes_run_concurrently(self, db_session):
        log = IngestionLog(db_session)

        await log.start("1")
        await log.start("2")

        assert len(await log.non_terminal()) == 2

    @pytest.mark.asyncio
    async def test_simultaneous_starts_admit_exactly_one(self, session_factory):
        async def attempt():
            async with session_factory() as session:
                return await IngestionLog(session).start("all")

        outcomes = await asyncio.gather(attempt(), attempt(), attempt(), return_exceptions=True)

        runs = [o for o in outcomes if not isinstance(o, BaseException)]
        conflicts = [o for o in outcomes if isinstance(o, ConcurrencyConflict)]
        assert len(runs) == 1
        assert len(conflicts) == 2

        async with session_factory() as session:
            assert len(await IngestionLog(session).non_terminal()) == 1

    @pytest.mark.asyncio
    async def test_overlapping_sources_conflict(self, db_session):
        log = IngestionLog(db_session)
        everything_id = str((await log.start("all", source_ids=[1, 2])).run_id)

        with pytest.raises(ConcurrencyConflict) as exc_info:
            await log.start("2", source_ids=[2])
        assert exc_info.value.active_run_id == everything_id

        # a source outside the open run is free
        other = await log.start("3", source_ids=[3])
        assert other.state == RunState.STARTED

    @pytest.mark.asyncio
    async def test_source_locks_are_released_when_run_ends(self, db_session):
        log = IngestionLog(db_session)
        everything = await log.start("all", source_ids=[1, 2])

        await log.cancel(everything.run_id)
        single = await log.start("2", source_ids=[2])

        assert single.state == RunState.STARTED
        locks = (await db_session.execute(select(IngestionSourceLock))).scalars().all()
        assert [(lock.source_id, lock.run_pk) for lock in locks] == [(2, single.id)]

    @pytest.mark.asyncio
    async def test_scope_is_released_when_run_ends(self, db_session):
        log = IngestionLog(db_session)
        run = await log.start("all")

        await log.fail(run.run_id, stage="extracting", message="boom")
        again = await log.start("all")

        assert again.run_id != run.run_id


class TestTransitions:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, db_session):
        log = IngestionLog(db_session)
        run = await log.start("all")

        await run_to_deduplicating(log, run.run_id)
        done = await log.complete(run.run_id, records_processed=90, records_rejected=10)

        assert done.state == RunState.COMPLETED
        assert done.records_processed == 90
        assert done.records_rejected == 10
        assert done.active_scope is None
        assert done.finished_at is not None
        assert done.duration_seconds >= 0

        history = await log.history(run.run_id)
        assert [e.to_state for e in history] == [RunState.STARTED, *PIPELINE, RunState.COMPLETED]
        assert history[1].from_state == RunState.STARTED

    @pytest.mark.asyncio
    async def test_stages_cannot_be_skipped(self, db_session):
        log = IngestionLog(db_session)
        run = await log.start("all")

        with pytest.raises(InvalidStateTransition):
            await log.advance(run.run_id, RunState.ENRICHING)

    @pytest.mark.asyncio
    async def test_stages_cannot_repeat(self, db_session):
        log = IngestionLog(db_session)
        run = await log.start("all")
        await log.advance(run.run_id, RunState.VALIDATING)

        with pytest.raises(InvalidStateTransition):
            await log.advance(run.run_id, RunState.VALIDATING)

    @pytest.mark.asyncio
    async def test_complete_requires_deduplicating(self, db_session):
        log = IngestionLog(db_session)
        run = await log.start("all")
        await log.advance(run.run_id, RunState.VALIDATING)

        with pytest.raises(InvalidStateTransition):
            await log.complete(run.run_id, records_processed=1)

    @pytest.mark.asyncio
    async def test_advance_cannot_target_terminal_states(self, db_session):
        log = IngestionLog(db_session)
        run = await log.start("all")

        with pytest.raises(InvalidStateTransition):
            await log.advance(run.run_id, RunState.COMPLETED)

    @pytest.mark.asyncio
    async def test_fail_records_stage_and_keeps_processed_at_zero(self, db_session):
        log = IngestionLog(db_session)
        run = await log.start("all")
        await log.advance(run.run_id, RunState.VALIDATING)

        failed = await log.fail(run.run_id, stage="validating", message="rejection rate too high", stats={"rejected": 6})

        assert failed.state == RunState.FAILED
        assert failed.error_stage == "validating"
        assert failed.error_message == "rejection rate too high"
        assert failed.records_processed == 0
        assert failed.stats == {"rejected": 6}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("finish", ["fail", "cancel", "complete"])
    async def test_terminal_runs_are_immutable(self, db_session, finish):
        log = IngestionLog(db_session)
        run = await log.start("all")
        if finish == "fail":
            await log.fail(run.run_id, stage="extracting", message="x")
        elif finish == "cancel":
            await log.cancel(run.run_id)
        else:
            await run_to_deduplicating(log, run.run_id)
            await log.complete(run.run_id, records_processed=1)

        with pytest.raises(InvalidStateTransition):
            await log.cancel(run.run_id)
        with pytest.raises(InvalidStateTransition):
            await log.fail(run.run_id, stage="x", message="y")
        assert await log.update_counters(run.run_id, records_extracted=5) is False

    @pytest.mark.asyncio
    async def test_update_counters_refuses_records_processed(self, db_session):
        log = IngestionLog(db_session)
        run = await log.start("all")

        with pytest.raises(ValueError):
            await log.update_counters(run.run_id, records_processed=3)

        assert await log.update_counters(run.run_id, records_extracted=3) is True
        assert (await log.get(run.run_id)).records_extracted == 3


class TestReads:
    @pytest.mark.asyncio
    async def test_latest_and_list(self, db_session):
        log = IngestionLog(db_session)
        first = await log.start("1")
        await log.cancel(first.run_id)
        second = await log.start("2")

        assert (await log.latest()).run_id == second.run_id
        assert (await log.latest("1")).run_id == first.run_id
        assert await log.latest("3") is None
        assert [r.run_id for r in await log.list_runs(state=RunState.CANCELLED)] == [first.run_id]

    @pytest.mark.asyncio
    async def test_unknown_run(self, db_session):
        with pytest.raises(RunNotFoundError):
            await IngestionLog(db_session).get(uuid.uuid4())

    def test_malformed_run_id(self):
        with pytest.raises(RunNotFoundError):
            parse_run_id("not-a-uuid")


@pytest.mark.asyncio
async def test_purge_removes_old_terminal_runs_only(db_session):
    log = IngestionLog(db_session)
    finished = await log.start("1")
    await log.cancel(finished.run_id)
    active = await log.start("2")

    purged = await log.purge(datetime.utcnow() + timedelta(days=1))

    assert purged == 1
    with pytest.raises(RunNotFoundError):
        await log.get(finished.run_id)
    assert (await log.get(active.run_id)).state == RunState.STARTED
