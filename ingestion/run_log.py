"""
Ingestion log: persistent run lifecycle with append-only transition history.

Every state change is a compare-and-set UPDATE that only matches the state
the caller observed, so two writers can never both move the same run, and a
terminal run (Completed, Failed, Cancelled) is never modified again. Each
successful transition appends an ingestion_run_events row.
"""

from typing import Any, Dict, List, Optional, Sequence, Union
from datetime import datetime
import uuid
import logging

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import ConcurrencyConflict, InvalidStateTransition, RunNotFoundError
from models.base import PIPELINE_ORDER, TERMINAL_STATES, RunMode, RunState
from models.etl_run import IngestionRun, IngestionRunEvent, IngestionSourceLock
from models.raw_data import RunRawRecord

logger = logging.getLogger(__name__)

RunId = Union[str, uuid.UUID]


def parse_run_id(run_id: RunId) -> uuid.UUID:
    if isinstance(run_id, uuid.UUID):
        return run_id
    try:
        return uuid.UUID(str(run_id))
    except ValueError:
        raise RunNotFoundError(f"Run {run_id} not found", context={"run_id": str(run_id)})


class IngestionLog:
    """Reads and writes ingestion_runs / ingestion_run_events"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ===== CREATION =====

    async def start(
        self,
        scope: str,
        mode: RunMode = RunMode.INCREMENTAL,
        since: Optional[datetime] = None,
        source_ids: Sequence[int] = (),
    ) -> IngestionRun:
        """
        Create a run in state Started and claim its sources.

        The run row and one lock row per source are inserted in a single
        transaction, so scopes that overlap on any source exclude each other.

        Raises:
            ConcurrencyConflict: a non-terminal run already holds the scope
                or one of its sources
        """
        now = datetime.utcnow()
        run = IngestionRun(
            run_id=uuid.uuid4(),
            scope=scope,
            active_scope=scope,
            mode=mode,
            since=since,
            state=RunState.STARTED,
            started_at=now,
        )
        self.db.add(run)
        try:
            await self.db.flush()
            self.db.add_all([
                IngestionSourceLock(source_id=source_id, run_pk=run.id, acquired_at=now)
                for source_id in sorted(set(source_ids))
            ])
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            active = await self.holder(scope, source_ids)
            raise ConcurrencyConflict(
                f"A run is already in progress over scope '{scope}'",
                scope=scope,
                active_run_started_at=active.started_at if active else None,
                active_run_id=str(active.run_id) if active else None,
            )

        self.db.add(IngestionRunEvent(
            run_pk=run.id,
            from_state=None,
            to_state=RunState.STARTED,
            stage=RunState.STARTED.value,
            message=f"mode={mode.value}" + (f", since={since.isoformat()}" if since else ""),
            occurred_at=now,
        ))
        await self.db.commit()

        logger.info(f"Run {run.run_id} started for scope '{scope}' ({mode.value})")
        return run

    # ===== READS =====

    async def get(self, run_id: RunId) -> IngestionRun:
        result = await self.db.execute(
            select(IngestionRun)
            .where(IngestionRun.run_id == parse_run_id(run_id))
            .execution_options(populate_existing=True)
        )
        run = result.scalar_one_or_none()
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found", context={"run_id": str(run_id)})
        return run

    async def latest(self, scope: Optional[str] = None) -> Optional[IngestionRun]:
        query = select(IngestionRun).order_by(IngestionRun.started_at.desc(), IngestionRun.id.desc()).limit(1)
        if scope is not None:
            query = query.where(IngestionRun.scope == scope)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def active(self, scope: str) -> Optional[IngestionRun]:
        result = await self.db.execute(
            select(IngestionRun)
            .where(IngestionRun.active_scope == scope)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def holder(self, scope: str, source_ids: Sequence[int] = ()) -> Optional[IngestionRun]:
        """The open run holding `scope` or any of `source_ids`, if there is one."""
        active = await self.active(scope)
        if active is not None or not source_ids:
            return active
        result = await self.db.execute(
            select(IngestionRun)
            .join(IngestionSourceLock, IngestionSourceLock.run_pk == IngestionRun.id)
            .where(IngestionSourceLock.source_id.in_(list(source_ids)))
            .order_by(IngestionRun.started_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def non_terminal(self) -> List[IngestionRun]:
        result = await self.db.execute(
            select(IngestionRun)
            .where(IngestionRun.state.notin_(TERMINAL_STATES))
            .order_by(IngestionRun.started_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_runs(
        self,
        scope: Optional[str] = None,
        limit: int = 20,
        state: Optional[RunState] = None,
    ) -> List[IngestionRun]:
        query = select(IngestionRun).order_by(IngestionRun.started_at.desc(), IngestionRun.id.desc()).limit(limit)
        if scope is not None:
            query = query.where(IngestionRun.scope == scope)
        if state is not None:
            query = query.where(IngestionRun.state == state)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def history(self, run_id: RunId) -> List[IngestionRunEvent]:
        run = await self.get(run_id)
        result = await self.db.execute(
            select(IngestionRunEvent)
            .where(IngestionRunEvent.run_pk == run.id)
            .order_by(IngestionRunEvent.id)
        )
        return list(result.scalars().all())

    # ===== TRANSITIONS =====

    async def _transition(
        self,
        run_id: RunId,
        to_state: RunState,
        allowed_from: Optional[frozenset] = None,
        stage: Optional[str] = None,
        message: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
    ) -> IngestionRun:
        run = await self.get(run_id)
        from_state = RunState(run.state)

        if from_state in TERMINAL_STATES:
            raise InvalidStateTransition(
                f"Run {run.run_id} is already {from_state.value}",
                context={"run_id": str(run.run_id), "state": from_state.value, "requested": to_state.value},
            )
        if allowed_from is not None and from_state not in allowed_from:
            raise InvalidStateTransition(
                f"Run {run.run_id} cannot move from {from_state.value} to {to_state.value}",
                context={"run_id": str(run.run_id), "state": from_state.value, "requested": to_state.value},
            )

        now = datetime.utcnow()
        changes: Dict[str, Any] = {"state": to_state, **(values or {})}
        if to_state in TERMINAL_STATES:
            changes["active_scope"] = None
            changes["finished_at"] = now
            changes["duration_seconds"] = round((now - run.started_at).total_seconds(), 3)

        result = await self.db.execute(
            update(IngestionRun)
            .where(IngestionRun.id == run.id, IngestionRun.state == from_state)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Another writer moved the run first
            await self.db.rollback()
            current = await self.get(run.run_id)
            raise InvalidStateTransition(
                f"Run {run.run_id} changed concurrently (now {RunState(current.state).value})",
                context={"run_id": str(run.run_id), "state": RunState(current.state).value, "requested": to_state.value},
            )

        if to_state in TERMINAL_STATES:
            await self.db.execute(
                delete(IngestionSourceLock)
                .where(IngestionSourceLock.run_pk == run.id)
                .execution_options(synchronize_session=False)
            )

        self.db.add(IngestionRunEvent(
            run_pk=run.id,
            from_state=from_state,
            to_state=to_state,
            stage=stage or to_state.value,
            message=message,
            occurred_at=now,
        ))
        await self.db.commit()

        logger.info(f"Run {run.run_id}: {from_state.value} -> {to_state.value}")
        return await self.get(run.run_id)

    async def advance(self, run_id: RunId, state: RunState, message: Optional[str] = None) -> IngestionRun:
        """Move to the next pipeline stage; stages cannot be skipped or repeated."""
        state = RunState(state)
        if state not in PIPELINE_ORDER or state in (RunState.STARTED, RunState.COMPLETED):
            raise InvalidStateTransition(
                f"advance() cannot target {state.value}",
                context={"run_id": str(run_id), "requested": state.value},
            )
        previous = PIPELINE_ORDER[PIPELINE_ORDER.index(state) - 1]
        return await self._transition(run_id, state, allowed_from=frozenset({previous}), message=message)

    async def fail(self, run_id: RunId, stage: str, message: str, stats: Optional[Dict[str, Any]] = None) -> IngestionRun:
        values: Dict[str, Any] = {"error_stage": stage, "error_message": message[:4000]}
        if stats is not None:
            values["stats"] = stats
        logger.error(f"Run {run_id} failed during {stage}: {message}")
        return await self._transition(run_id, RunState.FAILED, stage=stage, message=message, values=values)

    async def complete(
        self,
        run_id: RunId,
        records_processed: int,
        stats: Optional[Dict[str, Any]] = None,
        **counters: int,
    ) -> IngestionRun:
        """Completed is only reachable from Deduplicating; records_processed is written here only."""
        values: Dict[str, Any] = {"records_processed": records_processed, **counters}
        if stats is not None:
            values["stats"] = stats
        return await self._transition(
            run_id,
            RunState.COMPLETED,
            allowed_from=frozenset({RunState.DEDUPLICATING}),
            message=f"{records_processed} record(s) processed",
            values=values,
        )

    async def cancel(self, run_id: RunId, message: str = "cancelled by request") -> IngestionRun:
        return await self._transition(run_id, RunState.CANCELLED, message=message)

    async def update_counters(self, run_id: RunId, **counters: Any) -> bool:
        """
        Record progress counters (records_extracted, records_rejected, stats...)
        on a non-terminal run. Returns False when the run is already terminal.
        """
        if "records_processed" in counters:
            raise ValueError("records_processed is only written by complete()")
        result = await self.db.execute(
            update(IngestionRun)
            .where(IngestionRun.run_id == parse_run_id(run_id), IngestionRun.state.notin_(TERMINAL_STATES))
            .values(**counters)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount > 0

    # ===== RETENTION =====

    async def purge(self, older_than: datetime) -> int:
        """Delete terminal runs finished before `older_than`, with their history."""
        stale_ids = select(IngestionRun.id).where(
            IngestionRun.state.in_(TERMINAL_STATES),
            IngestionRun.finished_at < older_than,
        )
        for model, column in (
            (IngestionRunEvent, IngestionRunEvent.run_pk),
            (IngestionSourceLock, IngestionSourceLock.run_pk),
            (RunRawRecord, RunRawRecord.run_pk),
        ):
            await self.db.execute(
                delete(model)
                .where(column.in_(stale_ids))
                .execution_options(synchronize_session=False)
            )
        result = await self.db.execute(
            delete(IngestionRun)
            .where(IngestionRun.id.in_(stale_ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount:
            logger.info(f"Purged {result.rowcount} ingestion run(s) finished before {older_than.isoformat()}")
        return result.rowcount
