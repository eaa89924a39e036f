"""
Script to run one ingestion pass from the command line and wait for it.

Usage:
    python scripts/run_etl.py                      # all active sources, incremental
    python scripts/run_etl.py --scope 3 --full     # one source, ignore watermarks
    python scripts/run_etl.py --since 2024-01-01T00:00:00

Exit status is 0 when the run completes, 1 otherwise.
"""

import argparse
import asyncio
import sys
import os
import logging
from datetime import datetime

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import async_session_maker, engine
from core.events import EventBus
from core.exceptions import ConcurrencyConflict, SourceNotFoundError
from core.logging import setup_logging
from ingestion.coordinator import RunCoordinator
from ingestion.notifications import FailureAlert, ReportTrigger
from models.base import RunMode, RunState

logger = logging.getLogger(__name__)


async def run_etl(scope: str, since: datetime = None, mode: RunMode = RunMode.INCREMENTAL) -> int:
    """Run ingestion for a scope and report the outcome"""
    event_bus = EventBus()
    ReportTrigger().register(event_bus)
    FailureAlert().register(event_bus)
    coordinator = RunCoordinator(async_session_maker, event_bus=event_bus)

    try:
        await coordinator.recover_interrupted_runs()
        run = await coordinator.start(scope, since=since, mode=mode)
        logger.info(f"Run {run.run_id} started for scope '{run.scope}'")

        run = await coordinator.join(run.run_id)
        logger.info(
            f"Run {run.run_id} finished: {RunState(run.state).value} - "
            f"Extracted={run.records_extracted}, Rejected={run.records_rejected}, "
            f"Processed={run.records_processed}"
        )
        if RunState(run.state) != RunState.COMPLETED:
            logger.error(f"Run failed during {run.error_stage}: {run.error_message}")
            return 1
        return 0

    except ConcurrencyConflict as e:
        logger.error(f"Another run is active for scope '{e.scope}' since {e.active_run_started_at}")
        return 1
    except SourceNotFoundError as e:
        logger.error(e.message)
        return 1
    finally:
        await coordinator.shutdown()
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one ingestion pass")
    parser.add_argument("--scope", default="all", help="'all' or a source id")
    parser.add_argument("--since", type=datetime.fromisoformat, help="Lower bound (ISO 8601)")
    parser.add_argument("--full", action="store_true", help="Ignore watermarks")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run_etl(
        args.scope,
        since=args.since,
        mode=RunMode.FULL if args.full else RunMode.INCREMENTAL,
    )))
