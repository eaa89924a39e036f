import logging
from datetime import datetime, timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from core.config import settings
from core.exceptions import ConcurrencyConflict, ETLException
from ingestion.coordinator import RunCoordinator
from ingestion.registry import ALL_SOURCES
from ingestion.run_log import IngestionLog

logger = logging.getLogger(__name__)


class ETLScheduler:
    """Daily automatic ingestion over all active sources, plus log retention."""

    def __init__(
        self,
        coordinator: RunCoordinator,
        hour: int = settings.ETL_SCHEDULE_HOUR,
        minute: int = settings.ETL_SCHEDULE_MINUTE,
        retention_days: int = settings.LOG_RETENTION_DAYS,
    ):
        self.coordinator = coordinator
        self.hour = hour
        self.minute = minute
        self.retention_days = retention_days
        self.scheduler = AsyncIOScheduler()

    async def run_etl_job(self):
        """Job to start the daily run"""
        logger.info("Scheduler: Starting daily ingestion run")
        try:
            run = await self.coordinator.start(ALL_SOURCES)
            logger.info(f"Scheduler: run {run.run_id} started")
        except ConcurrencyConflict as e:
            logger.warning(
                f"Scheduler: skipped, run {e.active_run_id} for scope '{e.scope}' "
                f"active since {e.active_run_started_at}"
            )
        except ETLException as e:
            logger.error(f"Scheduler: ingestion run could not start - {e}")

    async def purge_job(self) -> int:
        """Delete terminal runs older than the retention window"""
        cutoff = datetime.utcnow() - timedelta(days=self.retention_days)
        async with self.coordinator.session_factory() as session:
            purged = await IngestionLog(session).purge(cutoff)
        logger.info(f"Scheduler: purged {purged} run(s) older than {self.retention_days} days")
        return purged

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_etl_job,
            trigger=CronTrigger(hour=self.hour, minute=self.minute),
            id="etl_job",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.purge_job,
            trigger=CronTrigger(hour=(self.hour + 1) % 24, minute=self.minute),
            id="ingestion_log_purge",
            replace_existing=True,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"ETL Scheduler started (daily at {self.hour:02d}:{self.minute:02d})")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("ETL Scheduler stopped")
