import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from repository import SqlAuthRepository
from services import CycleService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def archive_due_cycles(source: str = "manual") -> int:
    with session_scope() as session:
        archived = CycleService(session).archive_all_due()
    logger.info(f"archive_sweep: source={source} cycles_archived={archived}")
    return archived


def purge_reset_tokens(source: str = "manual") -> int:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    with session_scope() as session:
        purged = SqlAuthRepository(session).purge_expired_reset_tokens(now)
    logger.info(f"reset_token_purge: source={source} purged={purged}")
    return purged


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = not settings.is_test
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def start(self) -> None:
        if not self.enabled:
            logger.info("Scheduler disabled in test environment")
            return

        archive_due_cycles("startup")
        purge_reset_tokens("startup")

        # Cycles end on a day boundary; the hourly run covers missed wakeups.
        self.scheduler.add_job(
            archive_due_cycles,
            CronTrigger(hour=0, minute=15),
            args=["daily_00:15"],
            id="archive_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            archive_due_cycles,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="archive_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            purge_reset_tokens,
            IntervalTrigger(hours=6),
            args=["interval_6h"],
            id="reset_token_purge",
            replace_existing=True,
            misfire_grace_time=600,
        )

        self.scheduler.start()
        logger.info("Scheduler started: archive sweep daily 00:15 + hourly, purge 6h")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
