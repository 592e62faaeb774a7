from datetime import UTC, datetime
import logging
import uuid

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from markmaster.config import Settings
from markmaster.errors import ConsolidationError
from markmaster.processor import Consolidator
from markmaster.schemas import Summary


logger = logging.getLogger(__name__)


def run_scheduled_consolidation(settings: Settings, session_factory: sessionmaker[Session]) -> Summary | None:
    run_key = f"scheduled-{datetime.now(UTC):%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"

    consolidator = Consolidator(settings, session_factory)
    try:
        summary = consolidator.process(run_key=run_key, trigger_source="scheduled")
    except ConsolidationError:
        # Already logged and recorded on the run; the next scheduled run retries.
        return None

    if summary.status == "failed":
        logger.error(
            "scheduled consolidation run failed",
            extra={"run_key": summary.run_key, "status": summary.status, "failed_files": summary.failed_files},
        )
        return summary
    logger.info(
        "scheduled consolidation run completed",
        extra={"run_key": summary.run_key, "status": summary.status, "records_merged": summary.records_merged},
    )
    return summary


def start_scheduler(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        run_scheduled_consolidation,
        "cron",
        args=[settings, session_factory],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_consolidation",
        replace_existing=True,
        max_instances=1,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        run_scheduled_consolidation(settings, session_factory)

    scheduler.start()
