from datetime import UTC, datetime
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from loadcontrol.config import Settings
from loadcontrol.db_models import RunStatus
from loadcontrol.pipeline import SKIPPED_STATUS, PipelineRunner


logger = logging.getLogger(__name__)


def _run_nightly_package(settings: Settings, session_factory: sessionmaker[Session]) -> None:
    run_date = datetime.now(UTC).date()

    runner = PipelineRunner(settings, session_factory)
    result = runner.run(run_date=run_date, trigger_source="scheduled")
    context = {
        "package_name": result.package_name,
        "run_date": run_date.isoformat(),
        "status": result.status,
    }
    if result.status == SKIPPED_STATUS:
        logger.warning("scheduled run skipped, package already running", extra=context)
        return
    if result.status == RunStatus.FAILED.value:
        logger.error("scheduled package run failed", extra=context)
        return
    logger.info("scheduled package run completed", extra=context)


def start_scheduler(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_nightly_package,
        "cron",
        args=[settings, session_factory],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id=f"nightly_{settings.package_name}",
        replace_existing=True,
        max_instances=1,
    )

    logger.info(
        "scheduler started",
        extra={
            "package_name": settings.package_name,
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _run_nightly_package(settings, session_factory)

    scheduler.start()
