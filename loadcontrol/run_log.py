from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from loadcontrol.db_models import LogEntry, StepStatus, utc_now


PACKAGE_START_STEP = "Package Start"
PACKAGE_END_STEP = "Package End"
PROCESS_STAGING_STEP = "Process Staging Data"


def append_log_entry(
    db: Session,
    *,
    package_name: str,
    step_name: str,
    status: StepStatus,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    records_processed: int = 0,
    error_message: str | None = None,
) -> LogEntry:
    # The caller commits, so the entry lands with the state change it describes.
    entry = LogEntry(
        package_name=package_name,
        step_name=step_name,
        start_time=start_time or utc_now(),
        end_time=end_time,
        status=status.value,
        records_processed=records_processed,
        error_message=error_message,
    )
    db.add(entry)
    return entry


def record_step(
    db: Session,
    *,
    package_name: str,
    step_name: str,
    status: StepStatus,
    started_at: datetime,
    records_processed: int = 0,
    error_message: str | None = None,
) -> LogEntry:
    entry = append_log_entry(
        db,
        package_name=package_name,
        step_name=step_name,
        status=status,
        start_time=started_at,
        end_time=None if status == StepStatus.STARTED else utc_now(),
        records_processed=records_processed,
        error_message=error_message,
    )
    db.commit()
    return entry


def list_log_entries(
    db: Session,
    package_name: str,
    *,
    since: datetime | None = None,
    until: datetime | None = None,
) -> list[LogEntry]:
    stmt = select(LogEntry).where(LogEntry.package_name == package_name)
    if since is not None:
        stmt = stmt.where(LogEntry.start_time >= since)
    if until is not None:
        stmt = stmt.where(LogEntry.start_time <= until)
    return list(db.execute(stmt.order_by(LogEntry.id)).scalars().all())
