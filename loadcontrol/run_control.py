import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from loadcontrol.db_models import PackageRun, RunStatus, StepStatus, utc_now
from loadcontrol.errors import AlreadyRunning, PackageNotFound
from loadcontrol.run_log import PACKAGE_END_STEP, PACKAGE_START_STEP, append_log_entry


logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (RunStatus.SUCCESS, RunStatus.FAILED)


def get_package_run(db: Session, package_name: str) -> PackageRun | None:
    stmt = select(PackageRun).where(PackageRun.package_name == package_name)
    return db.execute(stmt).scalar_one_or_none()


def require_package_run(db: Session, package_name: str) -> PackageRun:
    package_run = get_package_run(db, package_name)
    if package_run is None:
        raise PackageNotFound(package_name)
    return package_run


def provision_package(db: Session, package_name: str) -> tuple[PackageRun, bool]:
    package_run = PackageRun(package_name=package_name, status=RunStatus.READY.value)
    db.add(package_run)
    try:
        db.commit()
    except IntegrityError:
        # Unique package_name keeps provisioning idempotent.
        db.rollback()
        existing = get_package_run(db, package_name)
        if existing:
            return existing, False
        raise

    db.refresh(package_run)
    logger.info("package provisioned", extra={"package_name": package_name})
    return package_run, True


def start_run(db: Session, package_name: str) -> PackageRun:
    # Check and transition are one conditional UPDATE; only one concurrent caller matches the row.
    started_at = utc_now()
    stmt = (
        update(PackageRun)
        .where(PackageRun.package_name == package_name, PackageRun.status != RunStatus.RUNNING.value)
        .values(
            status=RunStatus.RUNNING.value,
            last_run_date=started_at,
            records_extracted=0,
            records_loaded=0,
            records_rejected=0,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        db.rollback()
        require_package_run(db, package_name)
        logger.warning("package already running", extra={"package_name": package_name})
        raise AlreadyRunning(package_name)

    append_log_entry(
        db,
        package_name=package_name,
        step_name=PACKAGE_START_STEP,
        status=StepStatus.STARTED,
        start_time=started_at,
    )
    db.commit()
    logger.info("package run started", extra={"package_name": package_name})
    return require_package_run(db, package_name)


def end_run(
    db: Session,
    package_name: str,
    *,
    status: RunStatus,
    records_extracted: int = 0,
    records_loaded: int = 0,
    records_rejected: int = 0,
    error_message: str | None = None,
) -> PackageRun:
    # Callers bracket start_run/end_run themselves; a missing start is not detected here.
    status = RunStatus(status)
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"end_run status must be Success or Failed, got {status!r}")

    package_run = require_package_run(db, package_name)
    ended_at = utc_now()
    package_run.status = status.value
    package_run.records_extracted = records_extracted
    package_run.records_loaded = records_loaded
    package_run.records_rejected = records_rejected
    if status == RunStatus.SUCCESS:
        package_run.last_success_date = ended_at

    append_log_entry(
        db,
        package_name=package_name,
        step_name=PACKAGE_END_STEP,
        status=StepStatus.SUCCESS if status == RunStatus.SUCCESS else StepStatus.FAILED,
        start_time=ended_at,
        end_time=ended_at,
        records_processed=records_loaded,
        error_message=error_message,
    )
    db.commit()
    logger.info(
        "package run ended",
        extra={
            "package_name": package_name,
            "status": status.value,
            "records_extracted": records_extracted,
            "records_loaded": records_loaded,
            "records_rejected": records_rejected,
        },
    )
    return package_run
