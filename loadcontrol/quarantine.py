import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from loadcontrol.db_models import QuarantineEntry, ResolutionStatus, StagingRecord, utc_now
from loadcontrol.errors import QuarantineEntryNotFound, ResolutionConflict


logger = logging.getLogger(__name__)


def format_source_data(record: StagingRecord) -> str:
    return f"{record.id}|{record.transaction_number or 'NULL'}"


def add_quarantine_entry(
    db: Session,
    *,
    package_name: str,
    source_table: str,
    record: StagingRecord,
    pass_id: str,
) -> QuarantineEntry:
    # Joins the caller's transaction; no commit here.
    entry = QuarantineEntry(
        package_name=package_name,
        source_table=source_table,
        staging_id=record.id,
        transaction_number=record.transaction_number,
        source_data=format_source_data(record),
        pass_id=pass_id,
        error_message=record.error_message or "",
        error_date=utc_now(),
        resolution_status=ResolutionStatus.UNRESOLVED.value,
    )
    db.add(entry)
    return entry


def get_quarantine_entry(db: Session, entry_id: int) -> QuarantineEntry | None:
    return db.get(QuarantineEntry, entry_id)


def list_quarantine_entries(
    db: Session,
    *,
    package_name: str | None = None,
    unresolved_only: bool = False,
) -> list[QuarantineEntry]:
    stmt = select(QuarantineEntry)
    if package_name is not None:
        stmt = stmt.where(QuarantineEntry.package_name == package_name)
    if unresolved_only:
        stmt = stmt.where(QuarantineEntry.resolution_status == ResolutionStatus.UNRESOLVED.value)
    return list(db.execute(stmt.order_by(QuarantineEntry.id)).scalars().all())


def resolve_quarantine_entry(db: Session, entry_id: int, *, resolved_by: str) -> QuarantineEntry:
    stmt = (
        update(QuarantineEntry)
        .where(
            QuarantineEntry.id == entry_id,
            QuarantineEntry.resolution_status == ResolutionStatus.UNRESOLVED.value,
        )
        .values(
            resolution_status=ResolutionStatus.RESOLVED.value,
            resolved_by=resolved_by,
            resolved_date=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        db.rollback()
        existing = get_quarantine_entry(db, entry_id)
        if existing is None:
            raise QuarantineEntryNotFound(entry_id)
        logger.warning(
            "quarantine entry already resolved",
            extra={"entry_id": entry_id, "resolved_by": existing.resolved_by, "attempted_by": resolved_by},
        )
        raise ResolutionConflict(entry_id, existing.resolved_by)

    db.commit()
    logger.info("quarantine entry resolved", extra={"entry_id": entry_id, "resolved_by": resolved_by})
    return db.execute(select(QuarantineEntry).where(QuarantineEntry.id == entry_id)).scalar_one()
