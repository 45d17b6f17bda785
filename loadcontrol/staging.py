from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from loadcontrol.db_models import QuarantineEntry, StagingRecord, StepStatus, utc_now
from loadcontrol.errors import PartitionAborted, TransactionFailure
from loadcontrol.quarantine import add_quarantine_entry
from loadcontrol.run_log import PROCESS_STAGING_STEP, record_step
from loadcontrol.schemas import PartitionResult
from loadcontrol.validation import SchemaCheck, build_rules, first_rejection


logger = logging.getLogger(__name__)

STAGING_FIELDS = (
    "source_system",
    "transaction_number",
    "transaction_date",
    "branch_code",
    "customer_code",
    "product_code",
    "quantity",
    "unit_price",
    "total_amount",
)


def stage_records(db: Session, rows: Iterable[dict[str, object]]) -> int:
    rows = list(rows)
    keys = {row.get("transaction_number") for row in rows} - {None}
    seen: set[object] = set()
    if keys:
        stmt = select(StagingRecord.transaction_number).where(StagingRecord.transaction_number.in_(keys))
        seen.update(db.execute(stmt).scalars().all())

    count = 0
    skipped = 0
    for row in rows:
        key = row.get("transaction_number")
        if key is not None:
            # One staged row per transaction number, so a re-extract cannot load twice.
            if key in seen:
                skipped += 1
                continue
            seen.add(key)
        db.add(StagingRecord(**{field: row.get(field) for field in STAGING_FIELDS}))
        count += 1
    db.commit()
    if skipped:
        logger.info("duplicate staging rows skipped", extra={"skipped": skipped})
    return count


def fetch_loadable_records(db: Session) -> list[StagingRecord]:
    stmt = (
        select(StagingRecord)
        .where(StagingRecord.processed_flag.is_(True), StagingRecord.error_flag.is_(False))
        .order_by(StagingRecord.id)
    )
    return list(db.execute(stmt).scalars().all())


def purge_loaded_records(db: Session, record_ids: Sequence[int]) -> int:
    if not record_ids:
        return 0
    stmt = delete(StagingRecord).where(
        StagingRecord.id.in_(record_ids),
        StagingRecord.processed_flag.is_(True),
        StagingRecord.error_flag.is_(False),
    )
    result = db.execute(stmt.execution_options(synchronize_session=False))
    db.commit()
    return result.rowcount


def mark_rejected(record: StagingRecord, message: str) -> None:
    if record.processed_flag:
        raise ValueError(f"staging record {record.id} is already processed")
    record.error_flag = True
    record.error_message = message


def mark_processed(record: StagingRecord) -> None:
    if record.error_flag:
        raise ValueError(f"staging record {record.id} is flagged as an error and cannot be processed")
    record.processed_flag = True


class StagingValidator:
    def __init__(
        self,
        *,
        package_name: str,
        source_table: str = "STG_Sales",
        schema_checks: Sequence[SchemaCheck] = (),
    ) -> None:
        self.package_name = package_name
        self.source_table = source_table
        self.rules = build_rules(schema_checks)

    def validate_and_partition(
        self,
        db: Session,
        *,
        should_abort: Callable[[], bool] | None = None,
    ) -> PartitionResult:
        started_at = utc_now()
        record_step(
            db,
            package_name=self.package_name,
            step_name=PROCESS_STAGING_STEP,
            status=StepStatus.STARTED,
            started_at=started_at,
        )

        pass_id = uuid.uuid4().hex
        try:
            result = self._partition(db, pass_id, should_abort)
        except PartitionAborted as exc:
            db.rollback()
            self._record_failure(db, started_at, str(exc))
            logger.warning("staging partition aborted", extra={"package_name": self.package_name, "pass_id": pass_id})
            raise
        except Exception as exc:
            db.rollback()
            self._record_failure(db, started_at, str(exc))
            logger.exception("staging partition failed", extra={"package_name": self.package_name, "pass_id": pass_id})
            raise TransactionFailure(f"staging partition failed: {exc}") from exc

        record_step(
            db,
            package_name=self.package_name,
            step_name=PROCESS_STAGING_STEP,
            status=StepStatus.SUCCESS,
            started_at=started_at,
            records_processed=result.processed_count,
        )
        logger.info(
            "staging partition committed",
            extra={
                "package_name": self.package_name,
                "pass_id": pass_id,
                "processed": result.processed_count,
                "errors": result.error_count,
            },
        )
        return result

    def _partition(
        self,
        db: Session,
        pass_id: str,
        should_abort: Callable[[], bool] | None,
    ) -> PartitionResult:
        snapshot_stmt = (
            select(StagingRecord)
            .where(StagingRecord.processed_flag.is_(False), StagingRecord.error_flag.is_(False))
            .order_by(StagingRecord.id)
        )
        snapshot = db.execute(snapshot_stmt).scalars().all()

        accepted: list[StagingRecord] = []
        rejected: list[tuple[StagingRecord, str]] = []
        for record in snapshot:
            rule = first_rejection(record, self.rules)
            if rule is None:
                accepted.append(record)
            else:
                rejected.append((record, rule.message))

        # Flagged rows that never reached quarantine are picked up by this pass too.
        to_quarantine: dict[int, StagingRecord] = {record.id: record for record in self._unquarantined_errors(db)}

        for record, message in rejected:
            mark_rejected(record, message)
            to_quarantine[record.id] = record
        for record in to_quarantine.values():
            add_quarantine_entry(
                db,
                package_name=self.package_name,
                source_table=self.source_table,
                record=record,
                pass_id=pass_id,
            )
        for record in accepted:
            mark_processed(record)

        db.flush()
        if should_abort is not None and should_abort():
            raise PartitionAborted(f"staging partition {pass_id} aborted before commit")
        db.commit()

        return PartitionResult(pass_id=pass_id, processed_count=len(accepted), error_count=len(rejected))

    def _unquarantined_errors(self, db: Session) -> list[StagingRecord]:
        has_entry = select(QuarantineEntry.id).where(QuarantineEntry.staging_id == StagingRecord.id).exists()
        stmt = (
            select(StagingRecord)
            .where(StagingRecord.processed_flag.is_(False), StagingRecord.error_flag.is_(True), ~has_entry)
            .order_by(StagingRecord.id)
        )
        return list(db.execute(stmt).scalars().all())

    def _record_failure(self, db: Session, started_at: datetime, error: str) -> None:
        record_step(
            db,
            package_name=self.package_name,
            step_name=PROCESS_STAGING_STEP,
            status=StepStatus.FAILED,
            started_at=started_at,
            error_message=error,
        )
