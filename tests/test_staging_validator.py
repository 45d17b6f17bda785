import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from loadcontrol import staging
from loadcontrol.db_models import QuarantineEntry, StagingRecord
from loadcontrol.errors import PartitionAborted, TransactionFailure
from loadcontrol.run_log import PROCESS_STAGING_STEP, list_log_entries
from loadcontrol.staging import StagingValidator, fetch_loadable_records, mark_processed, stage_records


def _flags(session_factory: sessionmaker[Session]) -> dict[int, tuple[bool, bool, str | None]]:
    with session_factory() as db:
        records = db.execute(select(StagingRecord).order_by(StagingRecord.id)).scalars().all()
        return {record.id: (record.processed_flag, record.error_flag, record.error_message) for record in records}


def _entries_for(db: Session, staging_id: int) -> list[QuarantineEntry]:
    stmt = select(QuarantineEntry).where(QuarantineEntry.staging_id == staging_id)
    return list(db.execute(stmt).scalars().all())


@pytest.fixture()
def validator(provisioned: str) -> StagingValidator:
    return StagingValidator(package_name=provisioned)


def test_mixed_batch_is_partitioned(db: Session, validator: StagingValidator, add_staging_record) -> None:
    valid_id = add_staging_record(transaction_number="A-100", quantity=2, unit_price="9.99")
    zero_qty_id = add_staging_record(transaction_number="B-200", quantity=0)
    missing_key_id = add_staging_record(transaction_number=None)

    result = validator.validate_and_partition(db)

    assert (result.processed_count, result.error_count) == (1, 2)

    valid = db.get(StagingRecord, valid_id)
    assert valid.processed_flag is True
    assert valid.error_flag is False
    assert _entries_for(db, valid_id) == []

    zero_qty = db.get(StagingRecord, zero_qty_id)
    assert zero_qty.error_flag is True
    assert zero_qty.processed_flag is False
    assert zero_qty.error_message == "Invalid Quantity"
    [zero_qty_entry] = _entries_for(db, zero_qty_id)
    assert zero_qty_entry.error_message == "Invalid Quantity"
    assert zero_qty_entry.resolution_status == "Unresolved"
    assert zero_qty_entry.transaction_number == "B-200"
    assert zero_qty_entry.source_data == f"{zero_qty_id}|B-200"

    missing_key = db.get(StagingRecord, missing_key_id)
    assert missing_key.error_flag is True
    assert missing_key.error_message == "Missing Transaction Number"
    [missing_key_entry] = _entries_for(db, missing_key_id)
    assert missing_key_entry.source_data == f"{missing_key_id}|NULL"
    assert missing_key_entry.source_table == "STG_Sales"
    assert missing_key_entry.pass_id == result.pass_id


@pytest.mark.parametrize(
    ("fields", "reason"),
    [
        ({"transaction_number": None, "quantity": 0, "unit_price": "0"}, "Missing Transaction Number"),
        ({"transaction_number": "   ", "quantity": 5}, "Missing Transaction Number"),
        ({"quantity": -3, "unit_price": "-1.00"}, "Invalid Quantity"),
        ({"quantity": None}, "Invalid Quantity"),
        ({"unit_price": "0.00"}, "Invalid Unit Price"),
        ({"unit_price": None}, "Invalid Unit Price"),
    ],
)
def test_first_matching_rule_wins(db: Session, validator: StagingValidator, add_staging_record, fields, reason) -> None:
    record_id = add_staging_record(**fields)

    result = validator.validate_and_partition(db)

    assert result.error_count == 1
    record = db.get(StagingRecord, record_id)
    assert record.error_message == reason
    assert [entry.error_message for entry in _entries_for(db, record_id)] == [reason]


def test_schema_checks_fall_back_to_unknown_error(db: Session, provisioned: str, add_staging_record) -> None:
    validator = StagingValidator(
        package_name=provisioned,
        schema_checks=[lambda record: record.branch_code is not None],
    )
    no_branch_id = add_staging_record(transaction_number="C-1")
    branch_id = add_staging_record(transaction_number="C-2", branch_code="LAG01")
    bad_price_id = add_staging_record(transaction_number="C-3", unit_price="0")

    result = validator.validate_and_partition(db)

    assert (result.processed_count, result.error_count) == (1, 2)
    assert db.get(StagingRecord, no_branch_id).error_message == "Unknown Error"
    assert db.get(StagingRecord, branch_id).processed_flag is True
    assert db.get(StagingRecord, bad_price_id).error_message == "Invalid Unit Price"


def test_fault_mid_pass_rolls_back_everything(
    db: Session,
    session_factory: sessionmaker[Session],
    validator: StagingValidator,
    add_staging_record,
    monkeypatch,
) -> None:
    add_staging_record(transaction_number="D-1")
    add_staging_record(transaction_number=None)
    add_staging_record(transaction_number="D-3", quantity=0)
    add_staging_record(transaction_number="D-4")
    before = _flags(session_factory)

    real_add = staging.add_quarantine_entry
    calls = {"count": 0}

    def flaky_add(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise RuntimeError("disk full")
        return real_add(*args, **kwargs)

    monkeypatch.setattr(staging, "add_quarantine_entry", flaky_add)

    with pytest.raises(TransactionFailure, match="disk full"):
        validator.validate_and_partition(db)

    assert _flags(session_factory) == before
    with session_factory() as other:
        assert other.execute(select(QuarantineEntry)).scalars().all() == []

    statuses = [entry.status for entry in list_log_entries(db, validator.package_name) if entry.step_name == PROCESS_STAGING_STEP]
    assert statuses == ["Started", "Failed"]


def test_abort_before_commit_leaves_no_trace(
    db: Session,
    session_factory: sessionmaker[Session],
    validator: StagingValidator,
    add_staging_record,
) -> None:
    add_staging_record(transaction_number="E-1")
    add_staging_record(transaction_number="E-2", unit_price="0")
    before = _flags(session_factory)

    with pytest.raises(PartitionAborted):
        validator.validate_and_partition(db, should_abort=lambda: True)

    assert _flags(session_factory) == before
    assert db.execute(select(QuarantineEntry)).scalars().all() == []


def test_second_pass_skips_already_partitioned_rows(db: Session, validator: StagingValidator, add_staging_record) -> None:
    add_staging_record(transaction_number="F-1")
    rejected_id = add_staging_record(transaction_number="F-2", quantity=0)
    validator.validate_and_partition(db)

    fresh_id = add_staging_record(transaction_number="F-3")
    second = validator.validate_and_partition(db)

    assert (second.processed_count, second.error_count) == (1, 0)
    assert db.get(StagingRecord, fresh_id).processed_flag is True
    assert len(_entries_for(db, rejected_id)) == 1


def test_flagged_rows_without_entry_are_quarantined(db: Session, validator: StagingValidator, add_staging_record) -> None:
    orphan_id = add_staging_record(transaction_number="G-1")
    orphan = db.get(StagingRecord, orphan_id)
    orphan.error_flag = True
    orphan.error_message = "Rejected upstream"
    db.commit()

    result = validator.validate_and_partition(db)

    assert result.error_count == 0
    [entry] = _entries_for(db, orphan_id)
    assert entry.error_message == "Rejected upstream"


def test_processed_and_errored_is_rejected_by_storage(db: Session, add_staging_record) -> None:
    record = db.get(StagingRecord, add_staging_record())
    record.processed_flag = True
    record.error_flag = True

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_mark_processed_refuses_errored_record(db: Session, add_staging_record) -> None:
    record = db.get(StagingRecord, add_staging_record())
    record.error_flag = True

    with pytest.raises(ValueError):
        mark_processed(record)
    assert record.processed_flag is False


def test_loadable_records_are_processed_only(db: Session, validator: StagingValidator, add_staging_record) -> None:
    valid_id = add_staging_record(transaction_number="H-1")
    add_staging_record(transaction_number="H-2", quantity=0)
    assert fetch_loadable_records(db) == []

    validator.validate_and_partition(db)

    assert [record.id for record in fetch_loadable_records(db)] == [valid_id]


def test_stage_records_skips_already_staged_transactions(db: Session, add_staging_record) -> None:
    add_staging_record(transaction_number="S-1")

    staged = stage_records(
        db,
        [
            {"transaction_number": "S-1", "quantity": 1},
            {"transaction_number": "S-2", "quantity": 1},
            {"transaction_number": "S-2", "quantity": 5},
            {"transaction_number": None, "quantity": 1},
        ],
    )

    assert staged == 2
    numbers = sorted(
        (record.transaction_number or "", record.quantity)
        for record in db.execute(select(StagingRecord)).scalars().all()
    )
    assert numbers == [("", 1), ("S-1", 1), ("S-2", 1)]
