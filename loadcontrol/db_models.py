from datetime import UTC, date, datetime
from decimal import Decimal
import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class RunStatus(str, enum.Enum):
    READY = "Ready"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"


class StepStatus(str, enum.Enum):
    STARTED = "Started"
    SUCCESS = "Success"
    FAILED = "Failed"


class ResolutionStatus(str, enum.Enum):
    UNRESOLVED = "Unresolved"
    RESOLVED = "Resolved"


class PackageRun(Base):
    __tablename__ = "package_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_name: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.READY.value)
    last_run_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_success_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    records_extracted: Mapped[int] = mapped_column(Integer, default=0)
    records_loaded: Mapped[int] = mapped_column(Integer, default=0)
    records_rejected: Mapped[int] = mapped_column(Integer, default=0)


class StagingRecord(Base):
    __tablename__ = "staging_records"
    __table_args__ = (
        CheckConstraint("NOT (processed_flag AND error_flag)", name="ck_staging_processed_not_errored"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_system: Mapped[str | None] = mapped_column(String(50), nullable=True)
    transaction_number: Mapped[str | None] = mapped_column(String(30), nullable=True, index=True)
    transaction_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    branch_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    customer_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    product_code: Mapped[str | None] = mapped_column(String(30), nullable=True)
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    load_date: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    processed_flag: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    error_flag: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)

    quarantine_entries: Mapped[list["QuarantineEntry"]] = relationship(back_populates="staging_record")


class QuarantineEntry(Base):
    __tablename__ = "quarantine_entries"
    __table_args__ = (UniqueConstraint("pass_id", "staging_id", name="uq_quarantine_pass_record"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_name: Mapped[str] = mapped_column(String(100), index=True)
    source_table: Mapped[str] = mapped_column(String(100))
    staging_id: Mapped[int] = mapped_column(ForeignKey("staging_records.id"), index=True)
    transaction_number: Mapped[str | None] = mapped_column(String(30), nullable=True)
    source_data: Mapped[str] = mapped_column(Text)
    pass_id: Mapped[str] = mapped_column(String(32), index=True)
    error_message: Mapped[str] = mapped_column(Text)
    error_date: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    resolution_status: Mapped[str] = mapped_column(String(20), default=ResolutionStatus.UNRESOLVED.value, index=True)
    resolved_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resolved_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    staging_record: Mapped[StagingRecord] = relationship(back_populates="quarantine_entries")


class LogEntry(Base):
    __tablename__ = "log_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_name: Mapped[str] = mapped_column(String(100), index=True)
    step_name: Mapped[str] = mapped_column(String(100))
    start_time: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20))
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_date: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
