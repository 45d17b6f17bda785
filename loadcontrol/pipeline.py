from collections.abc import Callable
from datetime import date
import json
import logging
from pathlib import Path
from typing import TypeVar

from sqlalchemy.orm import Session, sessionmaker

from loadcontrol.config import Settings
from loadcontrol.db_models import RunStatus, StepStatus, utc_now
from loadcontrol.errors import AlreadyRunning
from loadcontrol.retry import RetryExhaustedError, run_with_retries
from loadcontrol.run_control import end_run, start_run
from loadcontrol.run_log import record_step
from loadcontrol.schemas import PipelineResult
from loadcontrol.staging import StagingValidator, fetch_loadable_records, purge_loaded_records, stage_records
from loadcontrol.step_logic import convert_records, ingest_records, serialize_record, write_jsonl


logger = logging.getLogger(__name__)
T = TypeVar("T")

EXTRACT_STEP = "Extract Source Data"
LOAD_STEP = "Load Target Data"
SKIPPED_STATUS = "skipped"

Loader = Callable[[str, date, list[dict[str, object]]], str | None]
Notifier = Callable[[PipelineResult], None]


def log_failure_notification(result: PipelineResult) -> None:
    logger.error(
        "package run failed",
        extra={
            "package_name": result.package_name,
            "run_date": result.run_date.isoformat(),
            "trigger_source": result.trigger_source,
            "error": result.error,
        },
    )


class PipelineRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        validator: StagingValidator | None = None,
        loader: Loader | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.validator = validator or StagingValidator(
            package_name=settings.package_name,
            source_table=settings.source_table,
        )
        self.loader = loader or self._write_published_file
        self.notifier = notifier or log_failure_notification

    def run(self, *, run_date: date, trigger_source: str = "manual") -> PipelineResult:
        package_name = self.settings.package_name
        with self.session_factory() as db:
            try:
                start_run(db, package_name)
            except AlreadyRunning as exc:
                return PipelineResult(
                    package_name=package_name,
                    run_date=run_date,
                    trigger_source=trigger_source,
                    status=SKIPPED_STATUS,
                    records_extracted=0,
                    records_loaded=0,
                    records_rejected=0,
                    error=str(exc),
                )

            extracted = 0
            loaded = 0
            rejected = 0
            output_path: str | None = None

            try:
                extracted = self._run_step(
                    db,
                    EXTRACT_STEP,
                    lambda: self._extract(db, run_date),
                    count=lambda staged: staged,
                )

                partition = self.validator.validate_and_partition(db)
                rejected = partition.error_count

                loaded, output_path = self._run_step(
                    db,
                    LOAD_STEP,
                    lambda: self._load(db, run_date),
                    count=lambda outcome: outcome[0],
                )

                end_run(
                    db,
                    package_name,
                    status=RunStatus.SUCCESS,
                    records_extracted=extracted,
                    records_loaded=loaded,
                    records_rejected=rejected,
                )
            except Exception as exc:
                db.rollback()
                end_run(
                    db,
                    package_name,
                    status=RunStatus.FAILED,
                    records_extracted=extracted,
                    records_loaded=loaded,
                    records_rejected=rejected,
                    error_message=str(exc),
                )
                logger.exception("pipeline run failed", extra={"package_name": package_name})
                result = PipelineResult(
                    package_name=package_name,
                    run_date=run_date,
                    trigger_source=trigger_source,
                    status=RunStatus.FAILED.value,
                    records_extracted=extracted,
                    records_loaded=loaded,
                    records_rejected=rejected,
                    error=str(exc),
                )
                self.notifier(result)
                return result

            return PipelineResult(
                package_name=package_name,
                run_date=run_date,
                trigger_source=trigger_source,
                status=RunStatus.SUCCESS.value,
                records_extracted=extracted,
                records_loaded=loaded,
                records_rejected=rejected,
                output_path=output_path,
            )

    def _run_step(self, db: Session, step_name: str, fn: Callable[[], T], *, count: Callable[[T], int]) -> T:
        package_name = self.settings.package_name

        def execute_once(attempt: int) -> T:
            # Log each attempt so retries stay auditable.
            started_at = utc_now()
            record_step(
                db,
                package_name=package_name,
                step_name=step_name,
                status=StepStatus.STARTED,
                started_at=started_at,
            )
            try:
                result = fn()
            except Exception as exc:
                db.rollback()
                record_step(
                    db,
                    package_name=package_name,
                    step_name=step_name,
                    status=StepStatus.FAILED,
                    started_at=started_at,
                    error_message=f"attempt {attempt}: {exc}",
                )
                raise
            record_step(
                db,
                package_name=package_name,
                step_name=step_name,
                status=StepStatus.SUCCESS,
                started_at=started_at,
                records_processed=count(result),
            )
            return result

        try:
            return run_with_retries(
                execute_once,
                max_retries=self.settings.max_step_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
                should_retry=lambda exc: self._is_retryable(step_name, exc),
            )
        except RetryExhaustedError as exc:
            raise RuntimeError(f"step '{step_name}' failed after {exc.attempts} attempt(s): {exc}") from exc

    def _is_retryable(self, step_name: str, exc: Exception) -> bool:
        # A missing or malformed drop file does not recover on retry.
        if step_name == EXTRACT_STEP and isinstance(exc, (FileNotFoundError, json.JSONDecodeError)):
            return False
        return True

    def _extract(self, db: Session, run_date: date) -> int:
        input_path = Path(self.settings.input_dir) / f"records-{run_date.isoformat()}.jsonl"
        rows = convert_records(ingest_records(input_path), source_system=self.settings.app_name)
        return stage_records(db, rows)

    def _load(self, db: Session, run_date: date) -> tuple[int, str | None]:
        records = fetch_loadable_records(db)
        output_path = self.loader(self.settings.package_name, run_date, [serialize_record(r) for r in records])
        if self.settings.purge_after_load:
            purge_loaded_records(db, [record.id for record in records])
        return len(records), output_path

    def _write_published_file(self, package_name: str, run_date: date, rows: list[dict[str, object]]) -> str:
        path = Path(self.settings.output_dir) / "published" / f"{package_name}-{run_date.isoformat()}.jsonl"
        write_jsonl(path, rows)
        return str(path)
