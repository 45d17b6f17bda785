from collections.abc import Generator
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from loadcontrol.config import Settings
from loadcontrol.database import build_session_factory
from loadcontrol.db_models import StagingRecord
from loadcontrol.pipeline import PipelineRunner
from loadcontrol.run_control import provision_package


PACKAGE_NAME = "Daily_Sales_ETL"


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data" / "input").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="loadcontrol",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        package_name=PACKAGE_NAME,
        source_table="STG_Sales",
        input_dir=str(temp_workspace / "data" / "input"),
        output_dir=str(temp_workspace / "outputs"),
        max_step_retries=1,
        retry_backoff_seconds=0,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def db(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture()
def provisioned(db: Session) -> str:
    provision_package(db, PACKAGE_NAME)
    return PACKAGE_NAME


@pytest.fixture()
def runner(test_settings: Settings, session_factory: sessionmaker[Session], provisioned: str) -> PipelineRunner:
    return PipelineRunner(test_settings, session_factory)


@pytest.fixture()
def add_staging_record(db: Session):
    def _add(
        *,
        transaction_number: str | None = "TXN-1",
        quantity: int | None = 1,
        unit_price: str | None = "10.00",
        **fields,
    ) -> int:
        record = StagingRecord(
            source_system="POS",
            transaction_number=transaction_number,
            quantity=quantity,
            unit_price=Decimal(unit_price) if unit_price is not None else None,
            **fields,
        )
        db.add(record)
        db.commit()
        return record.id

    return _add
