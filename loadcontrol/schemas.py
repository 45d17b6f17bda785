from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class PartitionResult:
    pass_id: str
    processed_count: int
    error_count: int


@dataclass(frozen=True)
class PipelineResult:
    package_name: str
    run_date: date
    trigger_source: str
    status: str
    records_extracted: int
    records_loaded: int
    records_rejected: int
    error: str | None = None
    output_path: str | None = None
