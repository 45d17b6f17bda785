from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import json
from pathlib import Path

from loadcontrol.db_models import StagingRecord


def ingest_records(input_path: Path) -> list[dict[str, object]]:
    if not input_path.exists():
        raise FileNotFoundError(f"input file not found: {input_path}")

    records: list[dict[str, object]] = []
    with input_path.open("r", encoding="utf-8") as infile:
        for line in infile:
            line = line.strip()
            if not line:
                continue
            records.append(json.loads(line))
    return records


def _text(value: object, max_length: int) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text[:max_length] if text else None


def _integer(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not value.is_integer():
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _decimal(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
        return amount.quantize(Decimal("0.01")) if amount.is_finite() else None
    except InvalidOperation:
        return None


def _date(value: object) -> date | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        return None


def convert_records(records: list[dict[str, object]], *, source_system: str) -> list[dict[str, object]]:
    # Values that do not convert are staged as NULL for validation to reject.
    converted: list[dict[str, object]] = []
    for record in records:
        quantity = _integer(record.get("quantity"))
        unit_price = _decimal(record.get("unit_price"))
        total_amount = _decimal(record.get("total_amount"))
        if total_amount is None and quantity is not None and unit_price is not None:
            total_amount = unit_price * quantity

        converted.append(
            {
                "source_system": _text(record.get("source_system"), 50) or source_system,
                "transaction_number": _text(record.get("transaction_number"), 30),
                "transaction_date": _date(record.get("transaction_date")),
                "branch_code": _text(record.get("branch_code"), 10),
                "customer_code": _text(record.get("customer_code"), 20),
                "product_code": _text(record.get("product_code"), 30),
                "quantity": quantity,
                "unit_price": unit_price,
                "total_amount": total_amount,
            }
        )
    return converted


def serialize_record(record: StagingRecord) -> dict[str, object]:
    return {
        "staging_id": record.id,
        "source_system": record.source_system,
        "transaction_number": record.transaction_number,
        "transaction_date": record.transaction_date.isoformat() if record.transaction_date else None,
        "branch_code": record.branch_code,
        "customer_code": record.customer_code,
        "product_code": record.product_code,
        "quantity": record.quantity,
        "unit_price": str(record.unit_price) if record.unit_price is not None else None,
        "total_amount": str(record.total_amount) if record.total_amount is not None else None,
    }


def write_jsonl(path: Path, rows: list[dict[str, object]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        for row in rows:
            outfile.write(json.dumps(row, sort_keys=True))
            outfile.write("\n")
