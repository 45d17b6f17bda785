from collections.abc import Callable, Sequence
from dataclasses import dataclass
import enum

from loadcontrol.db_models import StagingRecord


SchemaCheck = Callable[[StagingRecord], bool]


class ValidationRejection(str, enum.Enum):
    MISSING_KEY = "Missing Transaction Number"
    INVALID_QUANTITY = "Invalid Quantity"
    INVALID_PRICE = "Invalid Unit Price"
    UNKNOWN = "Unknown Error"


@dataclass(frozen=True)
class ValidationRule:
    rejection: ValidationRejection
    is_invalid: Callable[[StagingRecord], bool]

    @property
    def message(self) -> str:
        return self.rejection.value


def _missing_transaction_number(record: StagingRecord) -> bool:
    return record.transaction_number is None or not record.transaction_number.strip()


def _invalid_quantity(record: StagingRecord) -> bool:
    return record.quantity is None or record.quantity <= 0


def _invalid_unit_price(record: StagingRecord) -> bool:
    return record.unit_price is None or record.unit_price <= 0


BUILTIN_RULES: tuple[ValidationRule, ...] = (
    ValidationRule(ValidationRejection.MISSING_KEY, _missing_transaction_number),
    ValidationRule(ValidationRejection.INVALID_QUANTITY, _invalid_quantity),
    ValidationRule(ValidationRejection.INVALID_PRICE, _invalid_unit_price),
)


def build_rules(schema_checks: Sequence[SchemaCheck] = ()) -> tuple[ValidationRule, ...]:
    # Schema checks return True for acceptable records; a failing one maps to Unknown.
    if not schema_checks:
        return BUILTIN_RULES

    def _fails_schema(record: StagingRecord) -> bool:
        return not all(check(record) for check in schema_checks)

    return BUILTIN_RULES + (ValidationRule(ValidationRejection.UNKNOWN, _fails_schema),)


def first_rejection(record: StagingRecord, rules: Sequence[ValidationRule]) -> ValidationRule | None:
    for rule in rules:
        if rule.is_invalid(record):
            return rule
    return None
