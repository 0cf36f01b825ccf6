"""Per-transaction completeness checks."""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from statement_pipeline.schemas.records import TransactionRecord


@dataclass
class ValidationReport:
    total_transactions: int = 0
    valid_transactions: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def validation_rate(self) -> float:
        if self.total_transactions == 0:
            return 0.0
        return self.valid_transactions / self.total_transactions * 100

    def metadata(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "total_transactions": self.total_transactions,
            "valid_transactions": self.valid_transactions,
            "validation_rate": self.validation_rate,
            "errors": list(self.errors),
        }


def check_transaction(transaction: TransactionRecord) -> str:
    """First failing check for one transaction, or an empty string."""
    if transaction.date is None:
        return f"Invalid date for transaction {transaction.id}"
    if transaction.amount == 0 or not math.isfinite(transaction.amount):
        return f"Invalid amount for transaction {transaction.id}"
    if not transaction.description or not transaction.description.strip():
        return f"Missing description for transaction {transaction.id}"
    return ""


def validate_transactions(
    transactions: Sequence[TransactionRecord],
    rejected_rows: Sequence[str] = (),
) -> ValidationReport:
    """
    Validate materialized transactions.

    Rows rejected during parsing never became transactions; they are carried
    into the report as errors so the statement is not reported clean.
    """
    report = ValidationReport(total_transactions=len(transactions))
    report.errors.extend(rejected_rows)
    for transaction in transactions:
        error = check_transaction(transaction)
        if error:
            report.errors.append(error)
        else:
            report.valid_transactions += 1
    return report
