"""
Statement file parsing and transaction extraction.

Reads simple CSV statements, one transaction per line:

    date,description,amount[,balance]

The first non-empty line is skipped as a header when it mentions "Date" or
"Transaction" and carries no numeric amount; later lines are always data.
Rows without a finite numeric amount are rejected and reported; rows with a
missing date or an empty description are kept so validation can flag them.
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from statement_pipeline.exceptions import StageFailedError
from statement_pipeline.schemas.records import (
    ParsedTransaction,
    Stage,
    TransactionRecord,
    TransactionType,
)

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%Y/%m/%d", "%d-%b-%Y")

HEADER_MARKERS = ("Date", "Transaction")


@dataclass
class ParseResult:
    """Output of parsing one statement file."""

    transactions: List[ParsedTransaction] = field(default_factory=list)
    line_count: int = 0
    rejected_rows: List[str] = field(default_factory=list)
    file_size: int = 0

    @property
    def format(self) -> str:
        return "csv" if self.transactions else "unknown"

    @property
    def date_range(self) -> Dict[str, Optional[str]]:
        dates = [t.date for t in self.transactions if t.date is not None]
        if not dates:
            return {"start": None, "end": None}
        return {"start": min(dates).isoformat(), "end": max(dates).isoformat()}

    def metadata(self) -> Dict[str, object]:
        return {
            "line_count": self.line_count,
            "transaction_count": len(self.transactions),
            "detected_format": self.format,
            "date_range": self.date_range,
            "rejected_rows": list(self.rejected_rows),
            "parse_method": "simple_csv",
        }


def parse_date(value: str) -> Optional[datetime]:
    """Parse a statement date. Returns None when the value is empty or unrecognized."""
    value = value.strip()
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def parse_amount(value: str) -> Optional[float]:
    """Parse an amount; None unless it is a finite number."""
    try:
        amount = float(value.strip().replace("$", ""))
    except ValueError:
        return None
    return amount if math.isfinite(amount) else None


def _is_header(line: str, parts: Sequence[str]) -> bool:
    if not any(marker in line for marker in HEADER_MARKERS):
        return False
    return len(parts) < 3 or parse_amount(parts[2]) is None


def parse_statement_text(text: str) -> ParseResult:
    """Parse statement content already in memory."""
    result = ParseResult()
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        result.line_count += 1
        parts = [p.strip().replace('"', "") for p in line.split(",")]
        if result.line_count == 1 and _is_header(line, parts):
            continue

        if len(parts) < 3:
            result.rejected_rows.append(
                f"Line {line_number}: expected at least 3 fields, got {len(parts)}"
            )
            continue

        amount = parse_amount(parts[2])
        if amount is None:
            result.rejected_rows.append(f"Line {line_number}: invalid amount '{parts[2]}'")
            continue

        balance = parse_amount(parts[3]) if len(parts) > 3 and parts[3] else None
        result.transactions.append(
            ParsedTransaction(
                line_number=line_number,
                date=parse_date(parts[0]),
                description=parts[1],
                amount=amount,
                balance=balance,
            )
        )
    return result


def _read_file(path: Path) -> ParseResult:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise StageFailedError(Stage.PARSING.value, f"Statement file not found: {path}", cause=e)
    except UnicodeDecodeError as e:
        raise StageFailedError(
            Stage.PARSING.value, f"Statement file is not UTF-8 text: {path}", cause=e
        )
    result = parse_statement_text(content)
    result.file_size = path.stat().st_size
    return result


async def parse_statement_file(file_path: str) -> ParseResult:
    """
    Parse a statement file without blocking the event loop.

    Raises:
        StageFailedError: File is missing or not text
        OSError: Other read failures (transient)
    """
    return await asyncio.to_thread(_read_file, Path(file_path))


def transaction_id(statement_id: str, index: int) -> str:
    """Deterministic id, so re-running extraction never duplicates records."""
    return f"{statement_id}-{index}"


def to_transaction_records(
    statement_id: str,
    user_id: str,
    parsed: Sequence[ParsedTransaction],
) -> List[TransactionRecord]:
    records = []
    for index, item in enumerate(parsed):
        tx_id = transaction_id(statement_id, index)
        records.append(
            TransactionRecord(
                id=tx_id,
                statement_id=statement_id,
                user_id=user_id,
                date=item.date,
                description=item.description,
                amount=item.amount,
                type=TransactionType.CREDIT if item.amount > 0 else TransactionType.DEBIT,
                balance=item.balance,
                reference_number=tx_id,
                metadata={"original_index": index, "line_number": item.line_number},
            )
        )
    return records
