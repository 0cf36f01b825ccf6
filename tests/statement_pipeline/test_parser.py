"""Tests for statement file parsing."""

import pytest

from statement_pipeline.exceptions import StageFailedError
from statement_pipeline.schemas.records import ParsedTransaction, TransactionType
from statement_pipeline.services.parser import (
    parse_amount,
    parse_date,
    parse_statement_file,
    parse_statement_text,
    to_transaction_records,
)

SAMPLE = """Date,Description,Amount,Balance
2024-01-02,Walmart Supercenter,-54.20,945.80
01/03/2024,"Payroll Deposit",2500.00,3445.80

2024-01-04,ATM Withdrawal,-200,3245.80
"""


class TestParseHelpers:
    @pytest.mark.parametrize("value", ["2024-01-02", "01/02/2024", "01/02/24", "2024/01/02"])
    def test_parse_date_formats(self, value):
        parsed = parse_date(value)

        assert (parsed.year, parsed.month, parsed.day) == (2024, 1, 2)

    @pytest.mark.parametrize("value", ["", "   ", "yesterday", "2024-13-45"])
    def test_unparseable_dates_are_none(self, value):
        assert parse_date(value) is None

    @pytest.mark.parametrize(
        "value, expected", [("-54.20", -54.2), ("$1,0", None), ("$12", 12.0), ("NaN", None), ("inf", None), ("abc", None)]
    )
    def test_parse_amount(self, value, expected):
        assert parse_amount(value) == expected


class TestParseStatementText:
    def test_parses_rows_and_skips_headers(self):
        result = parse_statement_text(SAMPLE)

        assert [t.description for t in result.transactions] == [
            "Walmart Supercenter",
            "Payroll Deposit",
            "ATM Withdrawal",
        ]
        assert result.line_count == 4
        assert result.rejected_rows == []
        assert result.transactions[1].balance == 3445.80
        assert result.transactions[2].line_number == 5

    def test_data_rows_mentioning_header_words_are_kept(self):
        result = parse_statement_text(
            "Date,Description,Amount\n"
            "2024-01-05,Transaction fee,-3.00\n"
            "2024-01-06,Date night dinner,-64.10\n"
        )

        assert [t.description for t in result.transactions] == [
            "Transaction fee",
            "Date night dinner",
        ]
        assert result.rejected_rows == []

    def test_first_row_with_amount_is_data(self):
        result = parse_statement_text("2024-01-05,Transaction fee,-3.00\n")

        assert [t.amount for t in result.transactions] == [-3.0]

    def test_repeated_header_is_rejected(self):
        result = parse_statement_text(
            "Date,Description,Amount\n2024-01-05,Coffee,-3.00\nDate,Description,Amount\n"
        )

        assert len(result.transactions) == 1
        assert result.rejected_rows == ["Line 3: invalid amount 'Amount'"]

    def test_rejects_non_finite_and_short_rows(self):
        result = parse_statement_text(
            "2024-01-02,Coffee,-3.50\n2024-01-03,Mystery,NaN\njust one field\n"
        )

        assert len(result.transactions) == 1
        assert result.rejected_rows == [
            "Line 2: invalid amount 'NaN'",
            "Line 3: expected at least 3 fields, got 1",
        ]

    def test_keeps_rows_missing_date_or_description(self):
        result = parse_statement_text(",Coffee,-3.50\n2024-01-03,,-8.00\n")

        assert result.transactions[0].date is None
        assert result.transactions[1].description == ""

    def test_metadata(self):
        metadata = parse_statement_text(SAMPLE).metadata()

        assert metadata["transaction_count"] == 3
        assert metadata["detected_format"] == "csv"
        assert metadata["parse_method"] == "simple_csv"
        assert metadata["date_range"]["start"].startswith("2024-01-02")
        assert metadata["date_range"]["end"].startswith("2024-01-04")

    def test_empty_text(self):
        result = parse_statement_text("")

        assert result.transactions == []
        assert result.format == "unknown"
        assert result.date_range == {"start": None, "end": None}


@pytest.mark.asyncio
class TestParseStatementFile:
    async def test_reads_file(self, statement_file):
        result = await parse_statement_file(statement_file(SAMPLE))

        assert len(result.transactions) == 3
        assert result.file_size > 0

    async def test_missing_file_is_a_stage_failure(self, tmp_path):
        with pytest.raises(StageFailedError, match="not found") as exc_info:
            await parse_statement_file(str(tmp_path / "missing.csv"))

        assert exc_info.value.stage == "parsing"
        assert not exc_info.value.is_retryable

    async def test_binary_file_is_a_stage_failure(self, tmp_path):
        path = tmp_path / "statement.pdf"
        path.write_bytes(b"%PDF-\xff\xfe\x00\x81")

        with pytest.raises(StageFailedError, match="not UTF-8"):
            await parse_statement_file(str(path))


class TestToTransactionRecords:
    def test_ids_are_deterministic_and_types_follow_sign(self):
        parsed = [
            ParsedTransaction(line_number=2, description="Salary", amount=2500.0),
            ParsedTransaction(line_number=3, description="Rent", amount=-1200.0),
        ]

        first = to_transaction_records("st-1", "user-1", parsed)
        second = to_transaction_records("st-1", "user-1", parsed)

        assert [r.id for r in first] == ["st-1-0", "st-1-1"]
        assert [r.id for r in second] == [r.id for r in first]
        assert [r.type for r in first] == [TransactionType.CREDIT, TransactionType.DEBIT]
        assert first[1].metadata == {"original_index": 1, "line_number": 3}
        assert first[0].reference_number == "st-1-0"
