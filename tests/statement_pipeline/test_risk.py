"""Tests for risk scoring rules and fraud pattern detection."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.errors.exceptions import ConnectionError
from statement_pipeline.schemas.records import TransactionRecord, TransactionType
from statement_pipeline.services.risk import (
    RiskAnalyzer,
    RiskAssessment,
    detect_fraud_patterns,
    risk_level,
    score_statement_rules,
    score_transaction_rules,
)

BASE = datetime(2024, 1, 2, 9, 0)


def make_transaction(index, amount=-25.0, description="Purchase", date=None):
    return TransactionRecord(
        id=f"st-1-{index}",
        statement_id="st-1",
        user_id="user-1",
        date=date or BASE + timedelta(days=index),
        description=description,
        amount=amount,
        type=TransactionType.DEBIT if amount < 0 else TransactionType.CREDIT,
    )


class TestRiskLevel:
    @pytest.mark.parametrize(
        "score, level", [(0, "LOW"), (25, "LOW"), (26, "MEDIUM"), (50, "MEDIUM"), (51, "HIGH")]
    )
    def test_thresholds(self, score, level):
        assert risk_level(score) == level


class TestStatementRules:
    def test_small_clean_statement(self):
        assessment = score_statement_rules([make_transaction(i) for i in range(3)])

        assert assessment.score == 15
        assert assessment.level == "LOW"
        assert assessment.factors == ["Low transaction volume"]
        assert assessment.source == "fallback"

    def test_nsf_and_large_amounts(self):
        transactions = [
            make_transaction(i, amount=-6000.0, description="NSF returned item") for i in range(4)
        ]

        assessment = score_statement_rules(transactions)

        assert assessment.score == 65
        assert assessment.level == "HIGH"
        assert assessment.factors == [
            "4 NSF transactions",
            "High average transaction amount",
            "Low transaction volume",
        ]

    def test_busy_statement_scores_zero(self):
        assert score_statement_rules([make_transaction(i) for i in range(10)]).score == 0


class TestTransactionRules:
    def test_large_cash_fee(self):
        assessment = score_transaction_rules(
            make_transaction(0, amount=-12000.0, description="Cash withdrawal fee")
        )

        assert assessment.score == 70
        assert assessment.level == "HIGH"
        assert assessment.factors == [
            "High transaction amount",
            "Cash transaction",
            "NSF or fee transaction",
        ]

    def test_ordinary_purchase(self):
        assert score_transaction_rules(make_transaction(0)).score == 0


class TestFraudPatterns:
    def test_round_numbers(self):
        transactions = [make_transaction(i, amount=-2000.0) for i in range(2)] + [
            make_transaction(i, amount=-13.37) for i in range(2, 5)
        ]

        analysis = detect_fraud_patterns(transactions)

        assert analysis.score == 25
        assert [p["type"] for p in analysis.patterns] == ["ROUND_NUMBER_PATTERN"]
        assert analysis.patterns[0]["count"] == 2
        assert analysis.transactions_analyzed == 5

    def test_rapid_transactions(self):
        transactions = [
            make_transaction(i, date=BASE + timedelta(minutes=i)) for i in range(3)
        ]

        analysis = detect_fraud_patterns(transactions)

        assert analysis.score == 40
        assert analysis.patterns[0]["type"] == "RAPID_TRANSACTIONS"
        assert analysis.level == "MEDIUM"

    def test_both_patterns(self):
        transactions = [
            make_transaction(i, amount=-1000.0, date=BASE + timedelta(minutes=i))
            for i in range(3)
        ]

        analysis = detect_fraud_patterns(transactions)

        assert analysis.score == 65
        assert analysis.level == "HIGH"
        assert analysis.to_dict()["fraud_risk_score"] == 65

    def test_undated_transactions_are_ignored_for_rapid_check(self):
        transactions = [make_transaction(i) for i in range(3)]
        for t in transactions:
            t.date = None

        assert detect_fraud_patterns(transactions).patterns == []

    def test_no_transactions(self):
        analysis = detect_fraud_patterns([])

        assert analysis.score == 0
        assert analysis.patterns == []


@pytest.mark.asyncio
class TestRiskAnalyzer:
    async def test_scorer_result_is_used(self):
        scorer = MagicMock()
        scorer.score_statement = AsyncMock(return_value=RiskAssessment(88, "HIGH", ["model"]))

        assessment = await RiskAnalyzer(scorer).analyze_statement([make_transaction(0)], 100.0)

        assert assessment.score == 88
        scorer.score_statement.assert_awaited_once()

    async def test_scorer_failure_uses_rules(self):
        scorer = MagicMock()
        scorer.score_transaction = AsyncMock(side_effect=ConnectionError("down"))

        assessment = await RiskAnalyzer(scorer).analyze_transaction(
            make_transaction(0, description="ATM cash")
        )

        assert assessment.score == 15
        assert assessment.source == "fallback"
