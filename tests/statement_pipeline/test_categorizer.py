"""Tests for transaction categorization and its fallback rules."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from core.errors.exceptions import ConnectionError
from core.resilience import CircuitBreaker, CircuitBreakerConfig
from statement_pipeline.schemas.jobs import TransactionInput
from statement_pipeline.services.categorizer import (
    BatchClassification,
    Classification,
    TransactionCategorizer,
    fallback_category,
)


def txn(description: str, amount: float = -20.0, tx_id: str = "t-1") -> TransactionInput:
    return TransactionInput(id=tx_id, description=description, amount=amount)


def make_classifier(**methods):
    classifier = MagicMock()
    classifier.classify = methods.get("classify", AsyncMock())
    classifier.classify_batch = methods.get("classify_batch", AsyncMock())
    return classifier


class TestFallbackCategory:
    @pytest.mark.parametrize(
        "description, amount, expected",
        [
            ("WALMART #123", -54.2, "GROCERIES"),
            ("Shell Oil 5521", -40.0, "GAS"),
            ("Corner Cafe", -6.5, "DINING"),
            ("Monthly maintenance fee", -12.0, "BANK_FEES"),
            ("Payroll ACME", 2500.0, "INCOME"),
            ("Wire in", 1500.0, "INCOME"),
            ("Online transfer to savings", -100.0, "TRANSFER"),
            ("Electric bill", -80.0, "BILLS"),
            ("Bookshop", -15.0, "OTHER"),
            ("", -15.0, "OTHER"),
            (None, None, "OTHER"),
        ],
    )
    def test_rules(self, description, amount, expected):
        assert fallback_category(description, amount) == expected

    def test_first_matching_rule_wins(self):
        # "food" (DINING) is checked after "grocery" (GROCERIES)
        assert fallback_category("Grocery and food outlet", -30.0) == "GROCERIES"


@pytest.mark.asyncio
class TestTransactionCategorizer:
    async def test_without_classifier_uses_rules(self):
        categorizer = TransactionCategorizer()

        result = await categorizer.categorize(txn("Walmart"))

        assert not categorizer.available
        assert (result.category, result.confidence, result.source) == ("GROCERIES", 0.5, "fallback")

    async def test_classifier_result_passes_through(self):
        classifier = make_classifier(
            classify=AsyncMock(return_value=Classification("DINING", confidence=0.9, source="cache"))
        )
        categorizer = TransactionCategorizer(classifier)

        result = await categorizer.categorize(txn("Corner Cafe"), force=True)

        assert result.is_cache_hit
        classifier.classify.assert_awaited_once()
        assert classifier.classify.call_args.kwargs["force"] is True

    async def test_classifier_error_falls_back_with_lower_confidence(self):
        classifier = make_classifier(classify=AsyncMock(side_effect=ConnectionError("down")))
        categorizer = TransactionCategorizer(classifier)

        result = await categorizer.categorize(txn("Shell gas"))

        assert (result.category, result.confidence, result.source) == ("GAS", 0.3, "fallback_error")

    async def test_open_circuit_skips_classifier(self):
        breaker = CircuitBreaker("classifier", CircuitBreakerConfig(failure_threshold=1))
        classifier = make_classifier(classify=AsyncMock(side_effect=ConnectionError("down")))
        categorizer = TransactionCategorizer(classifier, circuit_breaker=breaker)

        await categorizer.categorize(txn("Shell gas"))
        result = await categorizer.categorize(txn("Shell gas"))

        assert result.source == "fallback"
        assert classifier.classify.await_count == 1

    async def test_batch_results_align_with_input(self):
        results = [Classification("GAS"), Classification("DINING")]
        classifier = make_classifier(
            classify_batch=AsyncMock(return_value=BatchClassification(results=results))
        )
        categorizer = TransactionCategorizer(classifier)

        out = await categorizer.categorize_batch([txn("a"), txn("b")], batch_size=5)

        assert [r.category for r in out] == ["GAS", "DINING"]
        assert classifier.classify_batch.call_args.kwargs["batch_size"] == 5

    async def test_mismatched_batch_falls_back(self):
        classifier = make_classifier(
            classify_batch=AsyncMock(
                return_value=BatchClassification(results=[Classification("GAS")])
            )
        )
        categorizer = TransactionCategorizer(classifier)

        out = await categorizer.categorize_batch([txn("Walmart"), txn("Bookshop")])

        assert [(r.category, r.source) for r in out] == [
            ("GROCERIES", "fallback_error"),
            ("OTHER", "fallback_error"),
        ]

    async def test_empty_batch(self):
        classifier = make_classifier()

        assert await TransactionCategorizer(classifier).categorize_batch([]) == []
        classifier.classify_batch.assert_not_called()

    async def test_recategorize_override(self):
        categorizer = TransactionCategorizer()

        result = await categorizer.recategorize(txn("Walmart"), new_category="HOUSEHOLD")

        assert result.category == "HOUSEHOLD"
        assert result.source == "manual_fallback"

    async def test_recategorize_forces_classifier(self):
        classifier = make_classifier(classify=AsyncMock(return_value=Classification("BILLS")))

        result = await TransactionCategorizer(classifier).recategorize(txn("Electric"))

        assert result.category == "BILLS"
        assert classifier.classify.call_args.kwargs["force"] is True
