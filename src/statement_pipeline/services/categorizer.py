"""
Transaction categorization.

Wraps an external classifier (cache-first, so results report source
"cache" on a hit) behind a circuit breaker. When no classifier is
configured or the circuit is open, transactions are classified by local
keyword rules; when the classifier raises, the same rules are used with a
lower confidence.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from core.errors.exceptions import CircuitOpenError
from core.logging import get_logger, log_exception, log_with_context
from core.resilience import CLASSIFIER_CIRCUIT_CONFIG, CircuitBreaker
from statement_pipeline.metrics import update_circuit_breaker_state

logger = get_logger(__name__)

DEFAULT_SUBCATEGORY = "General"
MODEL_VERSION = "1.0"

# Ordered; first matching rule wins
_KEYWORD_RULES = (
    ("GROCERIES", ("grocery", "supermarket", "walmart", "target")),
    ("GAS", ("gas", "fuel", "shell", "exxon")),
    ("DINING", ("restaurant", "food", "dining", "cafe")),
    ("BANK_FEES", ("bank", "fee", "charge")),
)
_INCOME_KEYWORDS = ("deposit", "salary", "payroll")
_INCOME_AMOUNT = 1000
_TRAILING_RULES = (
    ("TRANSFER", ("transfer", "withdrawal")),
    ("BILLS", ("payment", "bill")),
)


@runtime_checkable
class CategorizableTransaction(Protocol):
    id: Optional[str]
    description: str
    amount: float


@dataclass
class Classification:
    category: str
    subcategory: str = DEFAULT_SUBCATEGORY
    confidence: float = 0.0
    source: str = "classifier"
    model_version: str = MODEL_VERSION

    @property
    def is_cache_hit(self) -> bool:
        return self.source == "cache"


@dataclass
class BatchClassification:
    results: List[Classification] = field(default_factory=list)
    statistics: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Classifier(Protocol):
    """External categorization service."""

    async def classify(
        self, transaction: CategorizableTransaction, force: bool = False
    ) -> Classification:
        ...

    async def classify_batch(
        self, transactions: Sequence[CategorizableTransaction], batch_size: int = 10
    ) -> BatchClassification:
        ...


def fallback_category(description: Optional[str], amount: Optional[float]) -> str:
    """Rule-based category from description keywords and amount."""
    if not description:
        return "OTHER"
    text = description.lower()
    magnitude = abs(amount or 0)

    for category, keywords in _KEYWORD_RULES:
        if any(k in text for k in keywords):
            return category
    if any(k in text for k in _INCOME_KEYWORDS) or magnitude > _INCOME_AMOUNT:
        return "INCOME"
    for category, keywords in _TRAILING_RULES:
        if any(k in text for k in keywords):
            return category
    return "OTHER"


def _fallback(
    transaction: CategorizableTransaction, confidence: float, source: str
) -> Classification:
    return Classification(
        category=fallback_category(transaction.description, transaction.amount),
        confidence=confidence,
        source=source,
    )


class TransactionCategorizer:
    """
    Categorizes transactions via the classifier, falling back to keyword rules.

    Args:
        classifier: External classifier, or None to always use the rules
        circuit_breaker: Breaker guarding the classifier
    """

    def __init__(
        self,
        classifier: Optional[Classifier] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.classifier = classifier
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            "classifier",
            CLASSIFIER_CIRCUIT_CONFIG,
            on_state_change=lambda old, new: update_circuit_breaker_state(
                "classifier", new.value
            ),
        )

    @property
    def available(self) -> bool:
        return self.classifier is not None

    async def categorize(
        self, transaction: CategorizableTransaction, force: bool = False
    ) -> Classification:
        if self.classifier is None:
            return _fallback(transaction, 0.5, "fallback")
        try:
            return await self.circuit_breaker.call_async(
                lambda: self.classifier.classify(transaction, force=force)
            )
        except CircuitOpenError:
            logger.debug("Classifier circuit open, using fallback rules")
            return _fallback(transaction, 0.5, "fallback")
        except Exception as e:
            log_exception(
                logger,
                e,
                "Classifier failed, using fallback rules",
                level=logging.WARNING,
                include_traceback=False,
                transaction_id=transaction.id,
            )
            return _fallback(transaction, 0.3, "fallback_error")

    async def categorize_batch(
        self, transactions: Sequence[CategorizableTransaction], batch_size: int = 10
    ) -> List[Classification]:
        """Classify a batch; results align with the input order."""
        if not transactions:
            return []
        if self.classifier is None:
            return [_fallback(t, 0.5, "fallback") for t in transactions]
        try:
            batch = await self.circuit_breaker.call_async(
                lambda: self.classifier.classify_batch(transactions, batch_size=batch_size)
            )
        except CircuitOpenError:
            logger.debug("Classifier circuit open, using fallback rules for batch")
            return [_fallback(t, 0.5, "fallback") for t in transactions]
        except Exception as e:
            log_exception(
                logger,
                e,
                "Batch classification failed, using fallback rules",
                level=logging.WARNING,
                include_traceback=False,
                batch_size=len(transactions),
            )
            return [_fallback(t, 0.3, "fallback_error") for t in transactions]

        if len(batch.results) != len(transactions):
            log_with_context(
                logger,
                logging.WARNING,
                "Classifier returned a mismatched batch, using fallback rules",
                expected=len(transactions),
                received=len(batch.results),
            )
            return [_fallback(t, 0.3, "fallback_error") for t in transactions]
        return list(batch.results)

    async def recategorize(
        self, transaction: CategorizableTransaction, new_category: Optional[str] = None
    ) -> Classification:
        """Force a fresh classification; an explicit new_category overrides it."""
        if self.classifier is None:
            result = _fallback(transaction, 0.5, "manual_fallback")
        else:
            try:
                result = await self.circuit_breaker.call_async(
                    lambda: self.classifier.classify(transaction, force=True)
                )
            except CircuitOpenError:
                result = _fallback(transaction, 0.5, "manual_fallback")
            except Exception as e:
                log_exception(
                    logger,
                    e,
                    "Classifier failed during recategorization, using fallback rules",
                    level=logging.WARNING,
                    include_traceback=False,
                    transaction_id=transaction.id,
                )
                result = _fallback(transaction, 0.3, "manual_fallback_error")
        if new_category:
            result.category = new_category
        return result
