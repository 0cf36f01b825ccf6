"""
Risk scoring.

RiskAnalyzer calls an external scorer through a circuit breaker and falls
back to the rule tables below when the scorer is missing, open or failing.
Fraud pattern detection always runs locally.

Statement rules (score is the sum):
    more than 3 NSF / insufficient-funds transactions   +30
    average absolute amount above 5000                   +20
    fewer than 5 transactions                            +15

Transaction rules:
    absolute amount above 10000                          +30
    "cash" or "withdraw" in description                  +15
    "nsf" or "fee" in description                        +25

Fraud patterns:
    round amounts (multiple of 100, >= 1000) in more than 30% of transactions  +25
    three transactions within 5 minutes                                       +40
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from core.errors.exceptions import CircuitOpenError
from core.logging import get_logger, log_exception
from core.resilience import RISK_SCORER_CIRCUIT_CONFIG, CircuitBreaker
from statement_pipeline.metrics import update_circuit_breaker_state
from statement_pipeline.schemas.records import TransactionRecord

logger = get_logger(__name__)

HIGH_RISK_THRESHOLD = 50
MEDIUM_RISK_THRESHOLD = 25
RAPID_WINDOW = timedelta(minutes=5)


def risk_level(score: float) -> str:
    if score > HIGH_RISK_THRESHOLD:
        return "HIGH"
    if score > MEDIUM_RISK_THRESHOLD:
        return "MEDIUM"
    return "LOW"


@dataclass
class RiskAssessment:
    score: float
    level: str
    factors: List[str] = field(default_factory=list)
    source: str = "scorer"


@dataclass
class FraudAnalysis:
    score: float
    level: str
    patterns: List[Dict[str, Any]] = field(default_factory=list)
    transactions_analyzed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fraud_risk_score": self.score,
            "risk_level": self.level,
            "suspicious_patterns": list(self.patterns),
            "transactions_analyzed": self.transactions_analyzed,
        }


@runtime_checkable
class RiskScorer(Protocol):
    """External risk scoring service."""

    async def score_statement(
        self, transactions: Sequence[TransactionRecord], opening_balance: Optional[float]
    ) -> RiskAssessment:
        ...

    async def score_transaction(
        self, transaction: TransactionRecord, related: Sequence[TransactionRecord]
    ) -> RiskAssessment:
        ...


def _mentions(transaction: TransactionRecord, *words: str) -> bool:
    text = (transaction.description or "").lower()
    return any(w in text for w in words)


def score_statement_rules(transactions: Sequence[TransactionRecord]) -> RiskAssessment:
    count = len(transactions)
    nsf_count = sum(1 for t in transactions if _mentions(t, "nsf", "insufficient"))
    avg_amount = sum(abs(t.amount) for t in transactions) / count if count else 0.0

    score = 0
    if nsf_count > 3:
        score += 30
    if avg_amount > 5000:
        score += 20
    if count < 5:
        score += 15

    factors = []
    if nsf_count > 0:
        factors.append(f"{nsf_count} NSF transactions")
    if avg_amount > 5000:
        factors.append("High average transaction amount")
    if count < 5:
        factors.append("Low transaction volume")
    return RiskAssessment(score, risk_level(score), factors, source="fallback")


def score_transaction_rules(transaction: TransactionRecord) -> RiskAssessment:
    score = 0
    factors = []
    if abs(transaction.amount) > 10000:
        score += 30
        factors.append("High transaction amount")
    if _mentions(transaction, "cash", "withdraw"):
        score += 15
        factors.append("Cash transaction")
    if _mentions(transaction, "nsf", "fee"):
        score += 25
        factors.append("NSF or fee transaction")
    return RiskAssessment(score, risk_level(score), factors, source="fallback")


def find_rapid_groups(transactions: Sequence[TransactionRecord]) -> List[List[str]]:
    """Ids of every run of three consecutive transactions inside RAPID_WINDOW."""
    dated = sorted((t for t in transactions if t.date is not None), key=lambda t: t.date)
    groups = []
    for i in range(len(dated) - 2):
        if dated[i + 2].date - dated[i].date < RAPID_WINDOW:
            groups.append([t.id for t in dated[i : i + 3]])
    return groups


def detect_fraud_patterns(transactions: Sequence[TransactionRecord]) -> FraudAnalysis:
    patterns: List[Dict[str, Any]] = []
    score = 0

    round_numbers = [
        t for t in transactions if abs(t.amount) >= 1000 and abs(t.amount) % 100 == 0
    ]
    if transactions and len(round_numbers) > len(transactions) * 0.3:
        score += 25
        patterns.append(
            {
                "type": "ROUND_NUMBER_PATTERN",
                "severity": "MEDIUM",
                "count": len(round_numbers),
                "description": "High frequency of round number transactions",
            }
        )

    rapid = find_rapid_groups(transactions)
    if rapid:
        score += 40
        patterns.append(
            {
                "type": "RAPID_TRANSACTIONS",
                "severity": "HIGH",
                "count": len(rapid),
                "description": "Multiple transactions in short time period",
            }
        )

    return FraudAnalysis(score, risk_level(score), patterns, len(transactions))


class RiskAnalyzer:
    """
    Scores statements and transactions.

    Args:
        scorer: External scorer, or None to always use the rule tables
        circuit_breaker: Breaker guarding the scorer
    """

    def __init__(
        self,
        scorer: Optional[RiskScorer] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.scorer = scorer
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            "risk_scorer",
            RISK_SCORER_CIRCUIT_CONFIG,
            on_state_change=lambda old, new: update_circuit_breaker_state(
                "risk_scorer", new.value
            ),
        )

    async def analyze_statement(
        self,
        transactions: Sequence[TransactionRecord],
        opening_balance: Optional[float] = None,
    ) -> RiskAssessment:
        if self.scorer is None:
            return score_statement_rules(transactions)
        try:
            return await self.circuit_breaker.call_async(
                lambda: self.scorer.score_statement(transactions, opening_balance)
            )
        except CircuitOpenError:
            return score_statement_rules(transactions)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Risk scorer failed, using fallback rules",
                level=logging.WARNING,
                include_traceback=False,
            )
            return score_statement_rules(transactions)

    async def analyze_transaction(
        self,
        transaction: TransactionRecord,
        related: Sequence[TransactionRecord] = (),
    ) -> RiskAssessment:
        if self.scorer is None:
            return score_transaction_rules(transaction)
        try:
            return await self.circuit_breaker.call_async(
                lambda: self.scorer.score_transaction(transaction, related)
            )
        except CircuitOpenError:
            return score_transaction_rules(transaction)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Risk scorer failed, using fallback rules",
                level=logging.WARNING,
                include_traceback=False,
                transaction_id=transaction.id,
            )
            return score_transaction_rules(transaction)

    def detect_fraud(self, transactions: Sequence[TransactionRecord]) -> FraudAnalysis:
        return detect_fraud_patterns(transactions)
