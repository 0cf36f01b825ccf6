"""
Record store schemas.

Statement and transaction documents as the workers read and write them.
Each statement carries a processing object with one sub-record per stage;
every worker moves only its own stage from PROCESSING to COMPLETED or FAILED.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StageStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProcessingStatus(str, Enum):
    """Overall outcome of a statement's pipeline run."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_WARNINGS = "COMPLETED_WITH_WARNINGS"
    FAILED = "FAILED"


class Stage(str, Enum):
    UPLOAD = "upload"
    PARSING = "parsing"
    EXTRACTION = "extraction"
    VALIDATION = "validation"
    CATEGORIZATION = "categorization"
    RISK_ANALYSIS = "risk_analysis"
    FINALIZE = "finalize"


# Order in which a fully successful run completes its stages
STAGE_ORDER: List[Stage] = [
    Stage.UPLOAD,
    Stage.PARSING,
    Stage.EXTRACTION,
    Stage.VALIDATION,
    Stage.CATEGORIZATION,
    Stage.RISK_ANALYSIS,
    Stage.FINALIZE,
]


class TransactionType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class StageRecord(BaseModel):
    """Status of one stage of one statement.

    lease_token and lease_expires_at identify the delivery currently working
    on the stage; see RecordStore.claim_stage.
    """

    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    lease_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    attempts: int = 0


class FinalStats(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_transactions: int = 0
    categorized_transactions: int = 0
    categorization_rate: float = 0.0
    total_amount: float = 0.0
    processing_time_ms: float = 0.0


class StatementProcessing(BaseModel):
    status: ProcessingStatus = ProcessingStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    upload: StageRecord = Field(default_factory=StageRecord)
    parsing: StageRecord = Field(default_factory=StageRecord)
    extraction: StageRecord = Field(default_factory=StageRecord)
    validation: StageRecord = Field(default_factory=StageRecord)
    categorization: StageRecord = Field(default_factory=StageRecord)
    risk_analysis: StageRecord = Field(default_factory=StageRecord)
    finalize: StageRecord = Field(default_factory=StageRecord)

    final_stats: Optional[FinalStats] = None
    warnings: List[str] = Field(default_factory=list)

    def stage(self, stage: Stage) -> StageRecord:
        return getattr(self, stage.value)


class StatementRecord(BaseModel):
    """A processed (or in-flight) bank statement."""

    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    file_path: Optional[str] = None
    # Bumped on every write; writers must present the version they read
    version: int = 0
    processing: StatementProcessing = Field(default_factory=StatementProcessing)

    transaction_count: int = 0
    file_info: Dict[str, Any] = Field(default_factory=dict)
    opening_balance: Optional[float] = None

    risk_score: Optional[float] = None
    risk_level: Optional[str] = None
    risk_factors: List[str] = Field(default_factory=list)
    fraud_analysis: Optional[Dict[str, Any]] = None

    created_at: datetime = Field(default_factory=utc_now)


class ParsedTransaction(BaseModel):
    """Transaction candidate produced by the statement parser.

    Travels inside EXTRACT_TRANSACTIONS payloads, hence the camelCase aliases.
    date is None when the source row had no usable date; description may be
    empty. Validation flags both.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    line_number: int = Field(..., ge=1)
    date: Optional[datetime] = None
    description: str = ""
    amount: float
    balance: Optional[float] = None


class TransactionRecord(BaseModel):
    """A materialized transaction belonging to one statement."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., min_length=1)
    statement_id: str
    user_id: str
    date: Optional[datetime] = None
    description: str = ""
    amount: float
    type: TransactionType
    balance: Optional[float] = None
    reference_number: Optional[str] = None

    category: Optional[str] = None
    subcategory: Optional[str] = None
    risk_assessment: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utc_now)
