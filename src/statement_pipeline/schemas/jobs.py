"""
Job message schemas.

Every message on a work stream is a job: a ``type`` discriminator, a payload
whose shape is fixed per type, and an optional correlation id threading one
statement's run across stages. Jobs are decoded into the matching model when
they are read, so a handler never touches an untyped mapping.

Wire format is JSON with camelCase keys:

    {"type": "PARSE_STATEMENT_FILE",
     "payload": {"statementId": "st-1", "filePath": "/data/st-1.csv", "userId": "u-9"},
     "correlationId": "1700000000000-0"}
"""

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from statement_pipeline.exceptions import JobDecodeError, UnknownJobTypeError
from statement_pipeline.schemas.records import (
    FinalStats,
    ParsedTransaction,
    ProcessingStatus,
    utc_now,
)


class JobType(str, Enum):
    # Statement processing sub-pipeline
    PROCESS_UPLOADED_STATEMENT = "PROCESS_UPLOADED_STATEMENT"
    PARSE_STATEMENT_FILE = "PARSE_STATEMENT_FILE"
    EXTRACT_TRANSACTIONS = "EXTRACT_TRANSACTIONS"
    VALIDATE_STATEMENT_DATA = "VALIDATE_STATEMENT_DATA"
    FINALIZE_STATEMENT_PROCESSING = "FINALIZE_STATEMENT_PROCESSING"

    # Categorization
    CATEGORIZE_SINGLE_TRANSACTION = "CATEGORIZE_SINGLE_TRANSACTION"
    CATEGORIZE_BATCH_TRANSACTIONS = "CATEGORIZE_BATCH_TRANSACTIONS"
    CATEGORIZE_STATEMENT_TRANSACTIONS = "CATEGORIZE_STATEMENT_TRANSACTIONS"
    RECATEGORIZE_TRANSACTION = "RECATEGORIZE_TRANSACTION"

    # Risk analysis
    ANALYZE_STATEMENT_RISK = "ANALYZE_STATEMENT_RISK"
    ANALYZE_TRANSACTION_RISK = "ANALYZE_TRANSACTION_RISK"
    DETECT_FRAUD_PATTERNS = "DETECT_FRAUD_PATTERNS"

    # Events for downstream consumers (notifications, alerts, audit)
    STATEMENT_PROCESSING_COMPLETED = "STATEMENT_PROCESSING_COMPLETED"
    TRANSACTION_RECATEGORIZED = "TRANSACTION_RECATEGORIZED"
    HIGH_RISK_DETECTED = "HIGH_RISK_DETECTED"
    SUSPICIOUS_TRANSACTION_DETECTED = "SUSPICIOUS_TRANSACTION_DETECTED"
    FRAUD_PATTERNS_DETECTED = "FRAUD_PATTERNS_DETECTED"


# Marker carried in categorization payloads to continue into risk analysis
NEXT_STAGE_ANALYSIS = "ANALYSIS"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TransactionInput(_WireModel):
    """Inline transaction data for categorization jobs without a stored record."""

    id: Optional[str] = None
    date: Optional[datetime] = None
    description: str = ""
    amount: float = 0.0


# =============================================================================
# Payloads
# =============================================================================


class ProcessUploadedStatementPayload(_WireModel):
    statement_id: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    upload_metadata: Dict[str, Any] = Field(default_factory=dict)


class ParseStatementFilePayload(_WireModel):
    statement_id: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


class ExtractTransactionsPayload(_WireModel):
    statement_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    parsed_transactions: List[ParsedTransaction] = Field(default_factory=list)


class ValidateStatementDataPayload(_WireModel):
    statement_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    transaction_ids: List[str] = Field(default_factory=list)


class FinalizeStatementProcessingPayload(_WireModel):
    statement_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    status: ProcessingStatus = ProcessingStatus.COMPLETED
    warnings: List[str] = Field(default_factory=list)

    @field_validator("status")
    @classmethod
    def validate_terminal_status(cls, v: ProcessingStatus) -> ProcessingStatus:
        if v not in (
            ProcessingStatus.COMPLETED,
            ProcessingStatus.COMPLETED_WITH_WARNINGS,
            ProcessingStatus.FAILED,
        ):
            raise ValueError(f"status must be a terminal status, got {v.value}")
        return v


class CategorizeSingleTransactionPayload(_WireModel):
    transaction_id: Optional[str] = None
    transaction_data: Optional[TransactionInput] = None
    statement_id: Optional[str] = None
    force_recategorize: bool = False
    next_stage: Optional[str] = None

    @model_validator(mode="after")
    def require_transaction(self) -> "CategorizeSingleTransactionPayload":
        if not self.transaction_id and self.transaction_data is None:
            raise ValueError("No transaction data provided")
        return self


class CategorizeBatchTransactionsPayload(_WireModel):
    transaction_ids: List[str] = Field(default_factory=list)
    transaction_data: List[TransactionInput] = Field(default_factory=list)
    statement_id: Optional[str] = None
    batch_size: int = Field(default=10, ge=1)
    next_stage: Optional[str] = None

    @model_validator(mode="after")
    def require_source(self) -> "CategorizeBatchTransactionsPayload":
        if not self.transaction_ids and not self.transaction_data and not self.statement_id:
            raise ValueError("No transaction data provided for batch processing")
        return self


class CategorizeStatementTransactionsPayload(_WireModel):
    statement_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    next_stage: Optional[str] = NEXT_STAGE_ANALYSIS


class RecategorizeTransactionPayload(_WireModel):
    transaction_id: str = Field(..., min_length=1)
    new_category: Optional[str] = None
    reason: Optional[str] = None
    user_id: Optional[str] = None


class AnalyzeStatementRiskPayload(_WireModel):
    statement_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    transaction_count: Optional[int] = None
    opening_balance: Optional[float] = None
    # Hand the statement to FINALIZE_STATEMENT_PROCESSING afterwards
    finalize: bool = True


class AnalyzeTransactionRiskPayload(_WireModel):
    transaction_id: str = Field(..., min_length=1)
    statement_id: Optional[str] = None


class DetectFraudPatternsPayload(_WireModel):
    statement_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    transaction_ids: List[str] = Field(default_factory=list)


class StatementProcessingCompletedPayload(_WireModel):
    statement_id: str
    user_id: str
    status: ProcessingStatus
    stats: FinalStats
    warnings: List[str] = Field(default_factory=list)


class TransactionRecategorizedPayload(_WireModel):
    transaction_id: str
    previous_category: Optional[str] = None
    new_category: str
    reason: Optional[str] = None
    user_id: Optional[str] = None


class HighRiskDetectedPayload(_WireModel):
    statement_id: str
    user_id: str
    risk_score: float
    risk_level: str
    risk_factors: List[str] = Field(default_factory=list)
    alert_level: str = "HIGH"


class SuspiciousTransactionDetectedPayload(_WireModel):
    transaction_id: str
    statement_id: Optional[str] = None
    risk_score: float
    risk_factors: List[str] = Field(default_factory=list)
    alert_level: str = "MEDIUM"


class FraudPatternsDetectedPayload(_WireModel):
    statement_id: str
    user_id: Optional[str] = None
    fraud_risk_score: float
    suspicious_patterns: List[Dict[str, Any]] = Field(default_factory=list)
    alert_level: str = "MEDIUM"


# =============================================================================
# Jobs
# =============================================================================


class JobMessage(_WireModel):
    """Fields shared by every job. Subclasses pin ``type`` and ``payload``."""

    correlation_id: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=utc_now)


class ProcessUploadedStatementJob(JobMessage):
    type: Literal["PROCESS_UPLOADED_STATEMENT"] = "PROCESS_UPLOADED_STATEMENT"
    payload: ProcessUploadedStatementPayload


class ParseStatementFileJob(JobMessage):
    type: Literal["PARSE_STATEMENT_FILE"] = "PARSE_STATEMENT_FILE"
    payload: ParseStatementFilePayload


class ExtractTransactionsJob(JobMessage):
    type: Literal["EXTRACT_TRANSACTIONS"] = "EXTRACT_TRANSACTIONS"
    payload: ExtractTransactionsPayload


class ValidateStatementDataJob(JobMessage):
    type: Literal["VALIDATE_STATEMENT_DATA"] = "VALIDATE_STATEMENT_DATA"
    payload: ValidateStatementDataPayload


class FinalizeStatementProcessingJob(JobMessage):
    type: Literal["FINALIZE_STATEMENT_PROCESSING"] = "FINALIZE_STATEMENT_PROCESSING"
    payload: FinalizeStatementProcessingPayload


class CategorizeSingleTransactionJob(JobMessage):
    type: Literal["CATEGORIZE_SINGLE_TRANSACTION"] = "CATEGORIZE_SINGLE_TRANSACTION"
    payload: CategorizeSingleTransactionPayload


class CategorizeBatchTransactionsJob(JobMessage):
    type: Literal["CATEGORIZE_BATCH_TRANSACTIONS"] = "CATEGORIZE_BATCH_TRANSACTIONS"
    payload: CategorizeBatchTransactionsPayload


class CategorizeStatementTransactionsJob(JobMessage):
    type: Literal["CATEGORIZE_STATEMENT_TRANSACTIONS"] = "CATEGORIZE_STATEMENT_TRANSACTIONS"
    payload: CategorizeStatementTransactionsPayload


class RecategorizeTransactionJob(JobMessage):
    type: Literal["RECATEGORIZE_TRANSACTION"] = "RECATEGORIZE_TRANSACTION"
    payload: RecategorizeTransactionPayload


class AnalyzeStatementRiskJob(JobMessage):
    type: Literal["ANALYZE_STATEMENT_RISK"] = "ANALYZE_STATEMENT_RISK"
    payload: AnalyzeStatementRiskPayload


class AnalyzeTransactionRiskJob(JobMessage):
    type: Literal["ANALYZE_TRANSACTION_RISK"] = "ANALYZE_TRANSACTION_RISK"
    payload: AnalyzeTransactionRiskPayload


class DetectFraudPatternsJob(JobMessage):
    type: Literal["DETECT_FRAUD_PATTERNS"] = "DETECT_FRAUD_PATTERNS"
    payload: DetectFraudPatternsPayload


class StatementProcessingCompletedJob(JobMessage):
    type: Literal["STATEMENT_PROCESSING_COMPLETED"] = "STATEMENT_PROCESSING_COMPLETED"
    payload: StatementProcessingCompletedPayload


class TransactionRecategorizedJob(JobMessage):
    type: Literal["TRANSACTION_RECATEGORIZED"] = "TRANSACTION_RECATEGORIZED"
    payload: TransactionRecategorizedPayload


class HighRiskDetectedJob(JobMessage):
    type: Literal["HIGH_RISK_DETECTED"] = "HIGH_RISK_DETECTED"
    payload: HighRiskDetectedPayload


class SuspiciousTransactionDetectedJob(JobMessage):
    type: Literal["SUSPICIOUS_TRANSACTION_DETECTED"] = "SUSPICIOUS_TRANSACTION_DETECTED"
    payload: SuspiciousTransactionDetectedPayload


class FraudPatternsDetectedJob(JobMessage):
    type: Literal["FRAUD_PATTERNS_DETECTED"] = "FRAUD_PATTERNS_DETECTED"
    payload: FraudPatternsDetectedPayload


Job = Annotated[
    Union[
        ProcessUploadedStatementJob,
        ParseStatementFileJob,
        ExtractTransactionsJob,
        ValidateStatementDataJob,
        FinalizeStatementProcessingJob,
        CategorizeSingleTransactionJob,
        CategorizeBatchTransactionsJob,
        CategorizeStatementTransactionsJob,
        RecategorizeTransactionJob,
        AnalyzeStatementRiskJob,
        AnalyzeTransactionRiskJob,
        DetectFraudPatternsJob,
        StatementProcessingCompletedJob,
        TransactionRecategorizedJob,
        HighRiskDetectedJob,
        SuspiciousTransactionDetectedJob,
        FraudPatternsDetectedJob,
    ],
    Field(discriminator="type"),
]

_JOB_ADAPTER: TypeAdapter = TypeAdapter(Job)


class DeadLetterEntry(_WireModel):
    """A job that could not be processed, copied to the dead-letter stream."""

    source_stream: str
    message_id: str
    job_type: Optional[str] = None
    raw: str
    error: str
    delivery_count: int = 1
    failed_at: datetime = Field(default_factory=utc_now)


def encode_job(job: BaseModel) -> bytes:
    """Serialize a job (or dead-letter entry) to its wire form."""
    return job.model_dump_json(by_alias=True).encode("utf-8")


def decode_job(raw: Union[bytes, str, Mapping[str, Any]]) -> JobMessage:
    """
    Decode a wire message into its typed job model.

    Raises:
        UnknownJobTypeError: ``type`` is a string naming no known job
        JobDecodeError: Body is not JSON, has no ``type``, or the payload
            does not match the shape for its type
    """
    if isinstance(raw, Mapping):
        data: Any = dict(raw)
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise JobDecodeError("Message body is not valid JSON", cause=e)

    if not isinstance(data, dict):
        raise JobDecodeError(f"Message body must be an object, got {type(data).__name__}")

    job_type = data.get("type")
    if not isinstance(job_type, str) or not job_type:
        raise JobDecodeError("Message has no job type")

    if job_type not in JobType._value2member_map_:
        raise UnknownJobTypeError(job_type)

    try:
        return _JOB_ADAPTER.validate_python(data)
    except PydanticValidationError as e:
        raise JobDecodeError(
            f"Invalid payload for {job_type}: {e.error_count()} validation error(s)",
            job_type=job_type,
            cause=e,
        )
