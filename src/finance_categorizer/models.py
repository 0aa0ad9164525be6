from datetime import date, datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def clamp_confidence(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, float(value)))


class CategorizationMethod(str, Enum):
    RULE = "rule"
    PATTERN = "pattern"
    SIMILARITY = "similarity"
    LLM_BATCH = "llm-batch"
    MANUAL = "manual"


class CategorizationState(str, Enum):
    RULE = "RULE"
    PATTERN = "PATTERN"
    SIMILARITY = "SIMILARITY"
    LLM_QUEUED = "LLM_QUEUED"
    DONE = "DONE"


class SimilarityMatch(BaseModel):
    transaction_id: str
    category_id: int
    similarity: float
    description: str | None = None
    merchant_name: str | None = None
    amount: float = 0.0


class RuleMatch(BaseModel):
    rule_id: str
    field: str
    operator: str
    value: str
    confidence: float
    priority: int


class CategorizationMetadata(BaseModel):
    confidence_score: float | None = None
    method: CategorizationMethod | None = None
    user_corrected: bool = False
    similarity_matches: list[SimilarityMatch] = Field(default_factory=list)
    rule_matches: list[RuleMatch] = Field(default_factory=list)
    processing_time_ms: float | None = None
    cost_estimate: float | None = None
    llm_batch_id: str | None = None
    feedback_id: str | None = None
    correction_date: datetime | None = None
    needs_review: bool = False


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    amount: float
    date: datetime
    merchant_name: str | None = None
    description: str | None = None
    account_name: str | None = None
    category_id: int | None = None
    metadata: CategorizationMetadata | None = None

    @property
    def user_corrected(self) -> bool:
        return bool(self.metadata and self.metadata.user_corrected)


class Category(BaseModel):
    id: int
    name: str
    organization_id: str | None = None
    parent_id: int | None = None
    color: str | None = None
    icon: str | None = None


class CategorizationResult(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    category_id: int | None = None
    category_name: str | None = None
    confidence: float = 0.0  # 0.0 to 1.0
    method: CategorizationMethod
    processing_time_ms: float = 0.0
    cost_estimate: float = 0.0
    explanation: str = ""
    metadata: CategorizationMetadata = Field(default_factory=CategorizationMetadata)
    low_confidence: bool = False
    error: str | None = None
    retryable: bool = False

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return clamp_confidence(value)

    @classmethod
    def empty(cls, method: CategorizationMethod, explanation: str, **kwargs) -> "CategorizationResult":
        return cls(category_id=None, confidence=0.0, method=method, explanation=explanation, **kwargs)


class RuleField(str, Enum):
    DESCRIPTION = "description"
    MERCHANT = "merchant"
    ACCOUNT = "account"
    AMOUNT = "amount"


class RuleOperator(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class Rule(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    category_id: int
    field: RuleField
    operator: RuleOperator
    value: str
    case_sensitive: bool = False
    is_regex: bool = False
    confidence: float = 0.9
    priority: int = 0
    usage_count: int = 0
    success_rate: float = 1.0
    feedback_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: datetime | None = None


class RuleTestResult(BaseModel):
    rule: Rule
    matched_transactions: int
    accuracy_rate: float
    examples: list[Transaction] = Field(default_factory=list)


class PatternCacheEntry(BaseModel):
    organization_id: str
    merchant_pattern: str
    category_id: int
    confidence: float
    usage_count: int = 1
    last_used_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class SimilarPattern(BaseModel):
    merchant_pattern: str
    category_id: int
    confidence: float
    similarity: float
    usage_count: int = 0


class BudgetSettings(BaseModel):
    organization_id: str
    daily_budget: float = 5.0
    monthly_budget: float = 50.0
    alert_thresholds: list[float] = Field(default_factory=lambda: [0.5, 0.8, 0.95])
    is_enabled: bool = True


class CostTracker(BaseModel):
    organization_id: str
    daily_budget: float = 5.0
    monthly_budget: float = 50.0
    current_spend: float = 0.0
    monthly_spend: float = 0.0
    transaction_count: int = 0
    avg_cost_per_transaction: float = 0.0
    period_day: date | None = None
    period_month: str | None = None


class BudgetAlert(BaseModel):
    organization_id: str
    alert_type: str  # "daily", "monthly"
    threshold: float
    current_spend: float
    budget_limit: float
    percentage: float
    message: str
    severity: str  # "info", "warning", "critical"


class LLMModel(BaseModel):
    name: str
    cost_per_1k: float
    max_tokens: int
    accuracy: float
    is_default: bool = False
    provider: str = "openai"


DEFAULT_LLM_MODELS: tuple[LLMModel, ...] = (
    LLMModel(
        name="gpt-4o-mini",
        cost_per_1k=0.00015,
        max_tokens=128000,
        accuracy=0.92,
        is_default=True,
        provider="openai",
    ),
    LLMModel(
        name="claude-3-haiku-20240307",
        cost_per_1k=0.00025,
        max_tokens=200000,
        accuracy=0.90,
        provider="openrouter",
    ),
)


class LLMBatch(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    transaction_count: int
    input_tokens: int
    output_tokens: int
    total_cost: float
    model: str
    success_rate: float | None = None
    avg_confidence: float | None = None
    processing_time_ms: float | None = None
    created_at: datetime = Field(default_factory=utcnow)


class LLMItemResult(BaseModel):
    """One transaction's entry after parsing an LLM batch response."""

    transaction_id: str
    category_id: int | None = None
    category_name: str | None = None
    confidence: float = 0.0
    reasoning: str = ""
    success: bool = False
    error: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return clamp_confidence(value)


class LLMBatchResponse(BaseModel):
    results: list[LLMItemResult]
    input_tokens: int
    output_tokens: int
    model: str
    processing_time_ms: float = 0.0


class FeedbackType(str, Enum):
    CORRECTION = "correction"
    CONFIRMATION = "confirmation"
    REJECTION = "rejection"


class CategorizationFeedback(BaseModel):
    id: str = Field(default_factory=new_id)
    transaction_id: str
    organization_id: str
    user_id: str | None = None
    old_category_id: int | None = None
    new_category_id: int
    feedback_type: FeedbackType = FeedbackType.CORRECTION
    confidence_before: float | None = None
    method_used: CategorizationMethod | None = None
    created_at: datetime = Field(default_factory=utcnow)


class FeedbackStats(BaseModel):
    total_feedback: int = 0
    corrections: int = 0
    confirmations: int = 0
    rejections: int = 0
    avg_confidence_before: float | None = None


class CategoryCorrection(BaseModel):
    from_category_id: int | None
    to_category_id: int
    count: int
    avg_confidence: float | None = None


class FeedbackAnalysis(BaseModel):
    organization_id: str
    total_feedback: int
    correction_rate: float
    confirmation_rate: float
    rejection_rate: float
    method_accuracy: dict[str, float] = Field(default_factory=dict)
    common_corrections: list[CategoryCorrection] = Field(default_factory=list)


class OrganizationSettings(BaseModel):
    organization_id: str
    confidence_threshold: float | None = None
    model_strategy: str | None = None


class DateRange(BaseModel):
    start_date: datetime
    end_date: datetime


class BatchCategorizationRequest(BaseModel):
    organization_id: str
    transaction_ids: list[str] | None = None
    date_range: DateRange | None = None
    force_recategorize: bool = False
    max_cost: float = 0.0  # 0 disables the per-request cap
    confidence_threshold: float | None = None


class OutcomeStatus(str, Enum):
    CATEGORIZED = "categorized"
    LOW_CONFIDENCE = "low_confidence"
    SKIPPED = "skipped"
    QUEUED = "queued"
    SKIPPED_BY_BUDGET = "skipped_by_budget"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionOutcome(BaseModel):
    transaction_id: str
    status: OutcomeStatus
    state: CategorizationState = CategorizationState.DONE
    result: CategorizationResult | None = None
    error: str | None = None
    retryable: bool = False


class BatchSummary(BaseModel):
    organization_id: str
    total: int = 0
    categorized: int = 0
    skipped: int = 0
    low_confidence: int = 0
    skipped_by_budget: int = 0
    rate_limited: int = 0
    failed: int = 0
    cancelled: int = 0
    cost: float = 0.0
    llm_calls: int = 0
    outcomes: list[TransactionOutcome] = Field(default_factory=list)


class CostEstimate(BaseModel):
    transaction_count: int
    estimated_cost: float
    model: str
