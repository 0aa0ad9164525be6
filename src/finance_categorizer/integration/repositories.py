"""
Collaborator interfaces consumed by the categorization engine.

The persistent store, job queue, LLM endpoint and alert delivery live outside the
engine; anything satisfying these protocols can be plugged in. ``integration.memory``
provides in-process implementations.
"""
from datetime import datetime, timedelta
from typing import Protocol

from finance_categorizer.models import (
    BatchCategorizationRequest,
    BudgetAlert,
    BudgetSettings,
    CategorizationFeedback,
    CategorizationMetadata,
    Category,
    CostTracker,
    FeedbackStats,
    LLMBatch,
    LLMBatchResponse,
    LLMModel,
    OrganizationSettings,
    PatternCacheEntry,
    Rule,
    SimilarityMatch,
    SimilarPattern,
    Transaction,
)


class TransactionRepository(Protocol):
    async def get_by_id(self, transaction_id: str) -> Transaction | None: ...

    async def get_by_ids(self, transaction_ids: list[str]) -> list[Transaction]: ...

    async def get_by_date_range(
        self, organization_id: str, start: datetime, end: datetime
    ) -> list[Transaction]: ...

    async def get_uncategorized(self, organization_id: str) -> list[Transaction]: ...

    async def get_recently_categorized(
        self, organization_id: str, since: timedelta
    ) -> list[Transaction]: ...

    async def update_categorization(
        self, transaction_id: str, category_id: int, metadata: CategorizationMetadata
    ) -> None: ...


class RuleRepository(Protocol):
    async def list_rules(self, organization_id: str) -> list[Rule]: ...

    async def create_rule(self, rule: Rule) -> None: ...

    async def update_rule(self, rule: Rule) -> None: ...

    async def delete_rule(self, rule_id: str) -> None: ...

    async def increment_usage(self, rule_id: str) -> None: ...

    async def update_usage(self, rule_id: str, success: bool) -> None: ...


class PatternRepository(Protocol):
    async def list_patterns(self, organization_id: str) -> list[PatternCacheEntry]: ...

    async def get_similar(
        self, organization_id: str, merchant_name: str, threshold: float, limit: int
    ) -> list[SimilarPattern]: ...

    async def upsert_pattern(
        self, organization_id: str, merchant_pattern: str, category_id: int, confidence: float
    ) -> PatternCacheEntry: ...

    async def clear_patterns(self, organization_id: str) -> None: ...


class FeedbackRepository(Protocol):
    async def create_feedback(self, feedback: CategorizationFeedback) -> None: ...

    async def list_feedback(
        self, organization_id: str, limit: int = 100, offset: int = 0
    ) -> list[CategorizationFeedback]: ...

    async def list_feedback_for_transaction(self, transaction_id: str) -> list[CategorizationFeedback]: ...

    async def get_feedback_stats(self, organization_id: str) -> FeedbackStats: ...


class VectorRepository(Protocol):
    async def upsert_embedding(
        self,
        organization_id: str,
        transaction: Transaction,
        category_id: int,
        embedding: list[float],
    ) -> None: ...

    async def search(
        self, organization_id: str, embedding: list[float], threshold: float, limit: int
    ) -> list[SimilarityMatch]: ...

    async def rebuild_index(self, organization_id: str) -> None: ...


class CategoryRepository(Protocol):
    async def list_categories(self, organization_id: str) -> list[Category]: ...


class SettingsRepository(Protocol):
    async def get_organization_settings(self, organization_id: str) -> OrganizationSettings | None: ...


class CostRepository(Protocol):
    async def get_cost_tracker(self, organization_id: str) -> CostTracker | None: ...

    async def update_cost_tracker(self, tracker: CostTracker) -> None: ...

    async def get_budget_settings(self, organization_id: str) -> BudgetSettings | None: ...

    async def update_budget_settings(self, settings: BudgetSettings) -> None: ...

    async def record_cost(
        self, organization_id: str, cost: float, transaction_count: int, metadata: dict
    ) -> None: ...

    async def get_daily_spend(self, organization_id: str) -> float: ...

    async def get_monthly_spend(self, organization_id: str) -> float: ...


class LLMBatchRepository(Protocol):
    async def create_batch(self, batch: LLMBatch) -> None: ...

    async def list_batches(self, organization_id: str, limit: int = 50) -> list[LLMBatch]: ...


class LLMClient(Protocol):
    async def categorize_batch(
        self, transactions: list[Transaction], categories: list[Category], model: LLMModel
    ) -> LLMBatchResponse: ...

    def estimate_tokens(
        self, transactions: list[Transaction], categories: list[Category]
    ) -> tuple[int, int]: ...


class EmbeddingProvider(Protocol):
    dimensions: int

    async def embed(self, text: str) -> list[float]: ...


class AlertSink(Protocol):
    async def send_budget_alert(self, organization_id: str, alert: BudgetAlert) -> None: ...


class JobQueue(Protocol):
    async def enqueue_batch(self, request: BatchCategorizationRequest) -> None: ...
