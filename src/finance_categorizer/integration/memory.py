"""
In-process implementations of the repository protocols.

Used by tests and by embedders that keep everything in one process. Fuzzy merchant
lookup uses rapidfuzz; the vector index is a dense numpy matrix searched with
scikit-learn's cosine similarity.
"""
import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import numpy as np
from rapidfuzz import fuzz, process
from sklearn.metrics.pairwise import cosine_similarity

from finance_categorizer.errors import TransactionNotFoundError
from finance_categorizer.models import (
    BatchCategorizationRequest,
    BudgetAlert,
    BudgetSettings,
    CategorizationFeedback,
    CategorizationMetadata,
    Category,
    CostTracker,
    FeedbackStats,
    FeedbackType,
    LLMBatch,
    OrganizationSettings,
    PatternCacheEntry,
    Rule,
    SimilarityMatch,
    SimilarPattern,
    Transaction,
    utcnow,
)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class InMemoryTransactionRepository:
    def __init__(self, transactions: list[Transaction] | None = None) -> None:
        self.transactions: dict[str, Transaction] = {}
        for transaction in transactions or []:
            self.add(transaction)

    def add(self, transaction: Transaction) -> None:
        self.transactions[transaction.id] = transaction

    async def get_by_id(self, transaction_id: str) -> Transaction | None:
        return self.transactions.get(transaction_id)

    async def get_by_ids(self, transaction_ids: list[str]) -> list[Transaction]:
        return [self.transactions[tid] for tid in transaction_ids if tid in self.transactions]

    async def get_by_date_range(
        self, organization_id: str, start: datetime, end: datetime
    ) -> list[Transaction]:
        start, end = _aware(start), _aware(end)
        return [
            tx
            for tx in self.transactions.values()
            if tx.organization_id == organization_id and start <= _aware(tx.date) <= end
        ]

    async def get_uncategorized(self, organization_id: str) -> list[Transaction]:
        return [
            tx
            for tx in self.transactions.values()
            if tx.organization_id == organization_id and tx.category_id is None
        ]

    async def get_recently_categorized(
        self, organization_id: str, since: timedelta
    ) -> list[Transaction]:
        cutoff = utcnow() - since
        return [
            tx
            for tx in self.transactions.values()
            if tx.organization_id == organization_id
            and tx.category_id is not None
            and _aware(tx.date) >= cutoff
        ]

    async def update_categorization(
        self, transaction_id: str, category_id: int, metadata: CategorizationMetadata
    ) -> None:
        current = self.transactions.get(transaction_id)
        if current is None:
            raise TransactionNotFoundError(transaction_id)
        self.transactions[transaction_id] = current.model_copy(
            update={"category_id": category_id, "metadata": metadata}
        )


class InMemoryRuleRepository:
    def __init__(self, rules: list[Rule] | None = None) -> None:
        self.rules: dict[str, Rule] = {rule.id: rule for rule in rules or []}

    async def list_rules(self, organization_id: str) -> list[Rule]:
        return [rule for rule in self.rules.values() if rule.organization_id == organization_id]

    async def create_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    async def update_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    async def delete_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    async def increment_usage(self, rule_id: str) -> None:
        rule = self.rules.get(rule_id)
        if rule is not None:
            rule.usage_count += 1
            rule.last_used_at = utcnow()

    async def update_usage(self, rule_id: str, success: bool) -> None:
        rule = self.rules.get(rule_id)
        if rule is None:
            return
        rule.feedback_count += 1
        rule.success_rate += ((1.0 if success else 0.0) - rule.success_rate) / rule.feedback_count


class InMemoryPatternRepository:
    def __init__(self) -> None:
        self.patterns: dict[tuple[str, str], PatternCacheEntry] = {}
        self._write_lock = asyncio.Lock()

    async def list_patterns(self, organization_id: str) -> list[PatternCacheEntry]:
        return [entry for (org, _), entry in self.patterns.items() if org == organization_id]

    async def get_similar(
        self, organization_id: str, merchant_name: str, threshold: float, limit: int
    ) -> list[SimilarPattern]:
        entries = await self.list_patterns(organization_id)
        if not entries:
            return []
        choices = [entry.merchant_pattern.upper() for entry in entries]
        matches = process.extract(
            merchant_name.upper(),
            choices,
            scorer=fuzz.ratio,
            limit=limit,
            score_cutoff=threshold * 100.0,
        )
        return [
            SimilarPattern(
                merchant_pattern=entries[index].merchant_pattern,
                category_id=entries[index].category_id,
                confidence=entries[index].confidence,
                similarity=score / 100.0,
                usage_count=entries[index].usage_count,
            )
            for _, score, index in matches
        ]

    async def upsert_pattern(
        self, organization_id: str, merchant_pattern: str, category_id: int, confidence: float
    ) -> PatternCacheEntry:
        key = (organization_id, merchant_pattern.upper())
        async with self._write_lock:
            entry = self.patterns.get(key)
            if entry is None:
                entry = PatternCacheEntry(
                    organization_id=organization_id,
                    merchant_pattern=merchant_pattern.upper(),
                    category_id=category_id,
                    confidence=confidence,
                )
            else:
                entry = entry.model_copy(
                    update={
                        "category_id": category_id,
                        "usage_count": entry.usage_count + 1,
                        "confidence": max(entry.confidence, confidence),
                        "last_used_at": utcnow(),
                    }
                )
            self.patterns[key] = entry
            return entry

    async def clear_patterns(self, organization_id: str) -> None:
        async with self._write_lock:
            for key in [key for key in self.patterns if key[0] == organization_id]:
                del self.patterns[key]


class InMemoryFeedbackRepository:
    def __init__(self) -> None:
        self.feedback: list[CategorizationFeedback] = []

    async def create_feedback(self, feedback: CategorizationFeedback) -> None:
        self.feedback.append(feedback)

    async def list_feedback(
        self, organization_id: str, limit: int = 100, offset: int = 0
    ) -> list[CategorizationFeedback]:
        rows = [fb for fb in self.feedback if fb.organization_id == organization_id]
        rows.sort(key=lambda fb: fb.created_at, reverse=True)
        return rows[offset : offset + limit]

    async def list_feedback_for_transaction(self, transaction_id: str) -> list[CategorizationFeedback]:
        return [fb for fb in self.feedback if fb.transaction_id == transaction_id]

    async def get_feedback_stats(self, organization_id: str) -> FeedbackStats:
        rows = [fb for fb in self.feedback if fb.organization_id == organization_id]
        confidences = [fb.confidence_before for fb in rows if fb.confidence_before is not None]
        return FeedbackStats(
            total_feedback=len(rows),
            corrections=sum(1 for fb in rows if fb.feedback_type == FeedbackType.CORRECTION),
            confirmations=sum(1 for fb in rows if fb.feedback_type == FeedbackType.CONFIRMATION),
            rejections=sum(1 for fb in rows if fb.feedback_type == FeedbackType.REJECTION),
            avg_confidence_before=sum(confidences) / len(confidences) if confidences else None,
        )


class _OrganizationIndex:
    def __init__(self) -> None:
        self.entries: dict[str, tuple[np.ndarray, SimilarityMatch]] = {}
        self.matrix: np.ndarray | None = None
        self.rows: list[SimilarityMatch] = []
        self.dirty = True

    def rebuild(self) -> None:
        if not self.entries:
            self.matrix = None
            self.rows = []
        else:
            vectors, rows = zip(*self.entries.values())
            self.matrix = np.vstack(vectors)
            self.rows = list(rows)
        self.dirty = False


class InMemoryVectorRepository:
    def __init__(self) -> None:
        self._indexes: dict[str, _OrganizationIndex] = defaultdict(_OrganizationIndex)
        self.rebuilds = 0

    async def upsert_embedding(
        self,
        organization_id: str,
        transaction: Transaction,
        category_id: int,
        embedding: list[float],
    ) -> None:
        index = self._indexes[organization_id]
        index.entries[transaction.id] = (
            np.asarray(embedding, dtype=float),
            SimilarityMatch(
                transaction_id=transaction.id,
                category_id=category_id,
                similarity=1.0,
                description=transaction.description,
                merchant_name=transaction.merchant_name,
                amount=transaction.amount,
            ),
        )
        index.dirty = True

    async def search(
        self, organization_id: str, embedding: list[float], threshold: float, limit: int
    ) -> list[SimilarityMatch]:
        index = self._indexes.get(organization_id)
        if index is None or not index.entries:
            return []
        if index.dirty:
            index.rebuild()

        query = np.asarray(embedding, dtype=float).reshape(1, -1)
        scores = cosine_similarity(query, index.matrix)[0]
        order = np.argsort(-scores)
        results = []
        for position in order[:limit]:
            score = float(scores[position])
            if score < threshold:
                break
            results.append(index.rows[position].model_copy(update={"similarity": score}))
        return results

    async def rebuild_index(self, organization_id: str) -> None:
        self._indexes[organization_id].rebuild()
        self.rebuilds += 1

    def size(self, organization_id: str) -> int:
        index = self._indexes.get(organization_id)
        return len(index.entries) if index is not None else 0


class InMemoryCategoryRepository:
    def __init__(self, categories: list[Category] | None = None) -> None:
        self.categories = list(categories or [])

    async def list_categories(self, organization_id: str) -> list[Category]:
        return [
            category
            for category in self.categories
            if category.organization_id in (None, organization_id)
        ]


class InMemorySettingsRepository:
    def __init__(self, settings: list[OrganizationSettings] | None = None) -> None:
        self.settings = {item.organization_id: item for item in settings or []}

    async def get_organization_settings(self, organization_id: str) -> OrganizationSettings | None:
        return self.settings.get(organization_id)


class InMemoryCostRepository:
    def __init__(self) -> None:
        self.trackers: dict[str, CostTracker] = {}
        self.budgets: dict[str, BudgetSettings] = {}
        self.entries: list[tuple[str, datetime, float, int, dict]] = []

    async def get_cost_tracker(self, organization_id: str) -> CostTracker | None:
        tracker = self.trackers.get(organization_id)
        return tracker.model_copy() if tracker is not None else None

    async def update_cost_tracker(self, tracker: CostTracker) -> None:
        self.trackers[tracker.organization_id] = tracker.model_copy()

    async def get_budget_settings(self, organization_id: str) -> BudgetSettings | None:
        settings = self.budgets.get(organization_id)
        return settings.model_copy(deep=True) if settings is not None else None

    async def update_budget_settings(self, settings: BudgetSettings) -> None:
        self.budgets[settings.organization_id] = settings.model_copy(deep=True)

    async def record_cost(
        self, organization_id: str, cost: float, transaction_count: int, metadata: dict
    ) -> None:
        self.entries.append((organization_id, utcnow(), cost, transaction_count, metadata))

    async def get_daily_spend(self, organization_id: str) -> float:
        today = utcnow().date()
        return sum(
            cost for org, at, cost, _, _ in self.entries if org == organization_id and at.date() == today
        )

    async def get_monthly_spend(self, organization_id: str) -> float:
        now = utcnow()
        return sum(
            cost
            for org, at, cost, _, _ in self.entries
            if org == organization_id and (at.year, at.month) == (now.year, now.month)
        )


class InMemoryLLMBatchRepository:
    def __init__(self) -> None:
        self.batches: list[LLMBatch] = []

    async def create_batch(self, batch: LLMBatch) -> None:
        self.batches.append(batch)

    async def list_batches(self, organization_id: str, limit: int = 50) -> list[LLMBatch]:
        rows = [batch for batch in self.batches if batch.organization_id == organization_id]
        return rows[-limit:]


class RecordingAlertSink:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, BudgetAlert]] = []

    async def send_budget_alert(self, organization_id: str, alert: BudgetAlert) -> None:
        self.alerts.append((organization_id, alert))


class InMemoryJobQueue:
    def __init__(self) -> None:
        self.requests: list[BatchCategorizationRequest] = []

    async def enqueue_batch(self, request: BatchCategorizationRequest) -> None:
        self.requests.append(request)
