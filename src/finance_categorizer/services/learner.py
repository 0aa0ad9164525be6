from collections import Counter, defaultdict
from datetime import timedelta

from finance_categorizer.classifiers.patterns import PatternCache
from finance_categorizer.classifiers.rules import RuleMatcher
from finance_categorizer.classifiers.similarity import SimilarityRetriever
from finance_categorizer.domain.merchants import merchant_key
from finance_categorizer.errors import EmbeddingError
from finance_categorizer.integration.repositories import FeedbackRepository, TransactionRepository
from finance_categorizer.logger import get_logger
from finance_categorizer.models import (
    CategorizationFeedback,
    CategorizationMethod,
    CategoryCorrection,
    FeedbackAnalysis,
    FeedbackType,
    Transaction,
)

logger = get_logger(__name__)


def _was_correct(feedback: CategorizationFeedback) -> bool:
    if feedback.feedback_type == FeedbackType.CONFIRMATION:
        return True
    return feedback.feedback_type == FeedbackType.CORRECTION and feedback.old_category_id == feedback.new_category_id


class FeedbackLearner:
    """Turns user corrections into pattern-cache entries, index updates and rule statistics."""

    def __init__(
        self,
        feedback: FeedbackRepository,
        patterns: PatternCache,
        similarity: SimilarityRetriever | None = None,
        rules: RuleMatcher | None = None,
        transactions: TransactionRepository | None = None,
        pattern_confidence: float = 1.0,
    ) -> None:
        self.feedback = feedback
        self.patterns = patterns
        self.similarity = similarity
        self.rules = rules
        self.transactions = transactions
        self.pattern_confidence = pattern_confidence

    async def learn(self, feedback: CategorizationFeedback, transaction: Transaction) -> None:
        """
        Apply one piece of feedback.

        ``transaction`` is the state before the correction was persisted, so its
        metadata still names the strategy that produced the old category.
        """
        if feedback.feedback_type != FeedbackType.REJECTION:
            entry = await self.patterns.upsert(
                feedback.organization_id,
                merchant_key(transaction),
                feedback.new_category_id,
                self.pattern_confidence,
            )
            if entry is not None:
                logger.info(
                    "[FEEDBACK] Pattern '%s' now maps to category %s (usage %s).",
                    entry.merchant_pattern,
                    entry.category_id,
                    entry.usage_count,
                )

        if self.similarity is not None and feedback.feedback_type != FeedbackType.REJECTION:
            try:
                await self.similarity.learn_from_feedback(transaction, feedback.new_category_id)
            except EmbeddingError as e:
                logger.warning("[FEEDBACK] Could not re-index transaction %s: %s", transaction.id, e)

        await self._update_rule_statistics(feedback, transaction)

    async def _update_rule_statistics(self, feedback: CategorizationFeedback, transaction: Transaction) -> None:
        metadata = transaction.metadata
        if self.rules is None or metadata is None or metadata.method != CategorizationMethod.RULE:
            return
        if not metadata.rule_matches:
            return
        await self.rules.record_feedback(metadata.rule_matches[0].rule_id, _was_correct(feedback))

    async def analyze(self, organization_id: str, limit: int = 1000) -> FeedbackAnalysis:
        rows = await self.feedback.list_feedback(organization_id, limit=limit)
        total = len(rows)
        if total == 0:
            return FeedbackAnalysis(
                organization_id=organization_id,
                total_feedback=0,
                correction_rate=0.0,
                confirmation_rate=0.0,
                rejection_rate=0.0,
            )

        types = Counter(row.feedback_type for row in rows)

        per_method: dict[str, list[bool]] = defaultdict(list)
        for row in rows:
            if row.method_used is None:
                continue
            per_method[row.method_used.value].append(_was_correct(row))

        corrections: dict[tuple[int | None, int], list[float | None]] = defaultdict(list)
        for row in rows:
            if row.feedback_type == FeedbackType.CORRECTION and row.old_category_id != row.new_category_id:
                corrections[(row.old_category_id, row.new_category_id)].append(row.confidence_before)

        common = []
        for (old, new), confidences in corrections.items():
            known = [value for value in confidences if value is not None]
            common.append(
                CategoryCorrection(
                    from_category_id=old,
                    to_category_id=new,
                    count=len(confidences),
                    avg_confidence=sum(known) / len(known) if known else None,
                )
            )
        common.sort(key=lambda item: item.count, reverse=True)

        return FeedbackAnalysis(
            organization_id=organization_id,
            total_feedback=total,
            correction_rate=types[FeedbackType.CORRECTION] / total,
            confirmation_rate=types[FeedbackType.CONFIRMATION] / total,
            rejection_rate=types[FeedbackType.REJECTION] / total,
            method_accuracy={method: sum(hits) / len(hits) for method, hits in per_method.items()},
            common_corrections=common[:10],
        )

    async def mine_patterns(
        self,
        organization_id: str,
        since: timedelta = timedelta(days=30),
        min_occurrences: int = 3,
        min_consistency: float = 0.8,
    ) -> int:
        """Seed the pattern cache from merchants that are consistently categorized the same way."""
        if self.transactions is None:
            return 0
        history = await self.transactions.get_recently_categorized(organization_id, since)

        by_merchant: dict[str, Counter] = defaultdict(Counter)
        for transaction in history:
            key = merchant_key(transaction)
            if key and transaction.category_id is not None:
                by_merchant[key][transaction.category_id] += 1

        written = 0
        for merchant, counts in by_merchant.items():
            total = sum(counts.values())
            if total < min_occurrences:
                continue
            category_id, hits = counts.most_common(1)[0]
            consistency = hits / total
            if consistency < min_consistency:
                continue
            await self.patterns.upsert(organization_id, merchant, category_id, consistency)
            written += 1

        logger.info("[FEEDBACK] Mined %s merchant patterns for organization %s.", written, organization_id)
        return written
