from time import perf_counter

from finance_categorizer.domain.merchants import merchant_key, normalize_merchant_name
from finance_categorizer.integration.repositories import PatternRepository
from finance_categorizer.logger import get_logger
from finance_categorizer.models import (
    CategorizationMethod,
    CategorizationResult,
    CategorizationState,
    PatternCacheEntry,
    SimilarPattern,
    Transaction,
)
from finance_categorizer.services.background import BackgroundTaskQueue

from .base import Classifier

logger = get_logger(__name__)


def composite_score(pattern: SimilarPattern) -> float:
    usage_factor = min(pattern.usage_count / 100.0, 1.0)
    return 0.7 * pattern.similarity + 0.2 * usage_factor + 0.1 * pattern.confidence


class PatternCache(Classifier):
    """Fuzzy merchant-name lookup against previously confirmed categorizations."""

    method = CategorizationMethod.PATTERN
    state = CategorizationState.PATTERN

    def __init__(
        self,
        repo: PatternRepository,
        background: BackgroundTaskQueue | None = None,
        similarity_floor: float = 0.3,
        top_k: int = 5,
        write_threshold: float = 0.6,
    ) -> None:
        self.repo = repo
        self.background = background
        self.similarity_floor = similarity_floor
        self.top_k = top_k
        self.write_threshold = write_threshold

    async def classify(self, transaction: Transaction) -> CategorizationResult:
        start = perf_counter()
        organization_id = transaction.organization_id
        merchant = merchant_key(transaction)
        if not merchant:
            return CategorizationResult.empty(self.method, "no merchant information")

        candidates = await self.repo.get_similar(organization_id, merchant, self.similarity_floor, self.top_k)
        if not candidates:
            return CategorizationResult.empty(
                self.method,
                "no similar patterns found",
                processing_time_ms=(perf_counter() - start) * 1000,
            )

        exact = next((c for c in candidates if c.merchant_pattern.upper() == merchant), None)
        if exact is not None:
            self._schedule_upsert(organization_id, exact.merchant_pattern, exact.category_id, exact.confidence)
            return CategorizationResult(
                category_id=exact.category_id,
                confidence=exact.confidence,
                method=self.method,
                processing_time_ms=(perf_counter() - start) * 1000,
                explanation=f"Exact pattern match: '{exact.merchant_pattern}'",
            )

        best = max(candidates, key=composite_score)
        confidence = best.confidence * best.similarity
        if confidence > self.write_threshold:
            self._schedule_upsert(organization_id, merchant, best.category_id, confidence)

        logger.debug(
            "[PATTERN] '%s' ~ '%s' (similarity %.3f, confidence %.3f)",
            merchant,
            best.merchant_pattern,
            best.similarity,
            confidence,
        )
        return CategorizationResult(
            category_id=best.category_id,
            confidence=confidence,
            method=self.method,
            processing_time_ms=(perf_counter() - start) * 1000,
            explanation=f"Fuzzy pattern match: '{best.merchant_pattern}' (similarity: {best.similarity:.2f})",
        )

    def _schedule_upsert(self, organization_id: str, pattern: str, category_id: int, confidence: float) -> None:
        if self.background is None:
            return
        self.background.submit(
            lambda: self.repo.upsert_pattern(organization_id, pattern, category_id, confidence),
            label=f"pattern-upsert:{pattern}",
        )

    async def upsert(
        self, organization_id: str, merchant_name: str, category_id: int, confidence: float
    ) -> PatternCacheEntry | None:
        pattern = normalize_merchant_name(merchant_name)
        if not pattern:
            return None
        return await self.repo.upsert_pattern(organization_id, pattern, category_id, confidence)

    async def learn(self, transaction: Transaction, category_id: int, confidence: float) -> None:
        merchant = merchant_key(transaction)
        if not merchant:
            return
        await self.repo.upsert_pattern(transaction.organization_id, merchant, category_id, confidence)

    async def clear(self, organization_id: str) -> None:
        await self.repo.clear_patterns(organization_id)
        logger.info("[PATTERN] Cleared pattern cache for organization %s.", organization_id)
