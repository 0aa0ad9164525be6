import asyncio
from collections.abc import Awaitable
from time import perf_counter
from typing import TypeVar

from finance_categorizer.classifiers.base import Classifier
from finance_categorizer.classifiers.llm import BatchLLMClassifier, LLMRun
from finance_categorizer.classifiers.patterns import PatternCache
from finance_categorizer.classifiers.rules import RuleMatcher
from finance_categorizer.classifiers.similarity import SimilarityRetriever
from finance_categorizer.core.settings import EngineSettings
from finance_categorizer.domain.formatting import format_cost, format_duration
from finance_categorizer.errors import RepositoryError, TransactionNotFoundError
from finance_categorizer.integration.repositories import (
    CategoryRepository,
    JobQueue,
    SettingsRepository,
    TransactionRepository,
)
from finance_categorizer.logger import get_logger
from finance_categorizer.models import (
    BatchCategorizationRequest,
    BatchSummary,
    CategorizationFeedback,
    CategorizationMetadata,
    CategorizationMethod,
    CategorizationResult,
    CategorizationState,
    CostEstimate,
    FeedbackAnalysis,
    FeedbackType,
    OutcomeStatus,
    Transaction,
    TransactionOutcome,
    utcnow,
)
from finance_categorizer.services.background import BackgroundTaskQueue
from finance_categorizer.services.learner import FeedbackLearner

logger = get_logger(__name__)

T = TypeVar("T")

_COUNTERS = {
    OutcomeStatus.SKIPPED: "skipped",
    OutcomeStatus.SKIPPED_BY_BUDGET: "skipped_by_budget",
    OutcomeStatus.RATE_LIMITED: "rate_limited",
    OutcomeStatus.FAILED: "failed",
    OutcomeStatus.CANCELLED: "cancelled",
}


class CategorizationEngine:
    """
    Runs transactions through rules, the pattern cache and similarity search, and
    sends whatever none of them can settle to the batch LLM classifier.
    """

    def __init__(
        self,
        transactions: TransactionRepository,
        categories: CategoryRepository,
        rules: RuleMatcher,
        patterns: PatternCache,
        learner: FeedbackLearner,
        similarity: SimilarityRetriever | None = None,
        llm: BatchLLMClassifier | None = None,
        organization_settings: SettingsRepository | None = None,
        job_queue: JobQueue | None = None,
        background: BackgroundTaskQueue | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.transactions = transactions
        self.categories = categories
        self.rules = rules
        self.patterns = patterns
        self.similarity = similarity
        self.llm = llm
        self.learner = learner
        self.organization_settings = organization_settings
        self.job_queue = job_queue
        self.background = background or BackgroundTaskQueue(
            maxsize=self.settings.background_queue_size,
            workers=self.settings.background_workers,
        )

        self.classifiers: list[Classifier] = [rules, patterns]
        if similarity is not None:
            self.classifiers.append(similarity)

        self._pending_llm: dict[str, dict[str, bool]] = {}

    async def _io(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.repository_timeout)
        except asyncio.TimeoutError as e:
            raise RepositoryError(
                f"{operation} timed out after {self.settings.repository_timeout:.1f}s"
            ) from e

    async def _organization_policy(
        self, organization_id: str, override: float | None = None
    ) -> tuple[float, str | None]:
        threshold = self.settings.confidence_threshold
        strategy = None
        if self.organization_settings is not None:
            org_settings = await self._io(
                self.organization_settings.get_organization_settings(organization_id),
                "get_organization_settings",
            )
            if org_settings is not None:
                if org_settings.confidence_threshold is not None:
                    threshold = org_settings.confidence_threshold
                strategy = org_settings.model_strategy
        if override is not None:
            threshold = override
        return threshold, strategy

    @staticmethod
    def _skip_reason(transaction: Transaction, force: bool) -> str | None:
        if force:
            return None
        if transaction.user_corrected:
            return "user corrected"
        if transaction.category_id is not None:
            return "already categorized"
        return None

    async def _run_chain(
        self, transaction: Transaction, threshold: float
    ) -> tuple[CategorizationResult | None, bool, CategorizationMetadata]:
        """
        Try the deterministic strategies in order.

        Returns the accepted result (or the best rejected one), whether it cleared
        the threshold, and the rule and similarity matches seen along the way.
        """
        seen = CategorizationMetadata()
        best: CategorizationResult | None = None
        for classifier in self.classifiers:
            result = await self._io(classifier.classify(transaction), f"{classifier.name}.classify")
            seen.rule_matches.extend(result.metadata.rule_matches)
            seen.similarity_matches.extend(result.metadata.similarity_matches)

            if result.category_id is None:
                logger.debug("[%s] %s: %s", classifier.method.value.upper(), transaction.id, result.explanation)
                continue
            if result.confidence >= threshold:
                return result, True, seen
            logger.debug(
                "[%s] %s: confidence %.2f below threshold %.2f",
                classifier.method.value.upper(),
                transaction.id,
                result.confidence,
                threshold,
            )
            if best is None or result.confidence > best.confidence:
                best = result
        return best, False, seen

    async def _persist(
        self,
        transaction: Transaction,
        result: CategorizationResult,
        threshold: float,
        seen: CategorizationMetadata | None = None,
    ) -> TransactionOutcome:
        low_confidence = result.confidence < threshold
        result.low_confidence = low_confidence

        metadata = result.metadata.model_copy(
            update={
                "confidence_score": result.confidence,
                "method": result.method,
                "user_corrected": False,
                "processing_time_ms": result.processing_time_ms,
                "cost_estimate": result.cost_estimate,
                "needs_review": low_confidence,
            }
        )
        if seen is not None:
            metadata.rule_matches = metadata.rule_matches or seen.rule_matches
            metadata.similarity_matches = metadata.similarity_matches or seen.similarity_matches
        result.metadata = metadata

        await self._io(
            self.transactions.update_categorization(transaction.id, result.category_id, metadata),
            "update_categorization",
        )

        if not low_confidence and self.similarity is not None:
            similarity = self.similarity
            category_id = result.category_id
            self.background.submit(
                lambda: similarity.index_transaction(transaction, category_id),
                label=f"index:{transaction.id}",
            )

        return TransactionOutcome(
            transaction_id=transaction.id,
            status=OutcomeStatus.LOW_CONFIDENCE if low_confidence else OutcomeStatus.CATEGORIZED,
            state=CategorizationState.DONE,
            result=result,
        )

    async def _finalize_without_llm(
        self,
        transaction: Transaction,
        best: CategorizationResult | None,
        threshold: float,
        seen: CategorizationMetadata,
    ) -> TransactionOutcome:
        if best is not None:
            return await self._persist(transaction, best, threshold, seen)
        return TransactionOutcome(
            transaction_id=transaction.id,
            status=OutcomeStatus.SKIPPED,
            state=CategorizationState.DONE,
            error="no strategy produced a category",
        )

    async def _finalize_llm_outcome(
        self, transaction: Transaction, outcome: TransactionOutcome, threshold: float
    ) -> TransactionOutcome:
        if outcome.status != OutcomeStatus.CATEGORIZED or outcome.result is None:
            return outcome
        return await self._persist(transaction, outcome.result, threshold)

    async def categorize_one(self, transaction_id: str, force: bool = False) -> TransactionOutcome:
        start = perf_counter()
        transaction = await self._io(self.transactions.get_by_id(transaction_id), "get_by_id")
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        reason = self._skip_reason(transaction, force)
        if reason:
            logger.debug("[CATEGORIZE] Skipping %s: %s", transaction_id, reason)
            return TransactionOutcome(
                transaction_id=transaction_id,
                status=OutcomeStatus.SKIPPED,
                state=CategorizationState.DONE,
                error=reason,
            )

        organization_id = transaction.organization_id
        threshold, strategy = await self._organization_policy(organization_id)
        result, accepted, seen = await self._run_chain(transaction, threshold)

        if accepted and result is not None:
            outcome = await self._persist(transaction, result, threshold, seen)
        elif self.llm is None:
            outcome = await self._finalize_without_llm(transaction, result, threshold, seen)
        elif self.job_queue is not None:
            outcome = await self._queue_for_llm(transaction, force, result)
        else:
            categories = await self._io(self.categories.list_categories(organization_id), "list_categories")
            run = await self.llm.categorize(organization_id, [transaction], categories, strategy=strategy)
            outcome = await self._finalize_llm_outcome(transaction, run.outcomes[transaction.id], threshold)

        logger.info(
            "[CATEGORIZE] %s -> %s (%s, %s)",
            transaction_id,
            outcome.status.value,
            outcome.result.method.value if outcome.result else "none",
            format_duration(perf_counter() - start),
        )
        return outcome

    async def _queue_for_llm(
        self, transaction: Transaction, force: bool, best: CategorizationResult | None
    ) -> TransactionOutcome:
        organization_id = transaction.organization_id
        pending = self._pending_llm.setdefault(organization_id, {})
        pending[transaction.id] = pending.get(transaction.id, False) or force
        if len(pending) >= self.settings.min_batch_size:
            await self.flush_llm_queue(organization_id)
        return TransactionOutcome(
            transaction_id=transaction.id,
            status=OutcomeStatus.QUEUED,
            state=CategorizationState.LLM_QUEUED,
            result=best,
        )

    def pending_llm(self, organization_id: str) -> list[str]:
        return list(self._pending_llm.get(organization_id, {}))

    async def flush_llm_queue(self, organization_id: str) -> int:
        """Hand this organization's waiting transactions to the job queue. Returns how many."""
        pending = self._pending_llm.pop(organization_id, {})
        if not pending or self.job_queue is None:
            return 0

        for force in (False, True):
            ids = [tid for tid, forced in pending.items() if forced == force]
            if not ids:
                continue
            request = BatchCategorizationRequest(
                organization_id=organization_id,
                transaction_ids=ids,
                force_recategorize=force,
            )
            await self._io(self.job_queue.enqueue_batch(request), "enqueue_batch")
        logger.info("[BATCH] Enqueued %s transactions for LLM categorization (org %s).", len(pending), organization_id)
        return len(pending)

    async def _load_request(
        self, request: BatchCategorizationRequest
    ) -> tuple[list[Transaction], list[TransactionOutcome]]:
        organization_id = request.organization_id
        missing: list[TransactionOutcome] = []
        if request.transaction_ids is not None:
            found = await self._io(self.transactions.get_by_ids(request.transaction_ids), "get_by_ids")
            by_id = {tx.id: tx for tx in found if tx.organization_id == organization_id}
            transactions = []
            for transaction_id in dict.fromkeys(request.transaction_ids):
                transaction = by_id.get(transaction_id)
                if transaction is None:
                    missing.append(
                        TransactionOutcome(
                            transaction_id=transaction_id,
                            status=OutcomeStatus.FAILED,
                            error=f"transaction not found: {transaction_id}",
                        )
                    )
                else:
                    transactions.append(transaction)
            return transactions, missing

        if request.date_range is not None:
            transactions = await self._io(
                self.transactions.get_by_date_range(
                    organization_id, request.date_range.start_date, request.date_range.end_date
                ),
                "get_by_date_range",
            )
        else:
            transactions = await self._io(self.transactions.get_uncategorized(organization_id), "get_uncategorized")
        return list(transactions), missing

    async def categorize_batch(
        self, request: BatchCategorizationRequest, cancel_event: asyncio.Event | None = None
    ) -> BatchSummary:
        start = perf_counter()
        organization_id = request.organization_id
        transactions, missing = await self._load_request(request)
        threshold, strategy = await self._organization_policy(organization_id, request.confidence_threshold)

        outcomes: dict[str, TransactionOutcome] = {outcome.transaction_id: outcome for outcome in missing}
        candidates: list[Transaction] = []
        for transaction in transactions:
            reason = self._skip_reason(transaction, request.force_recategorize)
            if reason:
                outcomes[transaction.id] = TransactionOutcome(
                    transaction_id=transaction.id,
                    status=OutcomeStatus.SKIPPED,
                    error=reason,
                )
            else:
                candidates.append(transaction)

        logger.info(
            "[BATCH] Org %s: %s transactions, %s to categorize (threshold %.2f).",
            organization_id,
            len(transactions) + len(missing),
            len(candidates),
            threshold,
        )

        semaphore = asyncio.Semaphore(self.settings.max_concurrency)
        deferred: dict[str, tuple[CategorizationResult | None, CategorizationMetadata]] = {}

        async def deterministic(transaction: Transaction) -> None:
            async with semaphore:
                try:
                    result, accepted, seen = await self._run_chain(transaction, threshold)
                    if accepted and result is not None:
                        outcomes[transaction.id] = await self._persist(transaction, result, threshold, seen)
                    else:
                        deferred[transaction.id] = (result, seen)
                except Exception as e:
                    logger.warning("[BATCH] Transaction %s failed: %s", transaction.id, e)
                    outcomes[transaction.id] = self._failed(transaction.id, e)

        await asyncio.gather(*(deterministic(transaction) for transaction in candidates))

        llm_candidates = [tx for tx in candidates if tx.id in deferred]
        run = LLMRun()
        if llm_candidates:
            if self.llm is None:
                for transaction in llm_candidates:
                    best, seen = deferred[transaction.id]
                    outcomes[transaction.id] = await self._settle(
                        transaction, self._finalize_without_llm(transaction, best, threshold, seen)
                    )
            else:
                run = await self._run_llm(
                    self.llm, organization_id, llm_candidates, request, threshold, strategy, cancel_event, outcomes
                )

        summary = BatchSummary(organization_id=organization_id, cost=run.cost, llm_calls=run.llm_calls)
        if request.transaction_ids is not None:
            order = list(dict.fromkeys(request.transaction_ids))
        else:
            order = [tx.id for tx in transactions]
        for transaction_id in order:
            outcome = outcomes.get(transaction_id)
            if outcome is None:
                continue
            summary.outcomes.append(outcome)
            summary.total += 1
            if outcome.status in (OutcomeStatus.CATEGORIZED, OutcomeStatus.LOW_CONFIDENCE):
                summary.categorized += 1
                if outcome.status == OutcomeStatus.LOW_CONFIDENCE:
                    summary.low_confidence += 1
            elif outcome.status in _COUNTERS:
                counter = _COUNTERS[outcome.status]
                setattr(summary, counter, getattr(summary, counter) + 1)

        logger.info(
            "[BATCH] Org %s done in %s: %s/%s categorized, %s skipped by budget, %s failed, cost %s.",
            organization_id,
            format_duration(perf_counter() - start),
            summary.categorized,
            summary.total,
            summary.skipped_by_budget,
            summary.failed,
            format_cost(summary.cost),
        )
        return summary

    async def _run_llm(
        self,
        llm: BatchLLMClassifier,
        organization_id: str,
        transactions: list[Transaction],
        request: BatchCategorizationRequest,
        threshold: float,
        strategy: str | None,
        cancel_event: asyncio.Event | None,
        outcomes: dict[str, TransactionOutcome],
    ) -> LLMRun:
        categories = await self._io(self.categories.list_categories(organization_id), "list_categories")
        if not categories:
            for transaction in transactions:
                outcomes[transaction.id] = TransactionOutcome(
                    transaction_id=transaction.id,
                    status=OutcomeStatus.FAILED,
                    error="no categories configured for organization",
                )
            return LLMRun()

        run = await self.llm.categorize(
            organization_id,
            transactions,
            categories,
            max_cost=request.max_cost,
            cancel_event=cancel_event,
            strategy=strategy,
        )
        for transaction in transactions:
            outcome = run.outcomes.get(transaction.id)
            if outcome is None:
                continue
            outcomes[transaction.id] = await self._settle(
                transaction, self._finalize_llm_outcome(transaction, outcome, threshold)
            )
        return run

    async def _settle(self, transaction: Transaction, step: Awaitable[TransactionOutcome]) -> TransactionOutcome:
        try:
            return await step
        except Exception as e:
            logger.warning("[BATCH] Could not persist %s: %s", transaction.id, e)
            return self._failed(transaction.id, e)

    @staticmethod
    def _failed(transaction_id: str, error: Exception) -> TransactionOutcome:
        return TransactionOutcome(
            transaction_id=transaction_id,
            status=OutcomeStatus.FAILED,
            error=str(error),
            retryable=getattr(error, "retryable", False),
        )

    async def estimate_batch_cost(self, request: BatchCategorizationRequest) -> CostEstimate:
        """Price the request as if every eligible transaction went to the LLM."""
        transactions, _ = await self._load_request(request)
        eligible = [tx for tx in transactions if not self._skip_reason(tx, request.force_recategorize)]
        if self.llm is None or not eligible:
            return CostEstimate(transaction_count=len(eligible), estimated_cost=0.0, model="")

        _, strategy = await self._organization_policy(request.organization_id)
        categories = await self._io(self.categories.list_categories(request.organization_id), "list_categories")
        model = self.llm.select_model(strategy)
        return CostEstimate(
            transaction_count=len(eligible),
            estimated_cost=self.llm.estimate_cost(eligible, categories, model),
            model=model.name,
        )

    async def record_feedback(self, feedback: CategorizationFeedback) -> CategorizationFeedback:
        """
        Persist a user correction and mark the transaction as user corrected.

        Learning from the correction happens on the background queue.
        """
        transaction = await self._io(self.transactions.get_by_id(feedback.transaction_id), "get_by_id")
        if transaction is None:
            raise TransactionNotFoundError(feedback.transaction_id)

        previous = transaction.metadata or CategorizationMetadata()
        updates = {}
        if feedback.old_category_id is None and transaction.category_id is not None:
            updates["old_category_id"] = transaction.category_id
        if feedback.confidence_before is None:
            updates["confidence_before"] = previous.confidence_score
        if feedback.method_used is None:
            updates["method_used"] = previous.method
        if updates:
            feedback = feedback.model_copy(update=updates)

        await self._io(self.learner.feedback.create_feedback(feedback), "create_feedback")

        if feedback.feedback_type == FeedbackType.REJECTION:
            metadata = previous.model_copy(update={"needs_review": True, "feedback_id": feedback.id})
            category_id = transaction.category_id
        else:
            metadata = previous.model_copy(
                update={
                    "confidence_score": 1.0,
                    "method": CategorizationMethod.MANUAL,
                    "user_corrected": True,
                    "feedback_id": feedback.id,
                    "correction_date": utcnow(),
                    "needs_review": False,
                }
            )
            category_id = feedback.new_category_id
        if category_id is not None:
            await self._io(
                self.transactions.update_categorization(transaction.id, category_id, metadata),
                "update_categorization",
            )

        logger.info(
            "[FEEDBACK] %s on %s: %s -> %s",
            feedback.feedback_type.value,
            transaction.id,
            feedback.old_category_id,
            feedback.new_category_id,
        )
        learner = self.learner
        self.background.submit(lambda: learner.learn(feedback, transaction), label=f"feedback:{feedback.id}")
        return feedback

    async def feedback_analysis(self, organization_id: str) -> FeedbackAnalysis:
        return await self.learner.analyze(organization_id)

    async def aclose(self) -> None:
        await self.background.aclose()
