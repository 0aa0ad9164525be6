import asyncio
import math
from dataclasses import dataclass, field
from time import perf_counter

from finance_categorizer.domain.formatting import format_cost, format_elapsed_ms
from finance_categorizer.errors import (
    CategorizationError,
    InsufficientBudgetError,
    ModelNotAvailableError,
    RateLimitedError,
)
from finance_categorizer.integration.repositories import LLMBatchRepository, LLMClient
from finance_categorizer.logger import get_logger
from finance_categorizer.models import (
    DEFAULT_LLM_MODELS,
    CategorizationMetadata,
    CategorizationMethod,
    CategorizationResult,
    CategorizationState,
    Category,
    LLMBatch,
    LLMBatchResponse,
    LLMModel,
    OutcomeStatus,
    Transaction,
    TransactionOutcome,
)
from finance_categorizer.services.governor import BudgetReservation, CostGovernor, RateLimiter

logger = get_logger(__name__)

MODEL_STRATEGIES = ("cost_optimized", "accuracy_optimized", "balanced", "default")


def calculate_cost(input_tokens: int, output_tokens: int, model: LLMModel) -> float:
    return (input_tokens + output_tokens) / 1000.0 * model.cost_per_1k


def split_batches(items: list, max_size: int) -> list[list]:
    """Split into the fewest chunks of at most ``max_size`` whose sizes differ by at most one."""
    if not items:
        return []
    count = max(1, math.ceil(len(items) / max_size))
    base, extra = divmod(len(items), count)
    chunks = []
    start = 0
    for index in range(count):
        size = base + (1 if index < extra else 0)
        chunks.append(items[start : start + size])
        start += size
    return chunks


@dataclass
class LLMRun:
    """Per-transaction outcomes of one batch LLM pass plus spend and call counts."""

    outcomes: dict[str, TransactionOutcome] = field(default_factory=dict)
    cost: float = 0.0
    llm_calls: int = 0


class BatchLLMClassifier:
    method = CategorizationMethod.LLM_BATCH
    state = CategorizationState.LLM_QUEUED

    def __init__(
        self,
        client: LLMClient,
        governor: CostGovernor,
        rate_limiter: RateLimiter,
        batches: LLMBatchRepository | None = None,
        models: tuple[LLMModel, ...] | list[LLMModel] = DEFAULT_LLM_MODELS,
        strategy: str = "cost_optimized",
        model_name: str | None = None,
        max_batch_size: int = 100,
    ) -> None:
        self.client = client
        self.governor = governor
        self.rate_limiter = rate_limiter
        self.batches = batches
        self.models = list(models)
        self.strategy = strategy
        self.model_name = model_name
        self.max_batch_size = max_batch_size

    def select_model(self, strategy: str | None = None) -> LLMModel:
        if not self.models:
            raise ModelNotAvailableError("no LLM models configured")

        if self.model_name:
            for model in self.models:
                if model.name == self.model_name:
                    return model
            # Unknown names are priced like the default model.
            default = self._default_model()
            logger.warning(
                "[LLM] Model '%s' has no pricing entry, using %s pricing.", self.model_name, default.name
            )
            return default.model_copy(update={"name": self.model_name, "is_default": False})

        strategy = strategy or self.strategy
        if strategy == "cost_optimized":
            return min(self.models, key=lambda model: model.cost_per_1k)
        if strategy == "accuracy_optimized":
            return max(self.models, key=lambda model: model.accuracy)
        if strategy == "balanced":
            return max(self.models, key=lambda model: model.accuracy / max(model.cost_per_1k, 1e-9))
        if strategy != "default":
            logger.warning("[LLM] Unknown model strategy '%s', using the default model.", strategy)
        return self._default_model()

    def _default_model(self) -> LLMModel:
        return next((model for model in self.models if model.is_default), self.models[0])

    def estimate_cost(
        self, transactions: list[Transaction], categories: list[Category], model: LLMModel | None = None
    ) -> float:
        if not transactions:
            return 0.0
        model = model or self.select_model()
        total = 0.0
        for chunk in split_batches(transactions, self.max_batch_size):
            input_tokens, output_tokens = self.client.estimate_tokens(chunk, categories)
            total += calculate_cost(input_tokens, output_tokens, model)
        return total

    async def categorize(
        self,
        organization_id: str,
        transactions: list[Transaction],
        categories: list[Category],
        max_cost: float = 0.0,
        cancel_event: asyncio.Event | None = None,
        strategy: str | None = None,
    ) -> LLMRun:
        """
        Categorize transactions in sequential sub-batches.

        Sub-batches that complete are kept even when a later one fails. Budget and
        rate limits stop the run; the rest are reported skipped or rate limited.
        """
        run = LLMRun()
        if not transactions:
            return run

        model = self.select_model(strategy)
        chunks = split_batches(transactions, self.max_batch_size)
        logger.info(
            "[LLM] Categorizing %s transactions in %s sub-batches with %s.",
            len(transactions),
            len(chunks),
            model.name,
        )

        for index, chunk in enumerate(chunks):
            remaining = [tx for later in chunks[index:] for tx in later]

            if cancel_event is not None and cancel_event.is_set():
                logger.info("[LLM] Cancelled before sub-batch %s/%s.", index + 1, len(chunks))
                self._mark(run, remaining, OutcomeStatus.CANCELLED, "categorization cancelled")
                break

            input_tokens, output_tokens = self.client.estimate_tokens(chunk, categories)
            estimated = calculate_cost(input_tokens, output_tokens, model)

            if max_cost > 0 and run.cost + estimated > max_cost:
                message = (
                    f"request cost cap reached (spent: ${run.cost:.4f}, "
                    f"estimated: ${estimated:.4f}, cap: ${max_cost:.4f})"
                )
                logger.info("[LLM] %s", message)
                self._mark(run, remaining, OutcomeStatus.SKIPPED_BY_BUDGET, message)
                break

            try:
                slot = await self.rate_limiter.check_limit(estimated)
            except RateLimitedError as e:
                logger.warning("[LLM] %s", e)
                self._mark(run, remaining, OutcomeStatus.RATE_LIMITED, str(e), retryable=True)
                break

            try:
                reservation = await self.governor.check_budget(organization_id, estimated)
            except InsufficientBudgetError as e:
                await self.rate_limiter.release(slot)
                logger.warning("[BUDGET] Org %s: %s", organization_id, e)
                self._mark(run, remaining, OutcomeStatus.SKIPPED_BY_BUDGET, str(e))
                break
            except BaseException:
                await self.rate_limiter.release(slot)
                raise

            start = perf_counter()
            try:
                response = await self.client.categorize_batch(chunk, categories, model)
            except CategorizationError as e:
                await self.governor.release(reservation)
                await self.rate_limiter.release(slot)
                logger.error("[LLM] Sub-batch %s/%s failed: %s", index + 1, len(chunks), e)
                self._mark(run, chunk, OutcomeStatus.FAILED, str(e), retryable=e.retryable)
                continue
            except BaseException:
                await self.governor.release(reservation)
                await self.rate_limiter.release(slot)
                raise

            elapsed_ms = response.processing_time_ms or (perf_counter() - start) * 1000
            actual = calculate_cost(response.input_tokens, response.output_tokens, model)
            batch = self._audit_row(organization_id, chunk, response, actual, elapsed_ms)
            await self.rate_limiter.record_request(actual, slot)
            await self._record_spend(organization_id, len(chunk), actual, reservation)
            await self._store_audit_row(batch)

            logger.info(
                "[LLM] Sub-batch %s/%s: %s transactions, %s in / %s out tokens, %s in %s.",
                index + 1,
                len(chunks),
                len(chunk),
                response.input_tokens,
                response.output_tokens,
                format_cost(actual),
                format_elapsed_ms(elapsed_ms),
            )
            run.cost += actual
            run.llm_calls += 1
            self._collect(run, chunk, response, batch, actual)

        return run

    async def _record_spend(
        self, organization_id: str, transaction_count: int, cost: float, reservation: BudgetReservation
    ) -> None:
        try:
            await self.governor.record_cost(organization_id, cost, transaction_count, reservation)
        except Exception as e:
            await self.governor.release(reservation)
            logger.error("[BUDGET] Failed to record $%.6f spend for org %s: %s", cost, organization_id, e)

    async def _store_audit_row(self, batch: LLMBatch) -> None:
        if self.batches is None:
            return
        try:
            await self.batches.create_batch(batch)
        except Exception as e:
            logger.error("[LLM] Failed to store audit row %s for org %s: %s", batch.id, batch.organization_id, e)

    @staticmethod
    def _audit_row(
        organization_id: str,
        chunk: list[Transaction],
        response: LLMBatchResponse,
        cost: float,
        elapsed_ms: float,
    ) -> LLMBatch:
        succeeded = [item for item in response.results if item.success]
        return LLMBatch(
            organization_id=organization_id,
            transaction_count=len(chunk),
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            total_cost=cost,
            model=response.model,
            success_rate=len(succeeded) / len(chunk) if chunk else 0.0,
            avg_confidence=(
                sum(item.confidence for item in succeeded) / len(succeeded) if succeeded else None
            ),
            processing_time_ms=elapsed_ms,
        )

    def _collect(
        self,
        run: LLMRun,
        chunk: list[Transaction],
        response: LLMBatchResponse,
        batch: LLMBatch,
        cost: float,
    ) -> None:
        per_transaction = cost / len(chunk) if chunk else 0.0
        items = {item.transaction_id: item for item in response.results}
        for transaction in chunk:
            item = items.get(transaction.id)
            metadata = CategorizationMetadata(llm_batch_id=batch.id, cost_estimate=per_transaction)
            if item is None or not item.success:
                error = item.error if item is not None else "Transaction not found in LLM response"
                result = CategorizationResult(
                    category_id=None,
                    confidence=item.confidence if item is not None else 0.0,
                    method=self.method,
                    cost_estimate=per_transaction,
                    explanation=(item.reasoning if item is not None and item.reasoning else error),
                    metadata=metadata,
                    error=error,
                )
                run.outcomes[transaction.id] = TransactionOutcome(
                    transaction_id=transaction.id,
                    status=OutcomeStatus.FAILED,
                    state=CategorizationState.DONE,
                    result=result,
                    error=error,
                )
                continue

            result = CategorizationResult(
                category_id=item.category_id,
                category_name=item.category_name,
                confidence=item.confidence,
                method=self.method,
                processing_time_ms=batch.processing_time_ms or 0.0,
                cost_estimate=per_transaction,
                explanation=item.reasoning,
                metadata=metadata,
            )
            run.outcomes[transaction.id] = TransactionOutcome(
                transaction_id=transaction.id,
                status=OutcomeStatus.CATEGORIZED,
                state=CategorizationState.DONE,
                result=result,
            )

    def _mark(
        self,
        run: LLMRun,
        transactions: list[Transaction],
        status: OutcomeStatus,
        error: str,
        retryable: bool = False,
    ) -> None:
        state = CategorizationState.DONE if status == OutcomeStatus.FAILED else CategorizationState.LLM_QUEUED
        for transaction in transactions:
            run.outcomes[transaction.id] = TransactionOutcome(
                transaction_id=transaction.id,
                status=status,
                state=state,
                result=CategorizationResult.empty(
                    self.method, error, error=error, retryable=retryable
                ),
                error=error,
                retryable=retryable,
            )
