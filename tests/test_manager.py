import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FOOD, GROCERIES, ORG, SHOPPING, TRANSPORT, FakeLLMClient, make_transaction
from finance_categorizer.core.settings import EngineSettings
from finance_categorizer.errors import RepositoryError, TransactionNotFoundError
from finance_categorizer.integration.memory import InMemoryJobQueue, InMemoryTransactionRepository
from finance_categorizer.models import (
    BatchCategorizationRequest,
    BudgetSettings,
    CategorizationFeedback,
    CategorizationMetadata,
    CategorizationMethod,
    CategorizationResult,
    CategorizationState,
    CostTracker,
    FeedbackType,
    OrganizationSettings,
    OutcomeStatus,
    Rule,
    RuleField,
    RuleOperator,
)


def stub_classifier(method: CategorizationMethod, result: CategorizationResult) -> MagicMock:
    classifier = MagicMock()
    classifier.method = method
    classifier.name = method.value
    classifier.classify = AsyncMock(return_value=result)
    return classifier


def add_unknown(repos, count: int, prefix: str = "t") -> list[str]:
    ids = []
    for index in range(count):
        transaction = make_transaction(f"{prefix}{index}", merchant=f"Unknown Vendor {index}")
        repos.transactions.add(transaction)
        ids.append(transaction.id)
    return ids


@pytest.mark.anyio
async def test_strategies_run_in_order_and_stop_at_first_accepted(repos, build_engine) -> None:
    repos.transactions.add(make_transaction("t1", merchant="Test"))
    engine = build_engine()
    rules = stub_classifier(
        CategorizationMethod.RULE,
        CategorizationResult(category_id=FOOD.id, confidence=0.95, method=CategorizationMethod.RULE),
    )
    patterns = stub_classifier(
        CategorizationMethod.PATTERN,
        CategorizationResult(category_id=SHOPPING.id, confidence=0.99, method=CategorizationMethod.PATTERN),
    )
    engine.classifiers = [rules, patterns]

    outcome = await engine.categorize_one("t1")

    assert outcome.result.method == CategorizationMethod.RULE
    assert outcome.result.category_id == FOOD.id
    patterns.classify.assert_not_awaited()

    rules.classify.return_value = CategorizationResult.empty(CategorizationMethod.RULE, "no matching rules")
    outcome = await engine.categorize_one("t1", force=True)

    assert outcome.result.method == CategorizationMethod.PATTERN
    await engine.aclose()


@pytest.mark.anyio
async def test_pattern_hit_never_reaches_llm(repos, build_engine, llm_client) -> None:
    await repos.patterns.upsert_pattern(ORG, "STARBUCKS", FOOD.id, 0.95)
    repos.transactions.add(make_transaction("t1", merchant="STARBUCKS #4521", amount=-5.75))
    engine = build_engine()

    outcome = await engine.categorize_one("t1")

    assert outcome.status == OutcomeStatus.CATEGORIZED
    assert outcome.state == CategorizationState.DONE
    assert outcome.result.method == CategorizationMethod.PATTERN
    assert outcome.result.category_id == FOOD.id
    assert llm_client.calls == []

    stored = repos.transactions.transactions["t1"]
    assert stored.category_id == FOOD.id
    assert stored.metadata.method == CategorizationMethod.PATTERN
    assert stored.metadata.confidence_score == 0.95
    assert stored.metadata.needs_review is False
    await engine.aclose()


@pytest.mark.anyio
async def test_exhausted_daily_budget_skips_whole_batch(repos, build_engine, llm_client) -> None:
    await repos.costs.update_budget_settings(BudgetSettings(organization_id=ORG, daily_budget=1.0))
    await repos.costs.update_cost_tracker(
        CostTracker(organization_id=ORG, current_spend=1.0, monthly_spend=1.0)
    )
    add_unknown(repos, 10)
    engine = build_engine()

    summary = await engine.categorize_batch(BatchCategorizationRequest(organization_id=ORG))

    assert summary.total == 10
    assert summary.categorized == 0
    assert summary.skipped_by_budget == 10
    assert summary.llm_calls == 0
    assert llm_client.calls == []
    assert all(o.state == CategorizationState.LLM_QUEUED for o in summary.outcomes)
    assert all(tx.category_id is None for tx in repos.transactions.transactions.values())
    await engine.aclose()


@pytest.mark.anyio
async def test_transaction_missing_from_llm_reply(repos, build_engine) -> None:
    def reply(transactions):
        return json.dumps(
            [
                {"transaction_id": tx.id, "category_id": SHOPPING.id, "confidence": 0.85, "reasoning": "retail"}
                for tx in transactions[:9]
            ]
        )

    ids = add_unknown(repos, 10)
    client = FakeLLMClient(reply=reply)
    engine = build_engine(llm_client=client)

    summary = await engine.categorize_batch(BatchCategorizationRequest(organization_id=ORG, transaction_ids=ids))

    assert len(client.calls) == 1
    assert summary.categorized == 9
    assert summary.failed == 1
    last = summary.outcomes[-1]
    assert last.transaction_id == ids[-1]
    assert last.result.category_id is None
    assert last.error == "Transaction not found in LLM response"
    assert repos.transactions.transactions[ids[-1]].category_id is None
    assert repos.transactions.transactions[ids[0]].category_id == SHOPPING.id
    assert repos.transactions.transactions[ids[0]].metadata.method == CategorizationMethod.LLM_BATCH
    await engine.aclose()


@pytest.mark.anyio
async def test_correction_teaches_fuzzy_pattern(repos, build_engine, llm_client) -> None:
    repos.transactions.add(
        make_transaction(
            "t1",
            merchant="WHOLE FOODS",
            category_id=SHOPPING.id,
            metadata=CategorizationMetadata(confidence_score=0.8, method=CategorizationMethod.LLM_BATCH),
        )
    )
    engine = build_engine()

    feedback = await engine.record_feedback(
        CategorizationFeedback(transaction_id="t1", organization_id=ORG, new_category_id=GROCERIES.id)
    )
    await engine.background.join()

    assert feedback.old_category_id == SHOPPING.id
    assert feedback.method_used == CategorizationMethod.LLM_BATCH
    assert feedback.confidence_before == 0.8
    corrected = repos.transactions.transactions["t1"]
    assert corrected.category_id == GROCERIES.id
    assert corrected.metadata.user_corrected is True
    assert corrected.metadata.method == CategorizationMethod.MANUAL
    assert corrected.metadata.feedback_id == feedback.id

    repos.transactions.add(make_transaction("t2", merchant="WHOLE FOODS MARKET #12"))
    outcome = await engine.categorize_one("t2")

    assert outcome.result.method == CategorizationMethod.PATTERN
    assert outcome.result.category_id == GROCERIES.id
    assert 0.7 <= outcome.result.confidence < 1.0
    assert llm_client.calls == []
    await engine.aclose()


@pytest.mark.anyio
async def test_rejection_flags_for_review_without_learning(repos, build_engine) -> None:
    repos.transactions.add(
        make_transaction(
            "t1",
            merchant="Corner Shop",
            category_id=SHOPPING.id,
            metadata=CategorizationMetadata(confidence_score=0.75, method=CategorizationMethod.LLM_BATCH),
        )
    )
    engine = build_engine()

    await engine.record_feedback(
        CategorizationFeedback(
            transaction_id="t1",
            organization_id=ORG,
            new_category_id=SHOPPING.id,
            feedback_type=FeedbackType.REJECTION,
        )
    )
    await engine.background.join()

    stored = repos.transactions.transactions["t1"]
    assert stored.category_id == SHOPPING.id
    assert stored.metadata.needs_review is True
    assert stored.metadata.user_corrected is False
    assert repos.patterns.patterns == {}
    assert len(repos.feedback.feedback) == 1
    await engine.aclose()


@pytest.mark.anyio
async def test_feedback_for_unknown_transaction(build_engine) -> None:
    engine = build_engine()

    with pytest.raises(TransactionNotFoundError):
        await engine.record_feedback(
            CategorizationFeedback(transaction_id="nope", organization_id=ORG, new_category_id=GROCERIES.id)
        )
    await engine.aclose()


@pytest.mark.anyio
async def test_user_corrections_are_never_overwritten(repos, build_engine, llm_client) -> None:
    repos.transactions.add(
        make_transaction(
            "t1",
            merchant="Unknown Vendor",
            category_id=GROCERIES.id,
            metadata=CategorizationMetadata(user_corrected=True, method=CategorizationMethod.MANUAL),
        )
    )
    repos.transactions.add(make_transaction("t2", merchant="Other Vendor", category_id=FOOD.id))
    engine = build_engine()

    outcome = await engine.categorize_one("t1")
    assert outcome.status == OutcomeStatus.SKIPPED
    assert outcome.error == "user corrected"

    summary = await engine.categorize_batch(
        BatchCategorizationRequest(organization_id=ORG, transaction_ids=["t1", "t2"])
    )
    assert summary.skipped == 2
    assert [o.error for o in summary.outcomes] == ["user corrected", "already categorized"]
    assert llm_client.calls == []
    assert repos.transactions.transactions["t1"].category_id == GROCERIES.id

    summary = await engine.categorize_batch(
        BatchCategorizationRequest(organization_id=ORG, transaction_ids=["t2"], force_recategorize=True)
    )
    assert summary.categorized == 1
    assert repos.transactions.transactions["t2"].category_id == SHOPPING.id
    await engine.aclose()


@pytest.mark.anyio
async def test_unknown_transaction_raises(build_engine) -> None:
    engine = build_engine()

    with pytest.raises(TransactionNotFoundError):
        await engine.categorize_one("missing")
    await engine.aclose()


@pytest.mark.anyio
async def test_organization_threshold_sends_weak_pattern_to_llm(repos, build_engine, llm_client) -> None:
    repos.organization_settings.settings[ORG] = OrganizationSettings(organization_id=ORG, confidence_threshold=0.9)
    await repos.patterns.upsert_pattern(ORG, "STARBUCKS", FOOD.id, 0.85)
    repos.transactions.add(make_transaction("t1", merchant="Starbucks"))
    engine = build_engine()

    outcome = await engine.categorize_one("t1")

    assert len(llm_client.calls) == 1
    assert outcome.status == OutcomeStatus.CATEGORIZED
    assert outcome.result.method == CategorizationMethod.LLM_BATCH
    assert outcome.result.category_id == SHOPPING.id
    await engine.aclose()


@pytest.mark.anyio
async def test_request_threshold_overrides_organization(repos, build_engine, llm_client) -> None:
    repos.organization_settings.settings[ORG] = OrganizationSettings(organization_id=ORG, confidence_threshold=0.9)
    await repos.patterns.upsert_pattern(ORG, "STARBUCKS", FOOD.id, 0.85)
    repos.transactions.add(make_transaction("t1", merchant="Starbucks"))
    engine = build_engine()

    summary = await engine.categorize_batch(
        BatchCategorizationRequest(organization_id=ORG, transaction_ids=["t1"], confidence_threshold=0.8)
    )

    assert summary.categorized == 1
    assert summary.outcomes[0].result.method == CategorizationMethod.PATTERN
    assert llm_client.calls == []
    await engine.aclose()


@pytest.mark.anyio
async def test_low_confidence_llm_answer_needs_review(repos, build_engine) -> None:
    add_unknown(repos, 2)
    engine = build_engine(llm_client=FakeLLMClient(category=TRANSPORT, confidence=0.5))

    summary = await engine.categorize_batch(BatchCategorizationRequest(organization_id=ORG))

    assert summary.categorized == 2
    assert summary.low_confidence == 2
    outcome = summary.outcomes[0]
    assert outcome.status == OutcomeStatus.LOW_CONFIDENCE
    assert outcome.result.low_confidence is True
    stored = repos.transactions.transactions[outcome.transaction_id]
    assert stored.category_id == TRANSPORT.id
    assert stored.metadata.needs_review is True
    await engine.aclose()


@pytest.mark.anyio
async def test_without_llm_best_result_is_kept_as_low_confidence(repos, build_engine) -> None:
    await repos.patterns.upsert_pattern(ORG, "STARBUCKS", FOOD.id, 0.5)
    repos.transactions.add(make_transaction("t1", merchant="Starbucks"))
    repos.transactions.add(make_transaction("t2", merchant="Nothing Like It"))
    engine = build_engine(llm_client=None)

    assert engine.llm is None
    summary = await engine.categorize_batch(BatchCategorizationRequest(organization_id=ORG))

    by_id = {o.transaction_id: o for o in summary.outcomes}
    assert by_id["t1"].status == OutcomeStatus.LOW_CONFIDENCE
    assert by_id["t2"].status == OutcomeStatus.SKIPPED
    assert by_id["t2"].error == "no strategy produced a category"
    assert summary.categorized == 1
    assert summary.low_confidence == 1
    assert summary.skipped == 1
    assert repos.transactions.transactions["t1"].metadata.needs_review is True
    assert repos.transactions.transactions["t2"].category_id is None
    await engine.aclose()


@pytest.mark.anyio
async def test_single_transactions_queue_until_min_batch_size(repos, build_engine, llm_client) -> None:
    queue = InMemoryJobQueue()
    ids = add_unknown(repos, 5)
    engine = build_engine(job_queue=queue)

    for transaction_id in ids[:4]:
        outcome = await engine.categorize_one(transaction_id)
        assert outcome.status == OutcomeStatus.QUEUED
        assert outcome.state == CategorizationState.LLM_QUEUED
    assert queue.requests == []
    assert engine.pending_llm(ORG) == ids[:4]

    await engine.categorize_one(ids[4])

    assert len(queue.requests) == 1
    assert queue.requests[0].transaction_ids == ids
    assert queue.requests[0].force_recategorize is False
    assert engine.pending_llm(ORG) == []
    assert llm_client.calls == []
    await engine.aclose()


@pytest.mark.anyio
async def test_flush_splits_forced_and_unforced(repos, build_engine) -> None:
    queue = InMemoryJobQueue()
    add_unknown(repos, 2)
    engine = build_engine(job_queue=queue)

    await engine.categorize_one("t0")
    await engine.categorize_one("t1", force=True)
    flushed = await engine.flush_llm_queue(ORG)

    assert flushed == 2
    assert [(r.transaction_ids, r.force_recategorize) for r in queue.requests] == [(["t0"], False), (["t1"], True)]
    assert await engine.flush_llm_queue(ORG) == 0
    await engine.aclose()


@pytest.mark.anyio
async def test_outcomes_follow_request_order(repos, build_engine) -> None:
    await repos.patterns.upsert_pattern(ORG, "STARBUCKS", FOOD.id, 0.95)
    repos.transactions.add(make_transaction("t1", merchant="Starbucks"))
    repos.transactions.add(make_transaction("t2", merchant="Unknown Vendor"))
    repos.transactions.add(make_transaction("t3", merchant="Elsewhere", organization_id="other-org"))
    engine = build_engine()

    summary = await engine.categorize_batch(
        BatchCategorizationRequest(organization_id=ORG, transaction_ids=["t2", "missing", "t1", "t2", "t3"])
    )

    assert [o.transaction_id for o in summary.outcomes] == ["t2", "missing", "t1", "t3"]
    assert summary.total == 4
    assert summary.failed == 2
    assert summary.outcomes[1].error == "transaction not found: missing"
    assert summary.outcomes[0].result.method == CategorizationMethod.LLM_BATCH
    assert summary.outcomes[2].result.method == CategorizationMethod.PATTERN
    assert repos.transactions.transactions["t3"].category_id is None
    await engine.aclose()


@pytest.mark.anyio
async def test_one_failing_transaction_does_not_sink_the_batch(repos, build_engine) -> None:
    class FlakyRepository(InMemoryTransactionRepository):
        async def update_categorization(self, transaction_id, category_id, metadata):
            if transaction_id == "t1":
                raise ConnectionError("database went away")
            await super().update_categorization(transaction_id, category_id, metadata)

    transactions = FlakyRepository()
    for transaction_id in ("t1", "t2"):
        transactions.add(make_transaction(transaction_id, merchant="Starbucks"))
    await repos.patterns.upsert_pattern(ORG, "STARBUCKS", FOOD.id, 0.95)
    engine = build_engine(transactions=transactions)

    summary = await engine.categorize_batch(BatchCategorizationRequest(organization_id=ORG))

    assert [o.status for o in summary.outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.CATEGORIZED]
    assert "database went away" in summary.outcomes[0].error
    await engine.aclose()


@pytest.mark.anyio
async def test_cancelled_batch_keeps_deterministic_results(repos, build_engine, llm_client) -> None:
    await repos.patterns.upsert_pattern(ORG, "STARBUCKS", FOOD.id, 0.95)
    repos.transactions.add(make_transaction("s1", merchant="Starbucks"))
    add_unknown(repos, 3)
    engine = build_engine()
    cancel = asyncio.Event()
    cancel.set()

    summary = await engine.categorize_batch(BatchCategorizationRequest(organization_id=ORG), cancel_event=cancel)

    assert summary.categorized == 1
    assert summary.cancelled == 3
    assert llm_client.calls == []
    await engine.aclose()


@pytest.mark.anyio
async def test_batch_fails_without_categories(repos, build_engine) -> None:
    repos.categories.categories = []
    add_unknown(repos, 2)
    engine = build_engine()

    summary = await engine.categorize_batch(BatchCategorizationRequest(organization_id=ORG))

    assert summary.failed == 2
    assert summary.outcomes[0].error == "no categories configured for organization"
    await engine.aclose()


@pytest.mark.anyio
async def test_rule_match_is_recorded_and_counted(repos, build_engine, llm_client) -> None:
    rule = Rule(
        organization_id=ORG,
        category_id=TRANSPORT.id,
        field=RuleField.MERCHANT,
        operator=RuleOperator.CONTAINS,
        value="uber",
        confidence=0.95,
    )
    await repos.rules.create_rule(rule)
    repos.transactions.add(make_transaction("t1", merchant="UBER *TRIP"))
    engine = build_engine()

    outcome = await engine.categorize_one("t1")
    await engine.background.join()

    assert outcome.result.method == CategorizationMethod.RULE
    stored = repos.transactions.transactions["t1"]
    assert stored.category_id == TRANSPORT.id
    assert [m.rule_id for m in stored.metadata.rule_matches] == [rule.id]
    assert repos.rules.rules[rule.id].usage_count == 1
    assert llm_client.calls == []
    await engine.aclose()


@pytest.mark.anyio
async def test_estimate_batch_cost(repos, build_engine) -> None:
    ids = add_unknown(repos, 3)
    repos.transactions.add(make_transaction("done", merchant="Known", category_id=FOOD.id))
    engine = build_engine()

    estimate = await engine.estimate_batch_cost(
        BatchCategorizationRequest(organization_id=ORG, transaction_ids=[*ids, "done"])
    )

    eligible = [repos.transactions.transactions[tid] for tid in ids]
    categories = await repos.categories.list_categories(ORG)
    assert estimate.transaction_count == 3
    assert estimate.model == "gpt-4o-mini"
    assert estimate.estimated_cost == pytest.approx(engine.llm.estimate_cost(eligible, categories))
    assert estimate.estimated_cost > 0
    await engine.aclose()


@pytest.mark.anyio
async def test_slow_repository_raises_repository_error(repos, build_engine) -> None:
    class SlowRepository(InMemoryTransactionRepository):
        async def get_by_id(self, transaction_id):
            await asyncio.sleep(1)
            return None

    engine = build_engine(
        transactions=SlowRepository(),
        settings=EngineSettings(repository_timeout=0.05),
    )

    with pytest.raises(RepositoryError) as excinfo:
        await engine.categorize_one("t1")
    assert excinfo.value.retryable is True
    await engine.aclose()


@pytest.mark.anyio
async def test_accepted_results_are_indexed_for_similarity(repos, build_engine) -> None:
    await repos.patterns.upsert_pattern(ORG, "STARBUCKS", FOOD.id, 0.95)
    repos.transactions.add(make_transaction("t1", merchant="Starbucks"))
    engine = build_engine()

    await engine.categorize_one("t1")
    await engine.background.join()

    assert repos.vectors.size(ORG) == 1
    await engine.aclose()
