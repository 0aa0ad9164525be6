import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest

from finance_categorizer.app import create_engine
from finance_categorizer.core.settings import EngineSettings
from finance_categorizer.domain.llm_response import parse_batch_response
from finance_categorizer.domain.prompts import estimate_tokens
from finance_categorizer.integration import memory
from finance_categorizer.manager import CategorizationEngine
from finance_categorizer.models import (
    CategorizationMetadata,
    Category,
    LLMBatchResponse,
    LLMModel,
    Transaction,
)

ORG = "org-1"

FOOD = Category(id=1, name="Food & Dining")
GROCERIES = Category(id=2, name="Groceries")
SHOPPING = Category(id=3, name="Shopping")
TRANSPORT = Category(id=4, name="Transport")


def make_transaction(
    transaction_id: str,
    merchant: str | None = None,
    description: str | None = None,
    amount: float = -10.0,
    category_id: int | None = None,
    metadata: CategorizationMetadata | None = None,
    organization_id: str = ORG,
) -> Transaction:
    return Transaction(
        id=transaction_id,
        organization_id=organization_id,
        amount=amount,
        date=datetime.now(timezone.utc),
        merchant_name=merchant,
        description=description,
        category_id=category_id,
        metadata=metadata,
    )


class FakeLLMClient:
    """Answers every transaction with one category unless a reply text is scripted."""

    def __init__(
        self,
        category: Category = SHOPPING,
        confidence: float = 0.9,
        reply: Callable[[list[Transaction]], str] | None = None,
        errors: list[Exception | None] | None = None,
    ) -> None:
        self.category = category
        self.confidence = confidence
        self.reply = reply
        self.errors = list(errors or [])
        self.calls: list[list[str]] = []

    def estimate_tokens(
        self, transactions: list[Transaction], categories: list[Category]
    ) -> tuple[int, int]:
        return estimate_tokens(transactions, categories)

    async def categorize_batch(
        self, transactions: list[Transaction], categories: list[Category], model: LLMModel
    ) -> LLMBatchResponse:
        self.calls.append([tx.id for tx in transactions])
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error

        if self.reply is not None:
            text = self.reply(transactions)
        else:
            text = json.dumps(
                [
                    {
                        "transaction_id": tx.id,
                        "category_id": self.category.id,
                        "confidence": self.confidence,
                        "reasoning": "looks right",
                    }
                    for tx in transactions
                ]
            )
        return LLMBatchResponse(
            results=parse_batch_response(text, transactions, categories),
            input_tokens=100 * len(transactions),
            output_tokens=50 * len(transactions),
            model=model.name,
        )


@dataclass
class Repositories:
    transactions: memory.InMemoryTransactionRepository = field(default_factory=memory.InMemoryTransactionRepository)
    categories: memory.InMemoryCategoryRepository = field(
        default_factory=lambda: memory.InMemoryCategoryRepository([FOOD, GROCERIES, SHOPPING, TRANSPORT])
    )
    rules: memory.InMemoryRuleRepository = field(default_factory=memory.InMemoryRuleRepository)
    patterns: memory.InMemoryPatternRepository = field(default_factory=memory.InMemoryPatternRepository)
    feedback: memory.InMemoryFeedbackRepository = field(default_factory=memory.InMemoryFeedbackRepository)
    vectors: memory.InMemoryVectorRepository = field(default_factory=memory.InMemoryVectorRepository)
    costs: memory.InMemoryCostRepository = field(default_factory=memory.InMemoryCostRepository)
    batches: memory.InMemoryLLMBatchRepository = field(default_factory=memory.InMemoryLLMBatchRepository)
    organization_settings: memory.InMemorySettingsRepository = field(
        default_factory=memory.InMemorySettingsRepository
    )
    alerts: memory.RecordingAlertSink = field(default_factory=memory.RecordingAlertSink)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def repos() -> Repositories:
    return Repositories()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(min_batch_size=5, max_batch_size=10)


@pytest.fixture
def llm_client() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def build_engine(
    repos: Repositories, settings: EngineSettings, llm_client: FakeLLMClient
) -> Callable[..., CategorizationEngine]:
    def build(**overrides) -> CategorizationEngine:
        options = {
            "transactions": repos.transactions,
            "categories": repos.categories,
            "rules": repos.rules,
            "patterns": repos.patterns,
            "feedback": repos.feedback,
            "vectors": repos.vectors,
            "costs": repos.costs,
            "batches": repos.batches,
            "organization_settings": repos.organization_settings,
            "alerts": repos.alerts,
            "llm_client": llm_client,
        }
        options.update(overrides)
        engine_settings = options.pop("settings", settings)
        return create_engine(engine_settings, **options)

    return build
