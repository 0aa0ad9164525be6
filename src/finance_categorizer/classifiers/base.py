from abc import ABC, abstractmethod

from finance_categorizer.models import (
    CategorizationMethod,
    CategorizationResult,
    CategorizationState,
    Transaction,
)


class Classifier(ABC):
    """A deterministic categorization strategy tried before the LLM."""

    method: CategorizationMethod
    state: CategorizationState

    @abstractmethod
    async def classify(self, transaction: Transaction) -> CategorizationResult:
        """Attempt to categorize the transaction. Never returns None; misses carry confidence 0."""
        pass

    async def learn(self, transaction: Transaction, category_id: int, confidence: float) -> None:
        """Learn from a confirmed transaction-category pair."""
        return None

    @property
    def name(self) -> str:
        return self.__class__.__name__
