import asyncio
from collections import defaultdict
from time import perf_counter

from finance_categorizer.errors import EmbeddingError
from finance_categorizer.integration.repositories import EmbeddingProvider, VectorRepository
from finance_categorizer.logger import get_logger
from finance_categorizer.models import (
    CategorizationMetadata,
    CategorizationMethod,
    CategorizationResult,
    CategorizationState,
    SimilarityMatch,
    Transaction,
)

from .base import Classifier

logger = get_logger(__name__)


def transaction_text(transaction: Transaction) -> str:
    parts = []
    if transaction.merchant_name:
        parts.append(transaction.merchant_name.strip())
    if transaction.description:
        parts.append(transaction.description.strip())
    parts.append("expense" if transaction.amount < 0 else "income")
    return " ".join(part for part in parts if part)


def vote(matches: list[SimilarityMatch]) -> tuple[int, float, float] | None:
    """
    Similarity-weighted vote over neighbours.

    Returns ``(category_id, agreement_share, top_similarity)`` for the winning
    category, or None when there is nothing to vote on.
    """
    if not matches:
        return None
    weights: dict[int, float] = defaultdict(float)
    best: dict[int, float] = defaultdict(float)
    for match in matches:
        weights[match.category_id] += match.similarity
        best[match.category_id] = max(best[match.category_id], match.similarity)

    total = sum(weights.values())
    if total <= 0:
        return None
    winner = max(weights, key=lambda category_id: (weights[category_id], best[category_id]))
    return winner, weights[winner] / total, best[winner]


class SimilarityRetriever(Classifier):
    method = CategorizationMethod.SIMILARITY
    state = CategorizationState.SIMILARITY

    def __init__(
        self,
        embeddings: EmbeddingProvider,
        vectors: VectorRepository,
        threshold: float = 0.8,
        top_k: int = 10,
        embedding_timeout: float = 10.0,
        rebuild_after: int = 10,
    ) -> None:
        self.embeddings = embeddings
        self.vectors = vectors
        self.threshold = threshold
        self.top_k = top_k
        self.embedding_timeout = embedding_timeout
        self.rebuild_after = rebuild_after
        self._corrections: dict[str, int] = defaultdict(int)

    async def _embed(self, transaction: Transaction) -> list[float]:
        text = transaction_text(transaction)
        try:
            return await asyncio.wait_for(self.embeddings.embed(text), timeout=self.embedding_timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingError(f"embedding timed out after {self.embedding_timeout}s") from e
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"failed to generate embedding: {e}") from e

    async def classify(self, transaction: Transaction) -> CategorizationResult:
        start = perf_counter()
        try:
            embedding = await self._embed(transaction)
            matches = await self.vectors.search(
                transaction.organization_id, embedding, self.threshold, self.top_k
            )
        except EmbeddingError as e:
            logger.warning("[SIMILARITY] Embedding failed for %s: %s", transaction.id, e)
            return CategorizationResult.empty(self.method, "embedding unavailable")
        except Exception as e:
            logger.warning("[SIMILARITY] Index search failed for %s: %s", transaction.id, e)
            return CategorizationResult.empty(self.method, "similarity index unavailable")

        elapsed_ms = (perf_counter() - start) * 1000
        outcome = vote(matches)
        if outcome is None:
            return CategorizationResult.empty(
                self.method, "no similar transactions found", processing_time_ms=elapsed_ms
            )

        category_id, share, top_similarity = outcome
        agreeing = sum(1 for match in matches if match.category_id == category_id)
        return CategorizationResult(
            category_id=category_id,
            confidence=share * top_similarity,
            method=self.method,
            processing_time_ms=elapsed_ms,
            explanation=f"Similar to {agreeing} of {len(matches)} previous transactions",
            metadata=CategorizationMetadata(similarity_matches=matches),
        )

    async def index_transaction(self, transaction: Transaction, category_id: int) -> None:
        embedding = await self._embed(transaction)
        await self.vectors.upsert_embedding(transaction.organization_id, transaction, category_id, embedding)

    async def learn(self, transaction: Transaction, category_id: int, confidence: float) -> None:
        await self.index_transaction(transaction, category_id)

    async def learn_from_feedback(self, transaction: Transaction, category_id: int) -> None:
        organization_id = transaction.organization_id
        await self.index_transaction(transaction, category_id)
        self._corrections[organization_id] += 1
        if self._corrections[organization_id] >= self.rebuild_after:
            self._corrections[organization_id] = 0
            logger.info("[SIMILARITY] Rebuilding index for organization %s.", organization_id)
            await self.vectors.rebuild_index(organization_id)
