class CategorizationError(Exception):
    """Base class for engine failures. ``retryable`` tells the job layer whether to retry."""

    retryable = False


class InsufficientBudgetError(CategorizationError):
    def __init__(self, limit: str, current: float, estimated: float, budget: float) -> None:
        self.limit = limit
        self.current = current
        self.estimated = estimated
        self.budget = budget
        super().__init__(
            f"operation would exceed {limit} budget "
            f"(current: ${current:.4f}, estimated: ${estimated:.4f}, limit: ${budget:.2f})"
        )


class RateLimitedError(CategorizationError):
    retryable = True

    def __init__(self, message: str, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(f"{message}; retry after {retry_after:.0f}s")


class EmbeddingError(CategorizationError):
    pass


class ModelNotAvailableError(CategorizationError):
    pass


class LLMResponseError(CategorizationError):
    pass


class LLMServiceError(CategorizationError):
    retryable = True


class LLMTimeoutError(LLMServiceError):
    pass


class RepositoryError(CategorizationError):
    retryable = True


class TransactionNotFoundError(CategorizationError):
    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"transaction not found: {transaction_id}")


class InvalidRuleError(CategorizationError):
    pass
