from finance_categorizer.classifiers.llm import BatchLLMClassifier
from finance_categorizer.classifiers.patterns import PatternCache
from finance_categorizer.classifiers.rules import RuleMatcher
from finance_categorizer.classifiers.similarity import SimilarityRetriever
from finance_categorizer.core.settings import EngineSettings, log_environment
from finance_categorizer.integration import memory
from finance_categorizer.integration.embeddings import HashingEmbeddingProvider
from finance_categorizer.integration.openai_client import OpenAIBatchClient
from finance_categorizer.integration.repositories import (
    AlertSink,
    CategoryRepository,
    CostRepository,
    EmbeddingProvider,
    FeedbackRepository,
    JobQueue,
    LLMBatchRepository,
    LLMClient,
    PatternRepository,
    RuleRepository,
    SettingsRepository,
    TransactionRepository,
    VectorRepository,
)
from finance_categorizer.logger import get_logger, setup_logging
from finance_categorizer.manager import CategorizationEngine
from finance_categorizer.services.background import BackgroundTaskQueue
from finance_categorizer.services.governor import CostGovernor, RateLimiter
from finance_categorizer.services.learner import FeedbackLearner

logger = get_logger(__name__)


def create_engine(
    settings: EngineSettings | None = None,
    *,
    transactions: TransactionRepository | None = None,
    categories: CategoryRepository | None = None,
    rules: RuleRepository | None = None,
    patterns: PatternRepository | None = None,
    feedback: FeedbackRepository | None = None,
    vectors: VectorRepository | None = None,
    costs: CostRepository | None = None,
    batches: LLMBatchRepository | None = None,
    organization_settings: SettingsRepository | None = None,
    llm_client: LLMClient | None = None,
    embeddings: EmbeddingProvider | None = None,
    alerts: AlertSink | None = None,
    job_queue: JobQueue | None = None,
    rate_limiter: RateLimiter | None = None,
    configure_logging: bool = False,
) -> CategorizationEngine:
    """
    Wire a categorization engine. Collaborators that are not supplied fall back to
    the in-memory implementations; the LLM stage is enabled when an LLM client is
    passed or an OpenAI API key is configured.
    """
    if configure_logging:
        setup_logging()
        log_environment()

    settings = settings or EngineSettings.from_env()
    transactions = transactions or memory.InMemoryTransactionRepository()
    categories = categories or memory.InMemoryCategoryRepository()
    feedback = feedback or memory.InMemoryFeedbackRepository()

    background = BackgroundTaskQueue(
        maxsize=settings.background_queue_size,
        workers=settings.background_workers,
    )

    rule_matcher = RuleMatcher(
        rules or memory.InMemoryRuleRepository(),
        background=background,
        transactions=transactions,
    )
    pattern_cache = PatternCache(
        patterns or memory.InMemoryPatternRepository(),
        background=background,
        similarity_floor=settings.pattern_similarity_floor,
        top_k=settings.pattern_top_k,
        write_threshold=settings.pattern_write_threshold,
    )
    similarity = SimilarityRetriever(
        embeddings or HashingEmbeddingProvider(settings.embedding_dimensions),
        vectors or memory.InMemoryVectorRepository(),
        threshold=settings.similarity_threshold,
        top_k=settings.similarity_top_k,
        embedding_timeout=settings.embedding_timeout,
        rebuild_after=settings.index_rebuild_after,
    )

    if llm_client is None and settings.openai_api_key:
        llm_client = OpenAIBatchClient(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_output_tokens,
            timeout=settings.llm_timeout,
        )

    llm = None
    if llm_client is not None:
        governor = CostGovernor(
            costs or memory.InMemoryCostRepository(),
            alerts=alerts,
            default_daily_budget=settings.default_daily_budget,
            default_monthly_budget=settings.default_monthly_budget,
            alert_thresholds=settings.alert_thresholds,
        )
        llm = BatchLLMClassifier(
            llm_client,
            governor,
            rate_limiter
            or RateLimiter(
                max_requests_per_hour=settings.rate_limit_requests_per_hour,
                max_cost_per_hour=settings.rate_limit_cost_per_hour,
            ),
            batches=batches or memory.InMemoryLLMBatchRepository(),
            strategy=settings.llm_model_strategy,
            model_name=settings.llm_model,
            max_batch_size=settings.max_batch_size,
        )
        logger.info(
            "[LLM] Batch classifier enabled: model=%s, strategy=%s",
            llm.select_model().name,
            settings.llm_model_strategy,
        )
    else:
        logger.warning("OPENAI_API_KEY not found. LLM categorization disabled.")

    learner = FeedbackLearner(
        feedback,
        pattern_cache,
        similarity=similarity,
        rules=rule_matcher,
        transactions=transactions,
        pattern_confidence=settings.feedback_pattern_confidence,
    )

    return CategorizationEngine(
        transactions=transactions,
        categories=categories,
        rules=rule_matcher,
        patterns=pattern_cache,
        learner=learner,
        similarity=similarity,
        llm=llm,
        organization_settings=organization_settings,
        job_queue=job_queue,
        background=background,
        settings=settings,
    )
