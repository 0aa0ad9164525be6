import os
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

from finance_categorizer.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_PATH: str | None = None
_CONFIG_FILE_VALUES: dict[str, str] = {}

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "LOG_CLIENT_LEVEL",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_BASE_URL",
    "LLM_MODEL_STRATEGY",
    "LLM_TEMPERATURE",
    "LLM_MAX_OUTPUT_TOKENS",
    "LLM_TIMEOUT_SECONDS",
    "CONFIDENCE_THRESHOLD",
    "PATTERN_WRITE_THRESHOLD",
    "PATTERN_SIMILARITY_FLOOR",
    "PATTERN_TOP_K",
    "FEEDBACK_PATTERN_CONFIDENCE",
    "SIMILARITY_THRESHOLD",
    "SIMILARITY_TOP_K",
    "EMBEDDING_DIMENSIONS",
    "EMBEDDING_TIMEOUT_SECONDS",
    "INDEX_REBUILD_AFTER",
    "MAX_BATCH_SIZE",
    "MIN_BATCH_SIZE",
    "MAX_CONCURRENCY",
    "REPOSITORY_TIMEOUT_SECONDS",
    "BACKGROUND_QUEUE_SIZE",
    "BACKGROUND_WORKERS",
    "DEFAULT_DAILY_BUDGET",
    "DEFAULT_MONTHLY_BUDGET",
    "BUDGET_ALERT_THRESHOLDS",
    "RATE_LIMIT_REQUESTS_PER_HOUR",
    "RATE_LIMIT_COST_PER_HOUR",
)

_SENSITIVE_MARKERS = ("KEY", "TOKEN", "SECRET", "PASSWORD", "AUTH")


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    return find_dotenv(usecwd=True) or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    return os.path.join(os.getcwd(), CONFIG_FILENAME)


def _clean_config_value(raw_value: str) -> str:
    value = raw_value.strip()
    if value[:1] in {"'", '"'}:
        quote = value[0]
        closing = value.find(quote, 1)
        if closing > 0:
            return value[1:closing]
    if " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    return value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read flat ``KEY: value`` lines. Nested YAML is not supported."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            value = _clean_config_value(raw_value)
            if key and value:
                values[key] = value
    return values


def load_environment() -> None:
    global _CONFIG_FILE_PATH
    global _CONFIG_FILE_VALUES

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _CONFIG_FILE_PATH = _resolve_config_path()
    _CONFIG_FILE_VALUES = read_config_file(_CONFIG_FILE_PATH)

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def get_config_path() -> str | None:
    return _CONFIG_FILE_PATH


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_float(name: str, default: float = 0.0, min_value: float | None = None) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("[ENV] %s='%s' below minimum %s, using default %s.", name, raw, min_value, default)
        return default
    return value


def get_env_float_list(name: str, default: list[float]) -> list[float]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    try:
        values = [float(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return list(default)
    return sorted(values)


def _mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    sensitive = any(marker in name.upper() for marker in _SENSITIVE_MARKERS)
    if not sensitive and not sanitized.startswith(("sk-", "Bearer ")):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Categorization engine configuration (masked where needed).")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else _mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


@dataclass(frozen=True)
class EngineSettings:
    confidence_threshold: float = 0.7
    pattern_write_threshold: float = 0.6
    pattern_similarity_floor: float = 0.3
    pattern_top_k: int = 5
    feedback_pattern_confidence: float = 1.0
    similarity_threshold: float = 0.8
    similarity_top_k: int = 10
    embedding_dimensions: int = 512
    embedding_timeout: float = 10.0
    index_rebuild_after: int = 10
    max_batch_size: int = 100
    min_batch_size: int = 20
    max_concurrency: int = 8
    repository_timeout: float = 15.0
    background_queue_size: int = 1000
    background_workers: int = 2
    llm_model: str | None = None
    llm_model_strategy: str = "cost_optimized"
    llm_temperature: float = 0.1
    llm_max_output_tokens: int = 4000
    llm_timeout: float = 60.0
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    default_daily_budget: float = 5.0
    default_monthly_budget: float = 50.0
    alert_thresholds: list[float] = field(default_factory=lambda: [0.5, 0.8, 0.95])
    rate_limit_requests_per_hour: int = 100
    rate_limit_cost_per_hour: float = 10.0

    @classmethod
    def from_env(cls) -> "EngineSettings":
        defaults = cls()
        return cls(
            confidence_threshold=get_env_float("CONFIDENCE_THRESHOLD", defaults.confidence_threshold, 0.0),
            pattern_write_threshold=get_env_float("PATTERN_WRITE_THRESHOLD", defaults.pattern_write_threshold, 0.0),
            pattern_similarity_floor=get_env_float(
                "PATTERN_SIMILARITY_FLOOR", defaults.pattern_similarity_floor, 0.0
            ),
            pattern_top_k=get_env_int("PATTERN_TOP_K", defaults.pattern_top_k, min_value=1),
            feedback_pattern_confidence=get_env_float(
                "FEEDBACK_PATTERN_CONFIDENCE", defaults.feedback_pattern_confidence, 0.0
            ),
            similarity_threshold=get_env_float("SIMILARITY_THRESHOLD", defaults.similarity_threshold, 0.0),
            similarity_top_k=get_env_int("SIMILARITY_TOP_K", defaults.similarity_top_k, min_value=1),
            embedding_dimensions=get_env_int("EMBEDDING_DIMENSIONS", defaults.embedding_dimensions, min_value=16),
            embedding_timeout=get_env_float("EMBEDDING_TIMEOUT_SECONDS", defaults.embedding_timeout, 0.1),
            index_rebuild_after=get_env_int("INDEX_REBUILD_AFTER", defaults.index_rebuild_after, min_value=1),
            max_batch_size=get_env_int("MAX_BATCH_SIZE", defaults.max_batch_size, min_value=1),
            min_batch_size=get_env_int("MIN_BATCH_SIZE", defaults.min_batch_size, min_value=1),
            max_concurrency=get_env_int("MAX_CONCURRENCY", defaults.max_concurrency, min_value=1),
            repository_timeout=get_env_float("REPOSITORY_TIMEOUT_SECONDS", defaults.repository_timeout, 0.1),
            background_queue_size=get_env_int("BACKGROUND_QUEUE_SIZE", defaults.background_queue_size, min_value=1),
            background_workers=get_env_int("BACKGROUND_WORKERS", defaults.background_workers, min_value=1),
            llm_model=os.getenv("OPENAI_MODEL") or None,
            llm_model_strategy=os.getenv("LLM_MODEL_STRATEGY", defaults.llm_model_strategy),
            llm_temperature=get_env_float("LLM_TEMPERATURE", defaults.llm_temperature, 0.0),
            llm_max_output_tokens=get_env_int(
                "LLM_MAX_OUTPUT_TOKENS", defaults.llm_max_output_tokens, min_value=1
            ),
            llm_timeout=get_env_float("LLM_TIMEOUT_SECONDS", defaults.llm_timeout, 0.1),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            default_daily_budget=get_env_float("DEFAULT_DAILY_BUDGET", defaults.default_daily_budget, 0.0),
            default_monthly_budget=get_env_float("DEFAULT_MONTHLY_BUDGET", defaults.default_monthly_budget, 0.0),
            alert_thresholds=get_env_float_list("BUDGET_ALERT_THRESHOLDS", defaults.alert_thresholds),
            rate_limit_requests_per_hour=get_env_int(
                "RATE_LIMIT_REQUESTS_PER_HOUR", defaults.rate_limit_requests_per_hour, min_value=1
            ),
            rate_limit_cost_per_hour=get_env_float(
                "RATE_LIMIT_COST_PER_HOUR", defaults.rate_limit_cost_per_hour, 0.0
            ),
        )


load_environment()
