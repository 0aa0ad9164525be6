import pytest

from conftest import ORG, make_transaction
from finance_categorizer.classifiers.patterns import PatternCache, composite_score
from finance_categorizer.integration.memory import InMemoryPatternRepository
from finance_categorizer.models import CategorizationMethod, SimilarPattern
from finance_categorizer.services.background import BackgroundTaskQueue


@pytest.fixture
def repo() -> InMemoryPatternRepository:
    return InMemoryPatternRepository()


@pytest.mark.anyio
async def test_exact_match_returns_stored_confidence(repo: InMemoryPatternRepository) -> None:
    await repo.upsert_pattern(ORG, "STARBUCKS", 1, 0.95)
    cache = PatternCache(repo)

    result = await cache.classify(make_transaction("t1", merchant="STARBUCKS #4521", amount=-5.75))

    assert result.method == CategorizationMethod.PATTERN
    assert result.category_id == 1
    assert result.confidence == 0.95


@pytest.mark.anyio
async def test_fuzzy_match_scales_confidence_by_similarity(repo: InMemoryPatternRepository) -> None:
    await repo.upsert_pattern(ORG, "WHOLE FOODS", 2, 1.0)
    cache = PatternCache(repo)

    result = await cache.classify(make_transaction("t1", merchant="WHOLE FOODS MARKET #12"))

    assert result.category_id == 2
    assert result.confidence == pytest.approx(22 / 29, abs=1e-3)
    assert result.confidence < 1.0


@pytest.mark.anyio
async def test_fuzzy_match_above_write_threshold_is_cached(repo: InMemoryPatternRepository) -> None:
    await repo.upsert_pattern(ORG, "WHOLE FOODS", 2, 1.0)
    background = BackgroundTaskQueue()
    cache = PatternCache(repo, background=background)

    await cache.classify(make_transaction("t1", merchant="WHOLE FOODS MARKET #12"))
    await background.join()

    learned = {entry.merchant_pattern: entry for entry in await repo.list_patterns(ORG)}
    assert learned["WHOLE FOODS MARKET"].category_id == 2
    assert learned["WHOLE FOODS MARKET"].confidence == pytest.approx(22 / 29, abs=1e-3)
    await background.aclose()


@pytest.mark.anyio
async def test_weak_fuzzy_match_is_not_cached(repo: InMemoryPatternRepository) -> None:
    await repo.upsert_pattern(ORG, "SHELL", 4, 0.9)
    background = BackgroundTaskQueue()
    cache = PatternCache(repo, background=background)

    result = await cache.classify(make_transaction("t1", merchant="SHELLFISH SHACK"))
    await background.join()

    assert result.category_id == 4
    assert result.confidence < 0.6
    assert [entry.merchant_pattern for entry in await repo.list_patterns(ORG)] == ["SHELL"]
    await background.aclose()


@pytest.mark.anyio
async def test_no_candidates_above_floor(repo: InMemoryPatternRepository) -> None:
    await repo.upsert_pattern(ORG, "NETFLIX", 3, 0.9)
    cache = PatternCache(repo)

    result = await cache.classify(make_transaction("t1", merchant="ZZ TOP TICKETS"))

    assert result.category_id is None
    assert result.confidence == 0.0


@pytest.mark.anyio
async def test_patterns_are_scoped_per_organization(repo: InMemoryPatternRepository) -> None:
    await repo.upsert_pattern("other-org", "STARBUCKS", 1, 0.95)
    cache = PatternCache(repo)

    result = await cache.classify(make_transaction("t1", merchant="STARBUCKS"))

    assert result.category_id is None


@pytest.mark.anyio
async def test_repeated_feeding_converges(repo: InMemoryPatternRepository) -> None:
    cache = PatternCache(repo)
    usage, confidence = [], []
    for value in (0.7, 0.9, 0.8, 0.75):
        entry = await cache.upsert(ORG, "Blue Bottle Coffee #3", 1, value)
        usage.append(entry.usage_count)
        confidence.append(entry.confidence)

    assert usage == [1, 2, 3, 4]
    assert confidence == sorted(confidence)
    assert confidence[-1] == 0.9


@pytest.mark.anyio
async def test_clear_removes_only_organization_patterns(repo: InMemoryPatternRepository) -> None:
    await repo.upsert_pattern(ORG, "STARBUCKS", 1, 0.95)
    await repo.upsert_pattern("other-org", "STARBUCKS", 1, 0.95)
    cache = PatternCache(repo)

    await cache.clear(ORG)

    assert await repo.list_patterns(ORG) == []
    assert len(await repo.list_patterns("other-org")) == 1


def test_composite_score_weights_usage_and_confidence() -> None:
    frequent = SimilarPattern(merchant_pattern="A", category_id=1, confidence=0.8, similarity=0.8, usage_count=200)
    fresh = SimilarPattern(merchant_pattern="B", category_id=2, confidence=0.8, similarity=0.85, usage_count=1)

    assert composite_score(frequent) == pytest.approx(0.7 * 0.8 + 0.2 + 0.08)
    assert composite_score(frequent) > composite_score(fresh)
