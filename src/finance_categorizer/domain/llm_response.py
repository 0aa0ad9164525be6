"""
Parsing of batch categorization replies.

The model is asked for a JSON array of ``{transaction_id, category_id, confidence,
reasoning}`` objects. Replies are often wrapped in markdown fences or in an object,
use a category name instead of an id, or omit transactions. Every transaction in the
batch gets exactly one ``LLMItemResult`` back, in batch order.
"""
import json

from finance_categorizer.errors import LLMResponseError
from finance_categorizer.logger import get_logger
from finance_categorizer.models import Category, LLMItemResult, Transaction

logger = get_logger(__name__)

TRANSACTION_NOT_FOUND = "Transaction not found in LLM response"
NO_MATCHING_CATEGORY = "no matching category"

_WRAPPER_KEYS = ("results", "transactions", "categorizations")


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _load_entries(text: str) -> list:
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise LLMResponseError("empty LLM response")
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        # Some models add prose around the array.
        start, end = cleaned.find("["), cleaned.rfind("]")
        if start == -1 or end <= start:
            raise LLMResponseError(f"failed to parse LLM response: {e}") from e
        try:
            payload = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as inner:
            raise LLMResponseError(f"failed to parse LLM response: {inner}") from inner

    if isinstance(payload, dict):
        for key in _WRAPPER_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
        raise LLMResponseError("LLM response object has no results array")
    if not isinstance(payload, list):
        raise LLMResponseError(f"unexpected LLM response type: {type(payload).__name__}")
    return payload


def _resolve_category(
    entry: dict, by_id: dict[int, Category], by_name: dict[str, Category]
) -> Category | None:
    raw_id = entry.get("category_id")
    if raw_id is not None and not isinstance(raw_id, bool):
        try:
            category = by_id.get(int(raw_id))
        except (TypeError, ValueError):
            category = None
        if category is not None:
            return category

    raw_name = entry.get("category_name") or entry.get("category")
    if isinstance(raw_name, str) and raw_name.strip():
        return by_name.get(raw_name.strip().lower())
    return None


def _parse_entry(
    transaction_id: str,
    entry: dict,
    by_id: dict[int, Category],
    by_name: dict[str, Category],
) -> LLMItemResult:
    raw_confidence = entry.get("confidence", 0.0)
    try:
        confidence = float(raw_confidence)
    except (TypeError, ValueError):
        return LLMItemResult(
            transaction_id=transaction_id,
            error=f"invalid confidence value: {raw_confidence!r}",
        )

    reasoning = entry.get("reasoning") or ""
    if not isinstance(reasoning, str):
        reasoning = str(reasoning)

    category = _resolve_category(entry, by_id, by_name)
    if category is None:
        return LLMItemResult(
            transaction_id=transaction_id,
            confidence=confidence,
            reasoning=reasoning or NO_MATCHING_CATEGORY,
            error=NO_MATCHING_CATEGORY,
        )

    return LLMItemResult(
        transaction_id=transaction_id,
        category_id=category.id,
        category_name=category.name,
        confidence=confidence,
        reasoning=reasoning,
        success=True,
    )


def parse_batch_response(
    text: str, transactions: list[Transaction], categories: list[Category]
) -> list[LLMItemResult]:
    """
    Map a raw model reply onto the batch.

    Raises ``LLMResponseError`` only when the reply as a whole cannot be decoded;
    problems with single entries become failed item results.
    """
    entries = _load_entries(text)
    by_id = {category.id: category for category in categories}
    by_name = {category.name.strip().lower(): category for category in categories}
    expected = {transaction.id for transaction in transactions}

    parsed: dict[str, LLMItemResult] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            logger.debug("[LLM] Ignoring non-object entry in response: %r", entry)
            continue
        transaction_id = entry.get("transaction_id")
        if transaction_id is None:
            continue
        transaction_id = str(transaction_id)
        if transaction_id not in expected:
            logger.debug("[LLM] Response mentions unknown transaction %s", transaction_id)
            continue
        if transaction_id in parsed:
            continue
        parsed[transaction_id] = _parse_entry(transaction_id, entry, by_id, by_name)

    results: list[LLMItemResult] = []
    for transaction in transactions:
        item = parsed.get(transaction.id)
        if item is None:
            item = LLMItemResult(transaction_id=transaction.id, error=TRANSACTION_NOT_FOUND)
        results.append(item)
    return results
