import re
from datetime import timedelta
from time import perf_counter

from finance_categorizer.errors import InvalidRuleError
from finance_categorizer.integration.repositories import RuleRepository, TransactionRepository
from finance_categorizer.logger import get_logger
from finance_categorizer.models import (
    CategorizationMetadata,
    CategorizationMethod,
    CategorizationResult,
    CategorizationState,
    Rule,
    RuleField,
    RuleMatch,
    RuleOperator,
    RuleTestResult,
    Transaction,
)
from finance_categorizer.services.background import BackgroundTaskQueue

from .base import Classifier

logger = get_logger(__name__)

_NUMERIC_OPERATORS = {RuleOperator.GREATER_THAN, RuleOperator.LESS_THAN, RuleOperator.EQUALS}


def _rule_sort_key(rule: Rule) -> tuple[int, float, float]:
    return (-rule.priority, -rule.confidence, rule.created_at.timestamp())


def _field_text(rule: Rule, transaction: Transaction) -> str | None:
    if rule.field == RuleField.DESCRIPTION:
        return transaction.description
    if rule.field == RuleField.MERCHANT:
        return transaction.merchant_name
    if rule.field == RuleField.ACCOUNT:
        return transaction.account_name
    return None


def _match_text(rule: Rule, text: str) -> bool:
    pattern = rule.value
    if rule.is_regex:
        flags = 0 if rule.case_sensitive else re.IGNORECASE
        try:
            return re.search(pattern, text, flags) is not None
        except re.error as e:
            logger.warning("[RULES] Rule %s has an invalid regex '%s': %s", rule.id, pattern, e)
            return False

    if not rule.case_sensitive:
        text = text.lower()
        pattern = pattern.lower()

    if rule.operator == RuleOperator.CONTAINS:
        return pattern in text
    if rule.operator == RuleOperator.EQUALS:
        return text == pattern
    if rule.operator == RuleOperator.STARTS_WITH:
        return text.startswith(pattern)
    if rule.operator == RuleOperator.ENDS_WITH:
        return text.endswith(pattern)
    return False


def _match_amount(rule: Rule, amount: float) -> bool:
    try:
        threshold = float(rule.value)
    except ValueError:
        return False
    if rule.operator == RuleOperator.GREATER_THAN:
        return amount > threshold
    if rule.operator == RuleOperator.LESS_THAN:
        return amount < threshold
    if rule.operator == RuleOperator.EQUALS:
        return abs(amount - threshold) < 0.005
    return False


def evaluate_rule(rule: Rule, transaction: Transaction) -> bool:
    if rule.field == RuleField.AMOUNT:
        return _match_amount(rule, transaction.amount)
    text = _field_text(rule, transaction)
    if not text:
        return False
    return _match_text(rule, text)


def validate_rule(rule: Rule) -> None:
    if not rule.organization_id:
        raise InvalidRuleError("organization_id is required")
    if rule.category_id <= 0:
        raise InvalidRuleError("category_id must be positive")
    if not rule.value:
        raise InvalidRuleError("value is required")
    if not 0.0 <= rule.confidence <= 1.0:
        raise InvalidRuleError("confidence must be between 0.0 and 1.0")
    if rule.priority < 0:
        raise InvalidRuleError("priority must be non-negative")

    if rule.field == RuleField.AMOUNT:
        if rule.operator not in _NUMERIC_OPERATORS:
            raise InvalidRuleError(f"operator '{rule.operator.value}' is not valid for amount rules")
        try:
            float(rule.value)
        except ValueError as e:
            raise InvalidRuleError(f"invalid amount value '{rule.value}'") from e
    elif rule.operator in {RuleOperator.GREATER_THAN, RuleOperator.LESS_THAN}:
        raise InvalidRuleError(f"operator '{rule.operator.value}' only applies to amount rules")

    if rule.is_regex:
        try:
            re.compile(rule.value)
        except re.error as e:
            raise InvalidRuleError(f"invalid regex pattern: {e}") from e


class RuleMatcher(Classifier):
    method = CategorizationMethod.RULE
    state = CategorizationState.RULE

    def __init__(
        self,
        repo: RuleRepository,
        background: BackgroundTaskQueue | None = None,
        transactions: TransactionRepository | None = None,
    ) -> None:
        self.repo = repo
        self.background = background
        self.transactions = transactions

    async def classify(self, transaction: Transaction) -> CategorizationResult:
        start = perf_counter()
        rules = await self.repo.list_rules(transaction.organization_id)
        if not rules:
            return CategorizationResult.empty(
                self.method,
                "no matching rules",
                processing_time_ms=(perf_counter() - start) * 1000,
            )

        winner: Rule | None = None
        matches: list[RuleMatch] = []
        for rule in sorted(rules, key=_rule_sort_key):
            if not evaluate_rule(rule, transaction):
                continue
            matches.append(
                RuleMatch(
                    rule_id=rule.id,
                    field=rule.field.value,
                    operator=rule.operator.value,
                    value=rule.value,
                    confidence=rule.confidence,
                    priority=rule.priority,
                )
            )
            if winner is None:
                winner = rule

        elapsed_ms = (perf_counter() - start) * 1000
        metadata = CategorizationMetadata(rule_matches=matches)
        if winner is None:
            return CategorizationResult.empty(
                self.method,
                "no matching rules",
                processing_time_ms=elapsed_ms,
                metadata=metadata,
            )

        self._schedule_usage(winner)
        logger.debug(
            "[RULES] Transaction %s matched rule %s (priority %s, confidence %.2f)",
            transaction.id,
            winner.id,
            winner.priority,
            winner.confidence,
        )
        return CategorizationResult(
            category_id=winner.category_id,
            confidence=winner.confidence,
            method=self.method,
            processing_time_ms=elapsed_ms,
            explanation=(
                f"Matched rule: {winner.field.value} {winner.operator.value} "
                f"'{winner.value}' (priority: {winner.priority})"
            ),
            metadata=metadata,
        )

    def _schedule_usage(self, rule: Rule) -> None:
        if self.background is None:
            return
        rule_id = rule.id
        self.background.submit(lambda: self.repo.increment_usage(rule_id), label=f"rule-usage:{rule_id}")

    async def record_feedback(self, rule_id: str, success: bool) -> None:
        await self.repo.update_usage(rule_id, success)

    async def add_rule(self, rule: Rule) -> Rule:
        validate_rule(rule)
        await self.repo.create_rule(rule)
        logger.info("[RULES] Added rule %s for organization %s", rule.id, rule.organization_id)
        return rule

    async def update_rule(self, rule: Rule) -> Rule:
        validate_rule(rule)
        await self.repo.update_rule(rule)
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        await self.repo.delete_rule(rule_id)

    async def get_rules(self, organization_id: str) -> list[Rule]:
        return sorted(await self.repo.list_rules(organization_id), key=_rule_sort_key)

    async def test_rule(
        self,
        rule: Rule,
        since: timedelta = timedelta(days=90),
        max_examples: int = 5,
    ) -> RuleTestResult:
        """Evaluate a rule against recently categorized transactions."""
        validate_rule(rule)
        if self.transactions is None:
            return RuleTestResult(rule=rule, matched_transactions=0, accuracy_rate=0.0)

        history = await self.transactions.get_recently_categorized(rule.organization_id, since)
        matched = [tx for tx in history if evaluate_rule(rule, tx)]
        correct = sum(1 for tx in matched if tx.category_id == rule.category_id)
        accuracy = correct / len(matched) if matched else 0.0
        return RuleTestResult(
            rule=rule,
            matched_transactions=len(matched),
            accuracy_rate=accuracy,
            examples=matched[:max_examples],
        )
