import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from time import monotonic

from finance_categorizer.errors import InsufficientBudgetError, RateLimitedError
from finance_categorizer.integration.repositories import AlertSink, CostRepository
from finance_categorizer.logger import get_logger
from finance_categorizer.models import BudgetAlert, BudgetSettings, CostTracker, utcnow

logger = get_logger(__name__)

DEFAULT_ALERT_THRESHOLDS = (0.5, 0.8, 0.95)


def alert_severity(threshold: float) -> str:
    if threshold >= 0.95:
        return "critical"
    if threshold >= 0.8:
        return "warning"
    return "info"


@dataclass
class RateLimitReservation:
    estimated_cost: float
    released: bool = False


class RateLimiter:
    """
    Process-wide cap on LLM requests and spend per rolling hour window.

    ``check_limit`` counts the request and its estimated cost as pending until
    ``record_request`` (or ``release``) settles it, so concurrent callers cannot all
    pass a check that only one of them fits under.
    """

    def __init__(
        self,
        max_requests_per_hour: int = 100,
        max_cost_per_hour: float = 10.0,
        window_seconds: float = 3600.0,
    ) -> None:
        self.max_requests_per_hour = max_requests_per_hour
        self.max_cost_per_hour = max_cost_per_hour
        self.window_seconds = window_seconds
        self.current_requests = 0
        self.current_cost = 0.0
        self.pending_requests = 0
        self.pending_cost = 0.0
        self._reset_at = monotonic() + window_seconds
        self._lock = asyncio.Lock()

    def _maybe_reset(self) -> None:
        now = monotonic()
        if now >= self._reset_at:
            self.current_requests = 0
            self.current_cost = 0.0
            self._reset_at = now + self.window_seconds

    @property
    def retry_after(self) -> float:
        return max(0.0, self._reset_at - monotonic())

    async def check_limit(self, estimated_cost: float) -> RateLimitReservation:
        async with self._lock:
            self._maybe_reset()
            requests = self.current_requests + self.pending_requests
            if requests >= self.max_requests_per_hour:
                raise RateLimitedError(
                    f"hourly request limit exceeded ({requests}/{self.max_requests_per_hour})",
                    self.retry_after,
                )
            spent = self.current_cost + self.pending_cost
            if spent + estimated_cost > self.max_cost_per_hour:
                raise RateLimitedError(
                    f"hourly cost limit would be exceeded "
                    f"(${spent:.4f} + ${estimated_cost:.4f} > ${self.max_cost_per_hour:.2f})",
                    self.retry_after,
                )
            self.pending_requests += 1
            self.pending_cost += estimated_cost
            return RateLimitReservation(estimated_cost=estimated_cost)

    def _release(self, reservation: RateLimitReservation | None) -> None:
        if reservation is None or reservation.released:
            return
        reservation.released = True
        self.pending_requests = max(0, self.pending_requests - 1)
        self.pending_cost = max(0.0, self.pending_cost - reservation.estimated_cost)

    async def release(self, reservation: RateLimitReservation) -> None:
        async with self._lock:
            self._release(reservation)

    async def record_request(self, actual_cost: float, reservation: RateLimitReservation | None = None) -> None:
        async with self._lock:
            self._release(reservation)
            self._maybe_reset()
            self.current_requests += 1
            self.current_cost += actual_cost


@dataclass
class BudgetReservation:
    organization_id: str
    amount: float
    released: bool = False


class CostGovernor:
    """
    Per-organization budget enforcement.

    ``check_budget`` holds the estimate as a reservation until ``record_cost`` (or
    ``release``) settles it, so concurrent callers cannot both pass a check that only
    one of them can satisfy. All reads and writes of an organization's tracker happen
    under that organization's lock.
    """

    def __init__(
        self,
        repo: CostRepository,
        alerts: AlertSink | None = None,
        default_daily_budget: float = 5.0,
        default_monthly_budget: float = 50.0,
        alert_thresholds: list[float] | tuple[float, ...] = DEFAULT_ALERT_THRESHOLDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.alerts = alerts
        self.default_daily_budget = default_daily_budget
        self.default_monthly_budget = default_monthly_budget
        self.alert_thresholds = sorted(alert_thresholds)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._reserved: dict[str, float] = {}

    def _lock(self, organization_id: str) -> asyncio.Lock:
        lock = self._locks.get(organization_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[organization_id] = lock
        return lock

    def reserved(self, organization_id: str) -> float:
        return self._reserved.get(organization_id, 0.0)

    async def get_budget_settings(self, organization_id: str) -> BudgetSettings:
        settings = await self.repo.get_budget_settings(organization_id)
        if settings is None:
            settings = BudgetSettings(
                organization_id=organization_id,
                daily_budget=self.default_daily_budget,
                monthly_budget=self.default_monthly_budget,
                alert_thresholds=list(self.alert_thresholds),
            )
        return settings

    async def _load_tracker(self, organization_id: str, settings: BudgetSettings) -> CostTracker:
        now = self._clock()
        today = now.date()
        month = now.strftime("%Y-%m")

        tracker = await self.repo.get_cost_tracker(organization_id)
        if tracker is None:
            tracker = CostTracker(
                organization_id=organization_id,
                current_spend=await self.repo.get_daily_spend(organization_id),
                monthly_spend=await self.repo.get_monthly_spend(organization_id),
                period_day=today,
                period_month=month,
            )

        if tracker.period_day is None:
            tracker.period_day = today
        elif tracker.period_day != today:
            logger.info("[BUDGET] Daily rollover for organization %s.", organization_id)
            tracker.current_spend = 0.0
            tracker.period_day = today

        if tracker.period_month is None:
            tracker.period_month = month
        elif tracker.period_month != month:
            logger.info("[BUDGET] Monthly rollover for organization %s.", organization_id)
            tracker.monthly_spend = 0.0
            tracker.transaction_count = 0
            tracker.avg_cost_per_transaction = 0.0
            tracker.period_month = month

        tracker.daily_budget = settings.daily_budget
        tracker.monthly_budget = settings.monthly_budget
        return tracker

    async def get_cost_tracker(self, organization_id: str) -> CostTracker:
        async with self._lock(organization_id):
            settings = await self.get_budget_settings(organization_id)
            return await self._load_tracker(organization_id, settings)

    async def check_budget(self, organization_id: str, estimated_cost: float) -> BudgetReservation:
        """
        Reserve ``estimated_cost`` against the daily and monthly budgets.

        Raises ``InsufficientBudgetError`` naming the first limit that would be
        exceeded. A budget of 0 is unlimited and disabled settings are not enforced.
        """
        async with self._lock(organization_id):
            settings = await self.get_budget_settings(organization_id)
            if settings.is_enabled:
                tracker = await self._load_tracker(organization_id, settings)
                reserved = self.reserved(organization_id)

                if settings.daily_budget > 0:
                    projected = tracker.current_spend + reserved + estimated_cost
                    if projected > settings.daily_budget:
                        raise InsufficientBudgetError(
                            "daily", tracker.current_spend + reserved, estimated_cost, settings.daily_budget
                        )

                if settings.monthly_budget > 0:
                    projected = tracker.monthly_spend + reserved + estimated_cost
                    if projected > settings.monthly_budget:
                        raise InsufficientBudgetError(
                            "monthly", tracker.monthly_spend + reserved, estimated_cost, settings.monthly_budget
                        )

            self._reserved[organization_id] = self.reserved(organization_id) + estimated_cost
            return BudgetReservation(organization_id=organization_id, amount=estimated_cost)

    def _release(self, reservation: BudgetReservation | None) -> None:
        if reservation is None or reservation.released:
            return
        reservation.released = True
        remaining = self.reserved(reservation.organization_id) - reservation.amount
        self._reserved[reservation.organization_id] = max(0.0, remaining)

    async def release(self, reservation: BudgetReservation) -> None:
        async with self._lock(reservation.organization_id):
            self._release(reservation)

    async def record_cost(
        self,
        organization_id: str,
        cost: float,
        transaction_count: int,
        reservation: BudgetReservation | None = None,
    ) -> list[BudgetAlert]:
        """Record an actual spend, settle its reservation and fire any newly crossed alerts."""
        async with self._lock(organization_id):
            self._release(reservation)
            settings = await self.get_budget_settings(organization_id)
            tracker = await self._load_tracker(organization_id, settings)

            try:
                await self.repo.record_cost(
                    organization_id,
                    cost,
                    transaction_count,
                    {
                        "timestamp": self._clock().isoformat(),
                        "transaction_count": transaction_count,
                        "source": "categorization_engine",
                    },
                )
            except Exception as e:
                # The tracker below still counts the spend.
                logger.error("[BUDGET] Failed to append cost entry for org %s: %s", organization_id, e)

            previous_daily = tracker.current_spend
            previous_monthly = tracker.monthly_spend
            tracker.current_spend += cost
            tracker.monthly_spend += cost
            tracker.transaction_count += transaction_count
            if tracker.transaction_count > 0:
                tracker.avg_cost_per_transaction = tracker.monthly_spend / tracker.transaction_count
            await self.repo.update_cost_tracker(tracker)

            alerts: list[BudgetAlert] = []
            if settings.is_enabled:
                thresholds = sorted(settings.alert_thresholds or self.alert_thresholds)
                alerts.extend(
                    self._crossed(
                        organization_id, "daily", thresholds, previous_daily, tracker.current_spend, settings.daily_budget
                    )
                )
                alerts.extend(
                    self._crossed(
                        organization_id,
                        "monthly",
                        thresholds,
                        previous_monthly,
                        tracker.monthly_spend,
                        settings.monthly_budget,
                    )
                )

        logger.debug(
            "[BUDGET] Recorded $%.6f for %s transactions (org %s, today $%.4f).",
            cost,
            transaction_count,
            organization_id,
            tracker.current_spend,
        )
        for alert in alerts:
            await self._send_alert(organization_id, alert)
        return alerts

    @staticmethod
    def _crossed(
        organization_id: str,
        period: str,
        thresholds: list[float],
        previous: float,
        current: float,
        budget: float,
    ) -> list[BudgetAlert]:
        if budget <= 0:
            return []
        before = previous / budget
        after = current / budget
        alerts = []
        for threshold in thresholds:
            if before < threshold <= after:
                alerts.append(
                    BudgetAlert(
                        organization_id=organization_id,
                        alert_type=period,
                        threshold=threshold,
                        current_spend=current,
                        budget_limit=budget,
                        percentage=after,
                        message=(
                            f"{period.capitalize()} budget {threshold:.0%} threshold reached: "
                            f"${current:.2f} of ${budget:.2f} used"
                        ),
                        severity=alert_severity(threshold),
                    )
                )
        return alerts

    async def _send_alert(self, organization_id: str, alert: BudgetAlert) -> None:
        logger.warning("[BUDGET] %s (org %s)", alert.message, organization_id)
        if self.alerts is None:
            return
        try:
            await self.alerts.send_budget_alert(organization_id, alert)
        except Exception as e:
            logger.warning("[BUDGET] Failed to deliver %s alert for org %s: %s", alert.alert_type, organization_id, e)

    async def update_budget(
        self, organization_id: str, monthly_budget: float, daily_budget: float
    ) -> BudgetSettings:
        if monthly_budget < 0 or daily_budget < 0:
            raise ValueError("budgets must be non-negative")
        async with self._lock(organization_id):
            settings = await self.get_budget_settings(organization_id)
            settings.monthly_budget = monthly_budget
            settings.daily_budget = daily_budget
            await self.repo.update_budget_settings(settings)

            tracker = await self._load_tracker(organization_id, settings)
            await self.repo.update_cost_tracker(tracker)
        logger.info(
            "[BUDGET] Budget for org %s set to $%.2f/day, $%.2f/month.",
            organization_id,
            daily_budget,
            monthly_budget,
        )
        return settings
