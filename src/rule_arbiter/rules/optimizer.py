"""History-driven rule ordering with a per-user TTL cache."""

import logging
import math
import threading
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from rule_arbiter.errors import AnalysisFailureError, Recovered, RuleArbiterError
from rule_arbiter.models import Rule, effective_priority
from rule_arbiter.rules.complexity import specificity
from rule_arbiter.rules.performance import PerformanceReport

logger = logging.getLogger(__name__)

DEFAULT_ORDER_TTL = timedelta(minutes=5)

MAX_BATCH_TIME_REDUCTION = 25.0
BATCH_GROUPING_WEIGHT = 30.0


@dataclass
class OptimizedOrder:
    """An optimized rule sequence for one user."""

    user_id: str
    rules: list[Rule]
    computed_at: datetime = field(default_factory=datetime.now)
    ttl: timedelta = DEFAULT_ORDER_TTL

    @property
    def rule_ids(self) -> list[str]:
        return [r.id for r in self.rules]

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now()) - self.computed_at >= self.ttl


class OrderCache:
    """In-memory OptimizedOrder per user.

    Expired entries are not dropped: they stay available through
    ``last_known`` as the fallback when the store cannot be read.
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_ORDER_TTL,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.ttl = ttl
        self.clock = clock
        self._orders: dict[str, OptimizedOrder] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> OptimizedOrder | None:
        """Fresh order for a user, or None."""
        with self._lock:
            order = self._orders.get(user_id)
            if order is None or order.is_expired(self.clock()):
                return None
            return order

    def last_known(self, user_id: str) -> OptimizedOrder | None:
        """Most recent order regardless of age."""
        with self._lock:
            return self._orders.get(user_id)

    def put(self, user_id: str, rules: list[Rule]) -> OptimizedOrder:
        order = OptimizedOrder(
            user_id=user_id,
            rules=list(rules),
            computed_at=self.clock(),
            ttl=self.ttl,
        )
        with self._lock:
            self._orders[user_id] = order
        return order

    def invalidate(self, user_id: str | None = None) -> None:
        """Forget one user's order, or all orders."""
        with self._lock:
            if user_id is None:
                self._orders.clear()
            else:
                self._orders.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._orders)


def estimate_batch_time_reduction(message_count: int, group_count: int) -> float:
    """Estimated percentage saved by evaluating one message per group."""
    if message_count == 0 or group_count == 0:
        return 0.0
    grouping_efficiency = (message_count - group_count) / message_count
    return min(grouping_efficiency * BATCH_GROUPING_WEIGHT, MAX_BATCH_TIME_REDUCTION)


class RuleOrderOptimizer:
    """Orders rules so likely, cheap and reliable rules run first.

    Each pass is a stable sort, so later passes take precedence and earlier
    passes only break ties. Priority is applied last and therefore dominates.
    """

    def __init__(self, cache: OrderCache | None = None) -> None:
        self.cache = cache or OrderCache()

    @staticmethod
    def order_by_frequency(rules: list[Rule], report: PerformanceReport) -> list[Rule]:
        """Most frequently triggered first."""
        return sorted(rules, key=lambda r: report.frequency.get(r.id, 0), reverse=True)

    @staticmethod
    def order_by_execution_time(rules: list[Rule], report: PerformanceReport) -> list[Rule]:
        """Fastest first; rules with no timing data last."""

        def average(rule: Rule) -> float:
            stats = report.execution_time.get(rule.id)
            return stats.average if stats is not None else math.inf

        return sorted(rules, key=average)

    @staticmethod
    def order_by_success_rate(rules: list[Rule], report: PerformanceReport) -> list[Rule]:
        """Most reliable first."""

        def rate(rule: Rule) -> float:
            stats = report.success_rate.get(rule.id)
            return stats.rate if stats is not None else 0.0

        return sorted(rules, key=rate, reverse=True)

    @staticmethod
    def order_by_specificity(rules: list[Rule], report: PerformanceReport) -> list[Rule]:
        """Simplest conditions first (cheap to fail fast)."""
        return sorted(rules, key=lambda r: report.specificity.get(r.id, specificity(r)))

    @staticmethod
    def order_by_priority(rules: list[Rule]) -> list[Rule]:
        """Highest priority first."""
        return sorted(rules, key=effective_priority, reverse=True)

    @staticmethod
    def order_by_dependencies(
        rules: list[Rule],
        dependencies: Mapping[str, Sequence[str]],
    ) -> list[Rule]:
        """Fewer dependencies first, within each priority level."""
        return sorted(
            rules,
            key=lambda r: (-effective_priority(r), len(dependencies.get(r.id, ()))),
        )

    def optimize(
        self,
        rules: list[Rule],
        report: PerformanceReport,
        dependencies: Mapping[str, Sequence[str]] | None = None,
    ) -> list[Rule]:
        """
        Apply every ordering pass.

        Args:
            rules: Rules to order.
            report: Performance statistics for the rules' owner.
            dependencies: Optional rule id -> ids it depends on.

        Returns:
            A new list in evaluation order.
        """
        ordered = list(rules)
        ordered = self.order_by_frequency(ordered, report)
        ordered = self.order_by_execution_time(ordered, report)
        ordered = self.order_by_success_rate(ordered, report)
        ordered = self.order_by_specificity(ordered, report)
        ordered = self.order_by_priority(ordered)
        if dependencies is not None:
            ordered = self.order_by_dependencies(ordered, dependencies)
        return ordered

    async def optimize_rule_order(
        self,
        user_id: str,
        rules: list[Rule],
        analyze: Callable[[], Awaitable[PerformanceReport]],
        dependencies: Mapping[str, Sequence[str]] | None = None,
    ) -> Recovered[list[Rule]]:
        """
        Optimized order for a user, served from cache while fresh.

        Args:
            user_id: Cache key.
            rules: Rules to order on a cache miss.
            analyze: Produces the performance report; only awaited on a miss.
            dependencies: Optional dependency data for the final pass.

        Returns:
            Recovered ordered rules. On failure the value is ``rules`` unchanged.
        """
        cached = self.cache.get(user_id)
        if cached is not None:
            logger.debug("Rule order cache hit user=%s rules=%d", user_id, len(cached.rules))
            return Recovered(list(cached.rules))

        try:
            report = await analyze()
            optimized = self.optimize(rules, report, dependencies)
        except RuleArbiterError as e:
            logger.warning("Rule order optimization skipped user=%s: %s", user_id, e)
            return Recovered(list(rules), error=e)
        except Exception as e:
            logger.error("Rule order optimization failed user=%s: %s", user_id, e)
            error = AnalysisFailureError("rule order optimization", e, user_id)
            return Recovered(list(rules), error=error)

        self.cache.put(user_id, optimized)
        logger.info(
            "Rule order optimized user=%s rules=%d logs=%d",
            user_id,
            len(optimized),
            report.total_logs,
        )
        return Recovered(optimized)
