"""Aggregation of rule execution history into per-rule statistics."""

import logging
import math
from collections.abc import Iterable
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from rule_arbiter.models import ExecutionLogEntry, Rule
from rule_arbiter.rules.complexity import specificity

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(days=30)
SLOW_RULE_WINDOW = timedelta(days=7)
DEFAULT_SLOW_THRESHOLD_MS = 1000.0


def _naive(moment: datetime) -> datetime:
    """Local naive time, so aware and naive timestamps compare."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


def median(values: list[float]) -> float:
    """Median of the values (mean of the middle pair for even counts)."""
    if not values:
        return 0.0
    ordered = sorted(values)
    middle = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[middle - 1] + ordered[middle]) / 2
    return ordered[middle]


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(pct / 100 * len(ordered)) - 1
    return ordered[max(0, index)]


class ExecutionTimeStats(BaseModel):
    """Execution time of a rule, in milliseconds."""

    count: int = 0
    total: float = 0.0
    average: float = 0.0
    median: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    min: float = 0.0
    max: float = 0.0


class SuccessRateStats(BaseModel):
    """Success ratio of a rule's executions."""

    success_count: int = 0
    total: int = 0
    rate: float = 0.0


class PerformanceProfile(BaseModel):
    """Everything known about one rule's history."""

    rule_id: str
    frequency: int = 0
    execution_time: ExecutionTimeStats = Field(default_factory=ExecutionTimeStats)
    success_rate: SuccessRateStats = Field(default_factory=SuccessRateStats)
    specificity: float | None = None


class SlowRule(BaseModel):
    """A rule with executions at or above the slow threshold."""

    rule_id: str
    occurrences: int = 0
    total_time: float = 0.0
    average_time: float = 0.0
    max_time: float = 0.0
    last_occurrence: datetime | None = None


class PerformanceReport(BaseModel):
    """Per-rule statistics for one user over a trailing window."""

    user_id: str
    window_days: float = 30
    generated_at: datetime = Field(default_factory=datetime.now)
    total_logs: int = 0
    frequency: dict[str, int] = Field(default_factory=dict)
    execution_time: dict[str, ExecutionTimeStats] = Field(default_factory=dict)
    success_rate: dict[str, SuccessRateStats] = Field(default_factory=dict)
    specificity: dict[str, float] = Field(default_factory=dict)

    @classmethod
    def empty(cls, user_id: str) -> "PerformanceReport":
        return cls(user_id=user_id)

    @property
    def is_empty(self) -> bool:
        return not self.frequency

    def profile(self, rule_id: str) -> PerformanceProfile:
        """Profile for a rule; unseen rules get zeroed statistics."""
        return PerformanceProfile(
            rule_id=rule_id,
            frequency=self.frequency.get(rule_id, 0),
            execution_time=self.execution_time.get(rule_id, ExecutionTimeStats()),
            success_rate=self.success_rate.get(rule_id, SuccessRateStats()),
            specificity=self.specificity.get(rule_id),
        )

    def efficiency_score(self, rule_id: str) -> int:
        """
        Overall efficiency of a rule on a 0-100 scale.

        Weighted 40% on success rate, 30% on trigger rate (the share of logged
        evaluations the rule appears in, capped at 50%) and 30% on speed, where
        an instant rule scores 100 and every 10ms of average time costs a point.

        Returns:
            Rounded score; 0 for rules with no executions in the window.
        """
        profile = self.profile(rule_id)
        if profile.frequency == 0 or self.total_logs == 0:
            return 0

        success = profile.success_rate.rate * 100
        trigger = min(profile.frequency / self.total_logs * 100, 50)
        speed = max(0.0, 100 - profile.execution_time.average / 10)
        score = success * 0.4 + trigger * 0.3 + speed * 0.3
        return max(0, min(100, round(score)))


class PerformanceAnalyzer:
    """Builds PerformanceReports from execution logs."""

    def __init__(self, window: timedelta = DEFAULT_WINDOW) -> None:
        self.window = window

    def analyze(
        self,
        user_id: str,
        logs: Iterable[ExecutionLogEntry],
        rules: Iterable[Rule] = (),
        *,
        window: timedelta | None = None,
        now: datetime | None = None,
    ) -> PerformanceReport:
        """
        Aggregate execution logs into per-rule statistics.

        Args:
            user_id: Owner of the logs; entries for other users are ignored.
            logs: Execution log entries, typically already windowed by the store.
            rules: The user's current rules, scored for specificity when enabled.
            window: Trailing window to keep (defaults to the analyzer's window).
            now: Reference time for the window (defaults to now).

        Returns:
            PerformanceReport. Empty logs yield empty maps, never an error.
        """
        window = window or self.window
        cutoff = _naive(now or datetime.now()) - window

        frequency: dict[str, int] = {}
        times: dict[str, list[float]] = {}
        successes: dict[str, int] = {}
        total_logs = 0

        for entry in logs:
            if entry.user_id != user_id:
                continue
            if _naive(entry.executed_at) < cutoff:
                continue
            total_logs += 1

            for result in entry.results:
                rule_id = result.rule_id
                frequency[rule_id] = frequency.get(rule_id, 0) + 1
                times.setdefault(rule_id, []).append(result.execution_time_ms)
                successes[rule_id] = successes.get(rule_id, 0) + (1 if result.success else 0)

        execution_time = {}
        success_rate = {}
        for rule_id, samples in times.items():
            total = sum(samples)
            execution_time[rule_id] = ExecutionTimeStats(
                count=len(samples),
                total=total,
                average=total / len(samples),
                median=median(samples),
                p95=percentile(samples, 95),
                p99=percentile(samples, 99),
                min=min(samples),
                max=max(samples),
            )
            success_rate[rule_id] = SuccessRateStats(
                success_count=successes[rule_id],
                total=len(samples),
                rate=successes[rule_id] / len(samples),
            )

        scores = {rule.id: specificity(rule) for rule in rules if rule.enabled}

        report = PerformanceReport(
            user_id=user_id,
            window_days=window.total_seconds() / 86400,
            total_logs=total_logs,
            frequency=frequency,
            execution_time=execution_time,
            success_rate=success_rate,
            specificity=scores,
        )
        logger.debug(
            "Rule performance analysis completed user=%s logs=%d rules_seen=%d rules_scored=%d",
            user_id,
            total_logs,
            len(frequency),
            len(scores),
        )
        return report

    def slow_rules(
        self,
        user_id: str,
        logs: Iterable[ExecutionLogEntry],
        threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS,
        *,
        window: timedelta = SLOW_RULE_WINDOW,
        now: datetime | None = None,
    ) -> list[SlowRule]:
        """
        Find rules whose executions reached the slow threshold.

        Args:
            user_id: Owner of the logs; entries for other users are ignored.
            logs: Execution log entries.
            threshold_ms: Executions at or above this many milliseconds count.
            window: Trailing window to keep (one week by default).
            now: Reference time for the window (defaults to now).

        Returns:
            One SlowRule per rule with slow executions, slowest average first.
        """
        cutoff = _naive(now or datetime.now()) - window
        grouped: dict[str, SlowRule] = {}

        for entry in logs:
            if entry.user_id != user_id or _naive(entry.executed_at) < cutoff:
                continue
            for result in entry.results:
                if result.execution_time_ms < threshold_ms:
                    continue
                slow = grouped.setdefault(result.rule_id, SlowRule(rule_id=result.rule_id))
                slow.occurrences += 1
                slow.total_time += result.execution_time_ms
                slow.average_time = slow.total_time / slow.occurrences
                slow.max_time = max(slow.max_time, result.execution_time_ms)
                seen_at = _naive(entry.executed_at)
                if slow.last_occurrence is None or seen_at > slow.last_occurrence:
                    slow.last_occurrence = seen_at

        if grouped:
            logger.debug(
                "Slow rules found user=%s threshold_ms=%s rules=%d",
                user_id,
                threshold_ms,
                len(grouped),
            )
        return sorted(grouped.values(), key=lambda s: s.average_time, reverse=True)
