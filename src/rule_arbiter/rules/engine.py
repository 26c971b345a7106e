"""Rule engine: prepares a user's rules and evaluates messages against them."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from rule_arbiter.config import Settings
from rule_arbiter.errors import (
    AnalysisFailureError,
    Recovered,
    RuleArbiterError,
    StoreUnavailableError,
)
from rule_arbiter.logging import get_user_logger
from rule_arbiter.models import EvaluationResult, Message, Rule, RuleExecutionResult
from rule_arbiter.performance_tracker import PerformanceTracker
from rule_arbiter.rules.batching import BatchGrouper
from rule_arbiter.rules.cache import ConditionResultCache, make_cache_key
from rule_arbiter.rules.conditions import ConditionPredicate, KeywordPredicate
from rule_arbiter.rules.conflicts import ConflictDetector
from rule_arbiter.rules.models import ConflictReport, Recommendation
from rule_arbiter.rules.optimizer import (
    OrderCache,
    RuleOrderOptimizer,
    estimate_batch_time_reduction,
)
from rule_arbiter.rules.performance import PerformanceAnalyzer, PerformanceReport
from rule_arbiter.rules.resolver import ConflictResolver
from rule_arbiter.storage.base import LogStore, RuleStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Settings that may be changed on a running engine
TUNABLE_OPTIONS = frozenset({
    "conflict_detection_enabled",
    "optimization_enabled",
    "batch_concurrency",
    "subject_similarity_threshold",
    "store_timeout_seconds",
})


class RuleEngine:
    """Evaluates messages against a user's conflict-free, optimized rule set.

    Every public operation fails open: store and analysis failures are logged
    and reported on the result, never raised.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        log_store: LogStore | None = None,
        predicate: ConditionPredicate | None = None,
        settings: Settings | None = None,
        *,
        detector: ConflictDetector | None = None,
        resolver: ConflictResolver | None = None,
        analyzer: PerformanceAnalyzer | None = None,
        optimizer: RuleOrderOptimizer | None = None,
        tracker: PerformanceTracker | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """
        Initialize the rule engine.

        Args:
            rule_store: Source of each user's enabled rules.
            log_store: Source of execution history. Defaults to the rule store
                when it also implements LogStore; without one, rules are
                ordered on static data only.
            predicate: Condition matcher (default: KeywordPredicate).
            settings: Engine settings (default: loaded from the environment).
            detector: Conflict detector shared with the resolver.
            resolver: Conflict resolver.
            analyzer: Execution history analyzer.
            optimizer: Rule order optimizer holding the per-user order cache.
            tracker: Operation timing tracker.
            clock: Time source for caches and analysis windows.
        """
        self.settings = settings or Settings()
        self.rule_store = rule_store
        if log_store is None and isinstance(rule_store, LogStore):
            log_store = rule_store
        self.log_store = log_store
        self.predicate = predicate or KeywordPredicate()
        self.clock = clock

        self.detector = detector or ConflictDetector()
        self.resolver = resolver or ConflictResolver(self.detector)
        self.analyzer = analyzer or PerformanceAnalyzer(self.settings.analysis_window)
        self.optimizer = optimizer or RuleOrderOptimizer(
            OrderCache(ttl=self.settings.order_cache_ttl, clock=clock)
        )
        self.tracker = tracker or PerformanceTracker()
        self.grouper = BatchGrouper(self.settings.subject_similarity_threshold)

        self._locks: dict[str, asyncio.Lock] = {}
        self._condition_caches: dict[str, ConditionResultCache] = {}
        self._stats: dict[str, float] = {
            "evaluations": 0,
            "batch_evaluations": 0,
            "messages_evaluated": 0,
            "total_evaluation_time_ms": 0.0,
            "conditions_evaluated": 0,
            "condition_cache_hits": 0,
            "reused_conditions": 0,
            "predicate_errors": 0,
            "rules_prepared": 0,
            "conflicts_resolved": 0,
            "order_cache_hits": 0,
            "order_cache_misses": 0,
            "store_failures": 0,
            "analysis_failures": 0,
        }
        self._last_batch_reduction = 0.0

    @property
    def order_cache(self) -> OrderCache:
        return self.optimizer.cache

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    def condition_cache(self, user_id: str) -> ConditionResultCache:
        """The user's condition result cache, created on first use."""
        cache = self._condition_caches.get(user_id)
        if cache is None:
            cache = ConditionResultCache(
                ttl=self.settings.condition_cache_ttl,
                max_entries=self.settings.condition_cache_max_entries,
                clock=self.clock,
            )
            self._condition_caches[user_id] = cache
        return cache

    async def _read(self, call: Awaitable[T], store: str, user_id: str) -> T:
        """Await a store read, bounded by the configured timeout."""
        timeout = self.settings.store_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except StoreUnavailableError:
            raise
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(store, user_id, f"timed out after {timeout}s") from e
        except Exception as e:
            raise StoreUnavailableError(store, user_id, str(e)) from e

    async def _analyze(self, user_id: str, rules: list[Rule]) -> PerformanceReport:
        if self.log_store is None:
            logs = []
        else:
            logs = await self._read(
                self.log_store.recent_executions(user_id, self.analyzer.window),
                "log store",
                user_id,
            )
        return self.analyzer.analyze(user_id, logs, rules, now=self.clock())

    # ─── Preparation ──────────────────────────────────────────────────────

    async def load_and_prepare(self, user_id: str) -> Recovered[list[Rule]]:
        """
        Load a user's enabled rules, resolve conflicts and optimize their order.

        Serves the cached order while it is fresh. When the rule store cannot
        be read, falls back to the last order computed for the user (even if
        expired), else to an empty rule set.

        Args:
            user_id: Owner of the rules.

        Returns:
            Recovered rules in evaluation order.
        """
        async with self._lock_for(user_id):
            with self.tracker.track_operation("load_and_prepare", user_id=user_id) as extra:
                prepared = await self._prepare(user_id)
                extra["rule_count"] = len(prepared.value)
                extra["degraded"] = prepared.degraded
                return prepared

    async def _prepare(self, user_id: str) -> Recovered[list[Rule]]:
        user_logger = get_user_logger(user_id)
        optimizing = self.settings.optimization_enabled

        if optimizing:
            cached = self.order_cache.get(user_id)
            if cached is not None:
                self._stats["order_cache_hits"] += 1
                return Recovered(list(cached.rules))
            self._stats["order_cache_misses"] += 1

        try:
            rules = await self._read(
                self.rule_store.list_enabled_rules(user_id), "rule store", user_id
            )
        except StoreUnavailableError as e:
            self._stats["store_failures"] += 1
            fallback = self.order_cache.last_known(user_id)
            user_logger.error(
                "Rule store read failed, using %s: %s",
                "last known order" if fallback else "empty rule set",
                e,
            )
            return Recovered(list(fallback.rules) if fallback else [], error=e)

        rules = [r for r in rules if r.enabled]
        error: RuleArbiterError | None = None

        if self.settings.conflict_detection_enabled:
            resolved = self.resolver.resolve(rules)
            if resolved.error is not None:
                self._stats["analysis_failures"] += 1
                error = resolved.error
                error.user_id = error.user_id or user_id
                user_logger.error("Conflict resolution skipped: %s", error)
            rules = resolved.value.rules
            self._stats["conflicts_resolved"] += resolved.value.conflicts_resolved
            if resolved.value.dropped:
                user_logger.info(
                    "Resolved conflicts dropped=%s sequential=%s",
                    [r.id for r in resolved.value.dropped],
                    resolved.value.sequential_pairs,
                )

        if optimizing:
            optimized = await self.optimizer.optimize_rule_order(
                user_id, rules, lambda: self._analyze(user_id, rules)
            )
            if optimized.error is not None:
                if isinstance(optimized.error, StoreUnavailableError):
                    self._stats["store_failures"] += 1
                else:
                    self._stats["analysis_failures"] += 1
                user_logger.warning("Using unoptimized rule order: %s", optimized.error)
                error = error or optimized.error
            rules = optimized.value
        else:
            rules = RuleOrderOptimizer.order_by_priority(rules)

        self._stats["rules_prepared"] += len(rules)
        user_logger.info("Prepared rules=%d degraded=%s", len(rules), error is not None)
        return Recovered(rules, error=error)

    # ─── Evaluation ───────────────────────────────────────────────────────

    def _evaluate_rules(
        self,
        user_id: str,
        rules: list[Rule],
        message: Message,
        representative: Message | None = None,
        representative_matches: dict[str, bool] | None = None,
    ) -> tuple[EvaluationResult, dict[str, bool]]:
        """
        Evaluate prepared rules against one message.

        When a group representative is given, its result for a rule is reused
        wherever the predicate declares that safe. Where it declines, the rule is
        evaluated fresh; everything else goes through the condition cache and,
        on a miss, the predicate.
        """
        cache = self.condition_cache(user_id)
        result = EvaluationResult(message_id=message.id)
        matches: dict[str, bool] = {}
        started = time.perf_counter()

        for rule in rules:
            rule_started = time.perf_counter()
            failed = False

            reuse: bool | None = None
            if (
                representative is not None
                and representative_matches is not None
                and rule.id in representative_matches
            ):
                reuse = self.predicate.reusable(rule, representative, message)

            if reuse:
                matched = representative_matches[rule.id]
                result.reused_conditions += 1
            else:
                # Members the predicate refused to share with bypass the cache
                use_cache = reuse is None and self.predicate.cacheable(rule)
                key = make_cache_key(user_id, rule, message)
                matched, hit = cache.get(key) if use_cache else (False, False)
                if hit:
                    result.cache_hits += 1
                else:
                    try:
                        matched = self.predicate.matches(rule, message)
                    except Exception as e:
                        # A failing condition counts as not matched; the rest still run
                        matched = False
                        failed = True
                        result.predicate_errors += 1
                        logger.warning(
                            "Condition evaluation failed user=%s rule=%s message=%s: %s",
                            user_id,
                            rule.id,
                            message.id,
                            e,
                        )
                    else:
                        if use_cache:
                            cache.set(key, matched)
                    self._stats["conditions_evaluated"] += 1

            matches[rule.id] = matched
            if matched:
                result.triggered.append(rule)
            if matched or failed:
                result.executions.append(
                    RuleExecutionResult(
                        rule_id=rule.id,
                        execution_time_ms=(time.perf_counter() - rule_started) * 1000,
                        success=not failed,
                    )
                )

        self._stats["messages_evaluated"] += 1
        self._stats["condition_cache_hits"] += result.cache_hits
        self._stats["reused_conditions"] += result.reused_conditions
        self._stats["predicate_errors"] += result.predicate_errors
        self._stats["total_evaluation_time_ms"] += (time.perf_counter() - started) * 1000
        return result, matches

    @staticmethod
    def _mark(result: EvaluationResult, prepared: Recovered[list[Rule]]) -> EvaluationResult:
        if prepared.error is not None:
            result.degraded = True
            result.error = str(prepared.error)
        return result

    async def evaluate(self, user_id: str, message: Message) -> EvaluationResult:
        """
        Evaluate a single message.

        Args:
            user_id: Owner of the rules.
            message: Message to evaluate.

        Returns:
            EvaluationResult with triggered rules in evaluation order.
        """
        prepared = await self.load_and_prepare(user_id)
        with self.tracker.track_operation(
            "evaluate", user_id=user_id, message_count=1, rule_count=len(prepared.value)
        ) as extra:
            result, _ = self._evaluate_rules(user_id, prepared.value, message)
            extra["triggered"] = len(result.triggered)

        self._stats["evaluations"] += 1
        return self._mark(result, prepared)

    async def evaluate_batch(
        self,
        user_id: str,
        messages: list[Message],
    ) -> list[EvaluationResult]:
        """
        Evaluate many messages, sharing work between similar ones.

        Messages are grouped by similarity; each group's first message is
        evaluated in full and the others reuse its condition results where the
        predicate allows. Predicates are synchronous, so groups never run in
        parallel: ``batch_concurrency`` bounds how many groups are in progress
        at once, and a group yields to the others between members.

        Args:
            user_id: Owner of the rules.
            messages: Messages to evaluate.

        Returns:
            One EvaluationResult per message, in input order.
        """
        if not messages:
            return []

        prepared = await self.load_and_prepare(user_id)
        rules = prepared.value
        groups = self.grouper.group_indices(messages)
        semaphore = asyncio.Semaphore(self.settings.batch_concurrency)

        async def run_group(group_index: int, indices: list[int]) -> dict[int, EvaluationResult]:
            async with semaphore:
                representative = messages[indices[0]]
                first, rep_matches = self._evaluate_rules(user_id, rules, representative)
                first.group_index = group_index
                evaluated = {indices[0]: first}

                for index in indices[1:]:
                    member, _ = self._evaluate_rules(
                        user_id, rules, messages[index], representative, rep_matches
                    )
                    member.group_index = group_index
                    member.representative_id = representative.id
                    evaluated[index] = member
                    # Let other groups interleave on long groups
                    await asyncio.sleep(0)

                return evaluated

        with self.tracker.track_operation(
            "evaluate_batch",
            user_id=user_id,
            message_count=len(messages),
            rule_count=len(rules),
        ) as extra:
            outcomes = await asyncio.gather(
                *(run_group(i, indices) for i, indices in enumerate(groups))
            )
            self._last_batch_reduction = estimate_batch_time_reduction(
                len(messages), len(groups)
            )
            extra["groups"] = len(groups)
            extra["estimated_time_reduction"] = self._last_batch_reduction

        by_index: dict[int, EvaluationResult] = {}
        for outcome in outcomes:
            by_index.update(outcome)

        self._stats["batch_evaluations"] += 1
        get_user_logger(user_id).info(
            "Batch evaluated messages=%d groups=%d estimated_reduction=%.1f%%",
            len(messages),
            len(groups),
            self._last_batch_reduction,
        )
        return [self._mark(by_index[i], prepared) for i in range(len(messages))]

    # ─── Conflicts ────────────────────────────────────────────────────────

    async def check_conflicts(
        self,
        candidate: Rule,
        user_id: str,
        exclude_rule_id: str | None = None,
    ) -> ConflictReport:
        """
        Check a new or updated rule against the user's stored rules.

        Advisory only: nothing is blocked or saved.

        Args:
            candidate: Rule about to be created or updated.
            user_id: Owner of the rules.
            exclude_rule_id: Id of the stored rule being updated, if any.

        Returns:
            ConflictReport. When the check cannot run, an empty report with
            ``error`` set.
        """
        try:
            existing = await self._read(
                self.rule_store.list_enabled_rules(user_id), "rule store", user_id
            )
        except StoreUnavailableError as e:
            self._stats["store_failures"] += 1
            get_user_logger(user_id).error("Conflict check skipped: %s", e)
            return ConflictReport(error=str(e))

        try:
            report = self.detector.check_against(candidate, existing, exclude_rule_id)
        except Exception as e:
            self._stats["analysis_failures"] += 1
            error = AnalysisFailureError("conflict check", e, user_id)
            logger.error("%s user=%s rule=%s", error, user_id, candidate.id)
            return ConflictReport(error=str(error))

        if report.has_conflicts:
            get_user_logger(user_id).info(
                "Rule %s conflicts=%d severity=%s",
                candidate.id,
                report.conflict_count,
                report.severity.value if report.severity else None,
            )
        return report

    async def get_resolution_recommendations(
        self,
        user_id: str,
    ) -> Recovered[list[Recommendation]]:
        """
        Summarize every conflict in the user's rules, most severe first.

        Args:
            user_id: Owner of the rules.

        Returns:
            Recovered recommendations; empty with the error attached when the
            rules cannot be read or analyzed.
        """
        try:
            rules = await self._read(
                self.rule_store.list_enabled_rules(user_id), "rule store", user_id
            )
        except StoreUnavailableError as e:
            self._stats["store_failures"] += 1
            return Recovered([], error=e)

        try:
            report = self.detector.detect_conflicts(rules)
        except Exception as e:
            self._stats["analysis_failures"] += 1
            error = AnalysisFailureError("conflict detection", e, user_id)
            logger.error("%s", error)
            return Recovered([], error=error)

        recommendations = [
            Recommendation(
                rule1=conflict.rule1.name or conflict.rule1.id,
                rule2=conflict.rule2.name or conflict.rule2.id,
                conflict_types=[f.type for f in conflict.findings],
                severity=conflict.severity,
                suggested_resolution=conflict.suggested_resolution,
            )
            for conflict in report.conflicts
        ]
        recommendations.sort(key=lambda r: r.severity.rank, reverse=True)
        return Recovered(recommendations)

    # ─── Caches, options and statistics ───────────────────────────────────

    def invalidate_cache(self, user_id: str | None = None) -> None:
        """Forget cached orders and condition results for one user, or everyone."""
        self.order_cache.invalidate(user_id)
        if user_id is None:
            for cache in self._condition_caches.values():
                cache.clear()
        elif user_id in self._condition_caches:
            self._condition_caches[user_id].clear()
        logger.debug("Caches invalidated user=%s", user_id or "*")

    def set_optimization_options(self, **options: Any) -> None:
        """
        Change engine options at runtime.

        Args:
            **options: Any of conflict_detection_enabled, optimization_enabled,
                batch_concurrency, subject_similarity_threshold,
                store_timeout_seconds.

        Raises:
            ValueError: If an option is unknown.
        """
        unknown = set(options) - TUNABLE_OPTIONS
        if unknown:
            raise ValueError(f"Unknown option(s): {', '.join(sorted(unknown))}")

        merged = self.settings.model_dump()
        merged.update(options)
        self.settings = Settings.model_validate(merged)
        self.grouper = BatchGrouper(self.settings.subject_similarity_threshold)
        # Orders computed under the old options no longer apply
        self.order_cache.invalidate()
        logger.info("Optimization options updated: %s", options)

    def get_performance_metrics(self) -> dict[str, Any]:
        """Counters for evaluation work done since the engine started."""
        metrics: dict[str, Any] = dict(self._stats)
        evaluated = self._stats["messages_evaluated"]
        lookups = self._stats["condition_cache_hits"] + self._stats["conditions_evaluated"]
        order_lookups = self._stats["order_cache_hits"] + self._stats["order_cache_misses"]

        metrics["average_evaluation_time_ms"] = (
            self._stats["total_evaluation_time_ms"] / evaluated if evaluated else 0.0
        )
        metrics["condition_cache_hit_rate"] = (
            self._stats["condition_cache_hits"] / lookups if lookups else 0.0
        )
        metrics["order_cache_hit_rate"] = (
            self._stats["order_cache_hits"] / order_lookups if order_lookups else 0.0
        )
        metrics["operations"] = self.tracker.generate_report().get("operation_stats", {})
        return metrics

    def get_optimization_statistics(self) -> dict[str, Any]:
        """Cache sizes and the options currently in effect."""
        return {
            "cached_orders": len(self.order_cache),
            "condition_cache_users": len(self._condition_caches),
            "condition_cache_entries": sum(len(c) for c in self._condition_caches.values()),
            "order_cache_ttl_seconds": self.order_cache.ttl.total_seconds(),
            "condition_cache_ttl_seconds": self.settings.condition_cache_ttl.total_seconds(),
            "last_batch_time_reduction": self._last_batch_reduction,
            "options": {
                "conflict_detection_enabled": self.settings.conflict_detection_enabled,
                "optimization_enabled": self.settings.optimization_enabled,
                "batch_concurrency": self.settings.batch_concurrency,
                "subject_similarity_threshold": self.settings.subject_similarity_threshold,
            },
        }
