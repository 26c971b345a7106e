"""Rule conflict analysis, ordering and evaluation."""

from rule_arbiter.rules.batching import BatchGrouper
from rule_arbiter.rules.cache import ConditionResultCache, make_cache_key
from rule_arbiter.rules.complexity import specificity
from rule_arbiter.rules.conditions import ConditionPredicate, FunctionPredicate, KeywordPredicate
from rule_arbiter.rules.conflicts import ConflictDetector
from rule_arbiter.rules.models import (
    Conflict,
    ConflictReport,
    ConflictType,
    ResolutionStrategy,
    Severity,
)
from rule_arbiter.rules.optimizer import OrderCache, RuleOrderOptimizer
from rule_arbiter.rules.performance import PerformanceAnalyzer, PerformanceReport, SlowRule
from rule_arbiter.rules.resolver import ConflictResolver
from rule_arbiter.rules.engine import RuleEngine

__all__ = [
    "BatchGrouper",
    "ConditionPredicate",
    "ConditionResultCache",
    "Conflict",
    "ConflictDetector",
    "ConflictReport",
    "ConflictResolver",
    "ConflictType",
    "FunctionPredicate",
    "KeywordPredicate",
    "OrderCache",
    "PerformanceAnalyzer",
    "PerformanceReport",
    "ResolutionStrategy",
    "RuleEngine",
    "RuleOrderOptimizer",
    "Severity",
    "SlowRule",
    "make_cache_key",
    "specificity",
]
