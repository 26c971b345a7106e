"""Data models for conflict analysis and resolution."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from rule_arbiter.models import Rule


class ConflictType(str, Enum):
    """Kinds of incompatibility between two rules."""

    PRIORITY_CONFLICT = "priority_conflict"
    CONDITION_OVERLAP = "condition_overlap"
    ACTION_CONFLICT = "action_conflict"
    TARGET_CONFLICT = "target_conflict"
    TIMING_CONFLICT = "timing_conflict"


class Severity(str, Enum):
    """Overall severity of a conflict."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}[self]


class ResolutionStrategy(str, Enum):
    """Heuristics for reconciling conflicting rules."""

    HIGHEST_PRIORITY = "highest_priority"
    MOST_SPECIFIC = "most_specific"
    USER_CHOICE = "user_choice"
    MERGE_CONDITIONS = "merge_conditions"
    SEQUENTIAL_EXECUTION = "sequential_execution"


class ConflictFinding(BaseModel):
    """A single reason two rules conflict."""

    type: ConflictType
    description: str
    payload: dict[str, Any] = Field(default_factory=dict)


class Suggestion(BaseModel):
    """A recommended fix for one finding."""

    strategy: ResolutionStrategy
    description: str
    action: str


class ResolutionSuggestion(BaseModel):
    """Recommended fixes for a conflicting pair."""

    primary_strategy: ResolutionStrategy = ResolutionStrategy.USER_CHOICE
    suggestions: list[Suggestion] = Field(default_factory=list)
    auto_resolvable: bool = False


class RuleRef(BaseModel):
    """Lightweight reference to a rule inside a conflict."""

    id: str
    name: str
    priority: int | None = None

    @classmethod
    def of(cls, rule: Rule) -> "RuleRef":
        return cls(id=rule.id, name=rule.display_name, priority=rule.priority)


class Conflict(BaseModel):
    """A detected incompatibility between an unordered pair of rules."""

    rule1: RuleRef
    rule2: RuleRef
    findings: list[ConflictFinding] = Field(min_length=1)
    severity: Severity
    suggested_resolution: ResolutionSuggestion

    @property
    def finding_types(self) -> set[ConflictType]:
        """Distinct finding types in this conflict."""
        return {f.type for f in self.findings}

    @property
    def rule_ids(self) -> frozenset[str]:
        return frozenset((self.rule1.id, self.rule2.id))

    def involves(self, rule_id: str) -> bool:
        return rule_id in self.rule_ids


class ConflictReport(BaseModel):
    """Result of analyzing a rule set (or a candidate rule) for conflicts."""

    conflicts: list[Conflict] = Field(default_factory=list)
    conflict_types: dict[ConflictType, int] = Field(default_factory=dict)
    severity: Severity | None = Field(
        default=None, description="Highest severity among the conflicts"
    )
    error: str | None = Field(
        default=None, description="Set when the analysis could not run"
    )

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)


class ResolvedRuleSet(BaseModel):
    """Outcome of greedy conflict resolution."""

    rules: list[Rule] = Field(default_factory=list)
    dropped: list[Rule] = Field(default_factory=list)
    sequential_pairs: list[tuple[str, str]] = Field(
        default_factory=list,
        description="Rule id pairs kept together that the caller must run in order",
    )

    @property
    def conflicts_resolved(self) -> int:
        return len(self.dropped)


class Recommendation(BaseModel):
    """Advisory summary of one conflict for display."""

    rule1: str
    rule2: str
    conflict_types: list[ConflictType]
    severity: Severity
    suggested_resolution: ResolutionSuggestion
