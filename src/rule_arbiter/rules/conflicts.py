"""Pairwise conflict detection between rules."""

import logging
from collections import Counter
from collections.abc import Iterable

from rule_arbiter.models import Rule, RuleAction
from rule_arbiter.rules.models import (
    Conflict,
    ConflictFinding,
    ConflictReport,
    ConflictType,
    RuleRef,
    Severity,
)
from rule_arbiter.rules.strategies import suggest_resolution

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS: dict[ConflictType, int] = {
    ConflictType.ACTION_CONFLICT: 3,
    ConflictType.TARGET_CONFLICT: 2,
    ConflictType.PRIORITY_CONFLICT: 2,
    ConflictType.TIMING_CONFLICT: 2,
    ConflictType.CONDITION_OVERLAP: 1,
}

MUTUALLY_EXCLUSIVE_ACTIONS: frozenset[frozenset[RuleAction]] = frozenset(
    {
        frozenset({RuleAction.ESCALATE, RuleAction.AUTO_REPLY}),
        frozenset({RuleAction.ESCALATE, RuleAction.QUEUE_FOR_REVIEW}),
    }
)

MIN_KEYWORD_LENGTH = 4


def calculate_severity(findings: Iterable[ConflictFinding]) -> Severity:
    """Severity from the highest-weighted finding."""
    max_weight = max((SEVERITY_WEIGHTS.get(f.type, 1) for f in findings), default=0)
    if max_weight >= 3:
        return Severity.HIGH
    if max_weight >= 2:
        return Severity.MEDIUM
    return Severity.LOW


def _keywords(expression: str | None) -> list[str]:
    """Distinct lower-cased tokens long enough to count as keywords."""
    seen: dict[str, None] = {}
    for word in (expression or "").lower().split():
        if len(word) >= MIN_KEYWORD_LENGTH:
            seen.setdefault(word, None)
    return list(seen)


def check_condition_overlap(rule1: Rule, rule2: Rule) -> ConflictFinding | None:
    """Flag identical conditions, or same-type conditions sharing keywords."""
    if (
        rule1.condition_type == rule2.condition_type
        and (rule1.condition_expression or "") == (rule2.condition_expression or "")
    ):
        return ConflictFinding(
            type=ConflictType.CONDITION_OVERLAP,
            description="Rules have identical conditions",
            payload={
                "condition_type": rule1.condition_type.value if rule1.condition_type else None,
                "expression": rule1.condition_expression,
            },
        )

    if rule1.condition_type != rule2.condition_type:
        return None

    other_words = set(_keywords(rule2.condition_expression))
    common = sorted(w for w in _keywords(rule1.condition_expression) if w in other_words)
    if common:
        return ConflictFinding(
            type=ConflictType.CONDITION_OVERLAP,
            description=(
                "Rules have overlapping conditions with common keywords: "
                + ", ".join(common)
            ),
            payload={
                "condition_type": rule1.condition_type.value if rule1.condition_type else None,
                "common_keywords": common,
            },
        )

    return None


def check_action_conflict(rule1: Rule, rule2: Rule) -> ConflictFinding | None:
    """Flag actions that should not both fire for one message."""
    if rule1.action is None or rule2.action is None:
        return None
    if frozenset({rule1.action, rule2.action}) not in MUTUALLY_EXCLUSIVE_ACTIONS:
        return None

    actions = sorted(a.value for a in (rule1.action, rule2.action))
    return ConflictFinding(
        type=ConflictType.ACTION_CONFLICT,
        description=f"Conflicting actions: {actions[0]} vs {actions[1]}",
        payload={"actions": actions},
    )


def check_target_conflict(rule1: Rule, rule2: Rule) -> ConflictFinding | None:
    """Flag two escalations to the same target."""
    if (
        rule1.action == RuleAction.ESCALATE
        and rule2.action == RuleAction.ESCALATE
        and rule1.action_target == rule2.action_target
    ):
        return ConflictFinding(
            type=ConflictType.TARGET_CONFLICT,
            description="Rules escalate to the same target",
            payload={"target": rule1.action_target},
        )
    return None


def check_priority_conflict(rule1: Rule, rule2: Rule) -> ConflictFinding | None:
    """Flag equal priorities, but only when the conditions also overlap."""
    if rule1.priority != rule2.priority:
        return None
    if check_condition_overlap(rule1, rule2) is None:
        return None
    return ConflictFinding(
        type=ConflictType.PRIORITY_CONFLICT,
        description="Rules have same priority with overlapping conditions",
        payload={"priority": rule1.priority},
    )


def categorize_conflicts(conflicts: Iterable[Conflict]) -> dict[ConflictType, int]:
    """Count findings by type across conflicts."""
    counts: Counter[ConflictType] = Counter()
    for conflict in conflicts:
        counts.update(f.type for f in conflict.findings)
    return dict(counts)


def _max_severity(conflicts: list[Conflict]) -> Severity | None:
    if not conflicts:
        return None
    return max((c.severity for c in conflicts), key=lambda s: s.rank)


class ConflictDetector:
    """Detects conflicts between pairs of enabled rules."""

    CHECKS = (
        check_condition_overlap,
        check_action_conflict,
        check_target_conflict,
        check_priority_conflict,
    )

    def analyze_rule_pair(self, rule1: Rule, rule2: Rule) -> Conflict | None:
        """
        Analyze a pair of rules for conflicts.

        Args:
            rule1: First rule.
            rule2: Second rule.

        Returns:
            Conflict with all findings, or None if no check fired.
        """
        findings = [f for check in self.CHECKS if (f := check(rule1, rule2)) is not None]
        if not findings:
            return None

        return Conflict(
            rule1=RuleRef.of(rule1),
            rule2=RuleRef.of(rule2),
            findings=findings,
            severity=calculate_severity(findings),
            suggested_resolution=suggest_resolution(findings, rule1, rule2),
        )

    def detect_conflicts(self, rules: Iterable[Rule]) -> ConflictReport:
        """
        Detect conflicts across every unordered pair of enabled rules.

        Args:
            rules: Rules to analyze, in any order.

        Returns:
            ConflictReport listing conflicts and finding counts by type.
        """
        enabled = [r for r in rules if r.enabled]
        conflicts: list[Conflict] = []
        analyzed_pairs: set[tuple[str, str]] = set()

        for i, rule1 in enumerate(enabled):
            for rule2 in enabled[i + 1 :]:
                pair_key = tuple(sorted((rule1.id, rule2.id)))
                if pair_key in analyzed_pairs:
                    continue
                analyzed_pairs.add(pair_key)

                conflict = self.analyze_rule_pair(rule1, rule2)
                if conflict is not None:
                    conflicts.append(conflict)

        report = ConflictReport(
            conflicts=conflicts,
            conflict_types=categorize_conflicts(conflicts),
            severity=_max_severity(conflicts),
        )
        logger.debug(
            "Conflict detection completed rules=%d conflicts=%d types=%s",
            len(enabled),
            report.conflict_count,
            {t.value: n for t, n in report.conflict_types.items()},
        )
        return report

    def check_against(
        self,
        candidate: Rule,
        existing: Iterable[Rule],
        exclude_rule_id: str | None = None,
    ) -> ConflictReport:
        """
        Check a new or updated rule against the rules already stored.

        Args:
            candidate: Rule about to be saved.
            existing: The user's current rules.
            exclude_rule_id: Id of the stored rule being updated, if any.

        Returns:
            ConflictReport for candidate-vs-existing pairs only.
        """
        if not candidate.enabled:
            return ConflictReport()

        conflicts = []
        for rule in existing:
            if not rule.enabled or rule.id == exclude_rule_id or rule.id == candidate.id:
                continue
            conflict = self.analyze_rule_pair(candidate, rule)
            if conflict is not None:
                conflicts.append(conflict)

        return ConflictReport(
            conflicts=conflicts,
            conflict_types=categorize_conflicts(conflicts),
            severity=_max_severity(conflicts),
        )
