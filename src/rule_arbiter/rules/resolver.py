"""Greedy, priority-first reconciliation of conflicting rules."""

import logging
from dataclasses import dataclass

from rule_arbiter.errors import AnalysisFailureError, InvalidRuleError, Recovered
from rule_arbiter.models import Rule, effective_priority
from rule_arbiter.rules.complexity import specificity
from rule_arbiter.rules.conflicts import ConflictDetector
from rule_arbiter.rules.models import (
    Conflict,
    ConflictFinding,
    ResolutionStrategy,
    ResolutionSuggestion,
    ResolvedRuleSet,
    Severity,
)
from rule_arbiter.rules.strategies import suggest_resolution

logger = logging.getLogger(__name__)


@dataclass
class ResolutionDecision:
    """Which rule of a conflicting pair survives."""

    keep_candidate: bool
    keep_incumbent: bool
    reason: str

    @property
    def keep_both(self) -> bool:
        return self.keep_candidate and self.keep_incumbent


def resolved_specificity(rule: Rule) -> float:
    """Specificity, with malformed rules scored as maximally generic."""
    if rule.condition_type is None or not rule.condition_expression:
        return 0.0
    return specificity(rule)


class ConflictResolver:
    """Applies resolution strategies to a rule set."""

    def __init__(self, detector: ConflictDetector | None = None) -> None:
        self.detector = detector or ConflictDetector()

    def suggest_resolution(
        self,
        findings: list[ConflictFinding],
        rule1: Rule,
        rule2: Rule,
    ) -> ResolutionSuggestion:
        """Suggest strategies for a pair's findings."""
        return suggest_resolution(findings, rule1, rule2)

    def apply_resolution(
        self,
        conflict: Conflict,
        candidate: Rule,
        incumbent: Rule,
    ) -> ResolutionDecision:
        """
        Decide which of two high-severity conflicting rules to keep.

        Args:
            conflict: The conflict between the two rules.
            candidate: Rule being considered for acceptance.
            incumbent: Rule already accepted (never lower priority than the
                candidate, since candidates arrive in priority order).

        Returns:
            ResolutionDecision. Ties always favour the incumbent.
        """
        match conflict.suggested_resolution.primary_strategy:
            case ResolutionStrategy.MOST_SPECIFIC:
                candidate_wins = resolved_specificity(candidate) > resolved_specificity(incumbent)
                return ResolutionDecision(
                    keep_candidate=candidate_wins,
                    keep_incumbent=not candidate_wins,
                    reason="More specific rule kept",
                )

            case ResolutionStrategy.SEQUENTIAL_EXECUTION:
                return ResolutionDecision(
                    keep_candidate=True,
                    keep_incumbent=True,
                    reason="Sequential execution configured",
                )

            case ResolutionStrategy.HIGHEST_PRIORITY:
                reason = "Higher priority rule kept"

            case _:
                reason = "Default priority-based resolution"

        candidate_wins = effective_priority(candidate) > effective_priority(incumbent)
        return ResolutionDecision(
            keep_candidate=candidate_wins,
            keep_incumbent=not candidate_wins,
            reason=reason,
        )

    def _log_invalid(self, rules: list[Rule]) -> None:
        for rule in rules:
            missing = rule.missing_fields
            if missing:
                error = InvalidRuleError(rule.id, missing)
                logger.warning("%s; using worst-case specificity and priority", error)

    def _resolve(self, rules: list[Rule]) -> ResolvedRuleSet:
        candidates = sorted(
            (r for r in rules if r.enabled),
            key=effective_priority,
            reverse=True,
        )
        self._log_invalid(candidates)

        accepted: list[Rule] = []
        dropped: list[Rule] = []
        sequential: list[tuple[str, str]] = []

        for candidate in candidates:
            losers: list[tuple[Rule, str]] = []
            pairs: list[tuple[str, str]] = []
            beaten_by: tuple[Rule, str] | None = None

            for incumbent in accepted:
                conflict = self.detector.analyze_rule_pair(candidate, incumbent)
                if conflict is None or conflict.severity != Severity.HIGH:
                    continue

                decision = self.apply_resolution(conflict, candidate, incumbent)
                if decision.keep_both:
                    pairs.append((incumbent.id, candidate.id))
                elif decision.keep_candidate:
                    losers.append((incumbent, decision.reason))
                else:
                    beaten_by = (incumbent, decision.reason)
                    break

            # A candidate that loses any contest never evicts an incumbent
            if beaten_by is not None:
                dropped.append(candidate)
                logger.debug(
                    "Dropped rule=%s in favour of rule=%s reason=%s",
                    candidate.id,
                    beaten_by[0].id,
                    beaten_by[1],
                )
                continue

            for loser, reason in losers:
                accepted.remove(loser)
                dropped.append(loser)
                logger.debug(
                    "Dropped rule=%s in favour of rule=%s reason=%s",
                    loser.id,
                    candidate.id,
                    reason,
                )
            accepted.append(candidate)
            sequential.extend(pairs)

        # Sequential pairs only make sense while both rules survive
        kept_ids = {r.id for r in accepted}
        sequential = [p for p in sequential if p[0] in kept_ids and p[1] in kept_ids]

        return ResolvedRuleSet(rules=accepted, dropped=dropped, sequential_pairs=sequential)

    def resolve(self, rules: list[Rule]) -> Recovered[ResolvedRuleSet]:
        """
        Resolve high-severity conflicts, failing open.

        Args:
            rules: Rules to reconcile.

        Returns:
            Recovered resolution. On any unexpected error the value holds the
            original rules unchanged and the error is an AnalysisFailureError.
        """
        try:
            resolved = self._resolve(rules)
        except Exception as e:
            error = AnalysisFailureError("conflict resolution", e)
            logger.error("Conflict resolution failed, returning original rules: %s", e)
            return Recovered(ResolvedRuleSet(rules=list(rules)), error=error)

        logger.debug(
            "Conflict resolution completed original=%d resolved=%d sequential=%d",
            len(rules),
            len(resolved.rules),
            len(resolved.sequential_pairs),
        )
        return Recovered(resolved)

    def resolve_conflicts(self, rules: list[Rule]) -> list[Rule]:
        """Resolve conflicts and return only the surviving rules."""
        return self.resolve(rules).value.rules
