"""Mapping from conflict findings to resolution strategies."""

from rule_arbiter.models import Rule, effective_priority
from rule_arbiter.rules.models import (
    ConflictFinding,
    ConflictType,
    ResolutionStrategy,
    ResolutionSuggestion,
    Suggestion,
)


def suggest_resolution(
    findings: list[ConflictFinding],
    rule1: Rule,
    rule2: Rule,
) -> ResolutionSuggestion:
    """
    Suggest how to resolve the findings between two rules.

    Args:
        findings: Findings for the pair, in detection order.
        rule1: First rule of the pair.
        rule2: Second rule of the pair.

    Returns:
        One suggestion per recognised finding. The first suggestion's strategy
        is primary (user choice when there are none); the conflict is auto
        resolvable only when that primary strategy is highest-priority.
    """
    suggestions: list[Suggestion] = []

    for finding in findings:
        match finding.type:
            case ConflictType.PRIORITY_CONFLICT:
                lower = rule2 if effective_priority(rule1) > effective_priority(rule2) else rule1
                suggestions.append(
                    Suggestion(
                        strategy=ResolutionStrategy.HIGHEST_PRIORITY,
                        description="Adjust priority of one rule to resolve conflict",
                        action=f'Increase priority of rule "{lower.display_name}"',
                    )
                )

            case ConflictType.CONDITION_OVERLAP:
                suggestions.append(
                    Suggestion(
                        strategy=ResolutionStrategy.MOST_SPECIFIC,
                        description="Make conditions more specific to avoid overlap",
                        action="Refine condition expressions to be more specific",
                    )
                )

            case ConflictType.ACTION_CONFLICT:
                suggestions.append(
                    Suggestion(
                        strategy=ResolutionStrategy.SEQUENTIAL_EXECUTION,
                        description="Execute actions sequentially based on priority",
                        action="Configure rules to execute in priority order",
                    )
                )

            case ConflictType.TARGET_CONFLICT:
                suggestions.append(
                    Suggestion(
                        strategy=ResolutionStrategy.USER_CHOICE,
                        description="Choose different escalation targets",
                        action="Assign different managers or escalation targets",
                    )
                )

    primary = suggestions[0].strategy if suggestions else ResolutionStrategy.USER_CHOICE
    return ResolutionSuggestion(
        primary_strategy=primary,
        suggestions=suggestions,
        auto_resolvable=primary == ResolutionStrategy.HIGHEST_PRIORITY,
    )
