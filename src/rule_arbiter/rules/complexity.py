"""Condition complexity scoring.

The same score drives two decisions: the optimizer evaluates cheap (low score)
rules first so they can fail fast, and the conflict resolver keeps the more
specific (high score) rule when two rules overlap.
"""

from rule_arbiter.models import ConditionType, Rule

BASE_SCORES: dict[ConditionType, float] = {
    ConditionType.SIMPLE: 1.0,
    ConditionType.COMPLEX: 3.0,
    ConditionType.REGEX: 5.0,
}
DEFAULT_BASE_SCORE = 2.0

LENGTH_DIVISOR = 50
MAX_LENGTH_SCORE = 5.0
LOGICAL_OPERATOR_SCORE = 2.0
METADATA_KEY_SCORE = 0.5


def specificity(rule: Rule) -> float:
    """
    Score how narrow a rule's condition is.

    Args:
        rule: The rule to score.

    Returns:
        Base score for the condition type, plus expression length (capped),
        plus a bonus for each of AND / OR, plus 0.5 per metadata key.
    """
    score = BASE_SCORES.get(rule.condition_type, DEFAULT_BASE_SCORE)

    expression = rule.condition_expression or ""
    score += min(len(expression) / LENGTH_DIVISOR, MAX_LENGTH_SCORE)

    if "AND" in expression:
        score += LOGICAL_OPERATOR_SCORE
    if "OR" in expression:
        score += LOGICAL_OPERATOR_SCORE

    score += METADATA_KEY_SCORE * len(rule.metadata or {})
    return score
