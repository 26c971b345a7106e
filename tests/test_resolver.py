"""Tests for conflict resolution."""

from rule_arbiter.errors import AnalysisFailureError
from rule_arbiter.models import RuleAction
from rule_arbiter.rules.conflicts import ConflictDetector
from rule_arbiter.rules.resolver import ConflictResolver, resolved_specificity


class BrokenDetector(ConflictDetector):
    def analyze_rule_pair(self, rule1, rule2):
        raise RuntimeError("detector exploded")


def ids(rules) -> list[str]:
    return [r.id for r in rules]


class TestResolveConflicts:
    """Tests for greedy resolution of high-severity conflicts."""

    def test_higher_priority_rule_survives(self, make_rule) -> None:
        """Test that the higher priority rule wins regardless of input order."""
        r1 = make_rule("r1", priority=8, action=RuleAction.ESCALATE, condition_expression="refund")
        r2 = make_rule("r2", priority=3, action=RuleAction.AUTO_REPLY, condition_expression="refund")

        assert ids(ConflictResolver().resolve_conflicts([r1, r2])) == ["r1"]
        assert ids(ConflictResolver().resolve_conflicts([r2, r1])) == ["r1"]

    def test_more_specific_candidate_replaces_incumbent(self, make_rule) -> None:
        """Test that a more specific rule replaces an overlapping broader one."""
        broad = make_rule("broad", priority=8, action=RuleAction.ESCALATE, condition_expression="refund")
        narrow = make_rule(
            "narrow",
            priority=3,
            action=RuleAction.AUTO_REPLY,
            condition_expression="refund request damaged item photos attached",
        )

        resolved = ConflictResolver().resolve([broad, narrow]).value

        assert ids(resolved.rules) == ["narrow"]
        assert ids(resolved.dropped) == ["broad"]
        assert resolved.conflicts_resolved == 1

    def test_action_conflict_without_overlap_runs_sequentially(self, make_rule) -> None:
        """Test that clashing actions are both kept and paired."""
        r1 = make_rule("r1", priority=8, action=RuleAction.ESCALATE)
        r2 = make_rule("r2", priority=3, action=RuleAction.QUEUE_FOR_REVIEW)

        resolved = ConflictResolver().resolve([r1, r2]).value

        assert ids(resolved.rules) == ["r1", "r2"]
        assert resolved.sequential_pairs == [("r1", "r2")]
        assert resolved.dropped == []

    def test_medium_severity_is_left_alone(self, make_rule) -> None:
        """Test that medium severity conflicts keep both rules."""
        r1 = make_rule("r1", action=RuleAction.ESCALATE, action_target="mgr", condition_expression="vip")
        r2 = make_rule("r2", action=RuleAction.ESCALATE, action_target="mgr", condition_expression="vip")
        assert ids(ConflictResolver().resolve_conflicts([r1, r2])) == ["r1", "r2"]

    def test_disabled_rules_are_removed(self, make_rule) -> None:
        """Test that disabled rules never survive resolution."""
        rules = [make_rule("r1"), make_rule("r2", enabled=False)]
        assert ids(ConflictResolver().resolve_conflicts(rules)) == ["r1"]

    def test_output_is_priority_ordered(self, make_rule) -> None:
        """Test that resolved rules come highest priority first."""
        rules = [make_rule("low", priority=1), make_rule("high", priority=9), make_rule("mid")]
        assert ids(ConflictResolver().resolve_conflicts(rules)) == ["high", "mid", "low"]

    def test_idempotent(self, make_rule) -> None:
        """Test that resolving twice changes nothing."""
        rules = [
            make_rule("a", priority=8, action=RuleAction.ESCALATE, condition_expression="refund now"),
            make_rule("b", priority=3, action=RuleAction.AUTO_REPLY, condition_expression="refund"),
            make_rule("c", priority=5, action=RuleAction.QUEUE_FOR_REVIEW),
            make_rule("d", priority=5, action=RuleAction.NOTIFY, condition_expression="refund"),
        ]
        resolver = ConflictResolver()
        once = resolver.resolve_conflicts(rules)
        twice = resolver.resolve_conflicts(once)
        assert ids(twice) == ids(once)

    def test_deterministic(self, make_rule) -> None:
        """Test that equal input always resolves the same way."""
        rules = [
            make_rule("a", priority=5, action=RuleAction.ESCALATE, condition_expression="refund"),
            make_rule("b", priority=5, action=RuleAction.AUTO_REPLY, condition_expression="refund"),
            make_rule("c", priority=5, action=RuleAction.QUEUE_FOR_REVIEW, condition_expression="refund"),
        ]
        first = ConflictResolver().resolve_conflicts(rules)
        second = ConflictResolver().resolve_conflicts(rules)
        assert ids(first) == ids(second)

    def test_loser_never_evicts(self, make_rule) -> None:
        """A candidate beaten by one incumbent leaves every incumbent in place."""
        broad = make_rule(
            "broad", priority=9, action=RuleAction.ESCALATE, condition_expression="refund"
        )
        narrow = make_rule(
            "narrow", priority=7, action=RuleAction.ESCALATE,
            condition_expression="refund request damaged item photos attached",
        )
        candidate = make_rule(
            "candidate", priority=2, action=RuleAction.AUTO_REPLY,
            condition_expression="refund request damaged",
        )

        resolved = ConflictResolver().resolve([broad, narrow, candidate]).value

        assert ids(resolved.rules) == ["broad", "narrow"]
        assert ids(resolved.dropped) == ["candidate"]


class TestMalformedRules:
    """Tests for rules missing fields."""

    def test_missing_condition_scores_zero(self, make_rule) -> None:
        """Test that rules without a condition score zero specificity."""
        assert resolved_specificity(make_rule("r", condition_type=None)) == 0.0
        assert resolved_specificity(make_rule("r", condition_expression="")) == 0.0

    def test_missing_priority_sorts_last(self, make_rule) -> None:
        """Test that a missing priority counts as zero."""
        rules = [make_rule("none", priority=None), make_rule("one", priority=1)]
        assert ids(ConflictResolver().resolve_conflicts(rules)) == ["one", "none"]

    def test_malformed_rules_are_logged(self, make_rule, caplog) -> None:
        """Test that missing fields are logged per rule."""
        rules = [make_rule("broken", priority=None, action=None), make_rule("fine")]
        with caplog.at_level("WARNING", logger="rule_arbiter.rules.resolver"):
            ConflictResolver().resolve(rules)
        assert "Rule broken is missing priority, action" in caplog.text
        assert "fine" not in caplog.text


class TestFailOpen:
    """Tests for error handling during resolution."""

    def test_unexpected_error_returns_original_rules(self, make_rule) -> None:
        """Test that an internal failure returns the input unchanged."""
        rules = [make_rule("a", priority=1), make_rule("b", priority=9)]
        result = ConflictResolver(BrokenDetector()).resolve(rules)

        assert result.degraded is True
        assert isinstance(result.error, AnalysisFailureError)
        assert ids(result.value.rules) == ["a", "b"]

    def test_resolve_conflicts_fails_open(self, make_rule) -> None:
        """Test that the list form also fails open."""
        rules = [make_rule("a"), make_rule("b")]
        assert ids(ConflictResolver(BrokenDetector()).resolve_conflicts(rules)) == ["a", "b"]
