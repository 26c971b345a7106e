"""Tests for condition complexity scoring."""

import pytest

from rule_arbiter.models import ConditionType
from rule_arbiter.rules.complexity import specificity


class TestSpecificity:
    """Tests for the specificity score."""

    def test_simple_condition(self, make_rule) -> None:
        """Test the score of a short simple condition."""
        rule = make_rule("r1", condition_expression="refund")
        assert specificity(rule) == pytest.approx(1 + 6 / 50)

    def test_complex_condition_with_both_operators(self, make_rule) -> None:
        """Test that AND and OR each add two points."""
        rule = make_rule(
            "r1",
            condition_type=ConditionType.COMPLEX,
            condition_expression="a AND b OR c",
        )
        assert specificity(rule) == pytest.approx(3 + 12 / 50 + 2 + 2)

    def test_length_bonus_is_capped(self, make_rule) -> None:
        """Test that the length bonus stops at five points."""
        rule = make_rule(
            "r1",
            condition_type=ConditionType.REGEX,
            condition_expression="x" * 400,
        )
        assert specificity(rule) == pytest.approx(5 + 5)

    def test_missing_type_uses_default_base(self, make_rule) -> None:
        """Test that a rule without a condition type scores the default base."""
        rule = make_rule("r1", condition_type=None, condition_expression=None)
        assert specificity(rule) == pytest.approx(2.0)

    def test_metadata_keys_add_half_a_point_each(self, make_rule) -> None:
        """Test that each metadata key adds half a point."""
        plain = make_rule("r1", condition_expression="refund")
        tagged = make_rule(
            "r2", condition_expression="refund", metadata={"team": "billing", "sla": 4}
        )
        assert specificity(tagged) - specificity(plain) == pytest.approx(1.0)

    def test_operator_detection_is_substring_based(self, make_rule) -> None:
        """Uppercase words containing OR still count as an operator."""
        rule = make_rule("r1", condition_expression="ORDER")
        assert specificity(rule) == pytest.approx(1 + 5 / 50 + 2)

    def test_regex_scores_higher_than_simple(self, make_rule) -> None:
        """Test that regex conditions outrank simple ones."""
        simple = make_rule("r1", condition_expression="invoice")
        regex = make_rule("r2", condition_type=ConditionType.REGEX, condition_expression="invoice")
        assert specificity(regex) > specificity(simple)
