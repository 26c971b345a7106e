"""Tests for string and message similarity."""

import pytest

from rule_arbiter.models import Message
from rule_arbiter.rules.similarity import edit_distance, messages_are_similar, string_similarity


class TestEditDistance:
    """Tests for Levenshtein distance."""

    @pytest.mark.parametrize(
        ("a", "b", "expected"),
        [
            ("kitten", "sitting", 3),
            ("", "abc", 3),
            ("abc", "", 3),
            ("abc", "abc", 0),
            ("flaw", "lawn", 2),
        ],
    )
    def test_known_distances(self, a: str, b: str, expected: int) -> None:
        """Test Levenshtein distances for known pairs."""
        assert edit_distance(a, b) == expected

    def test_symmetric(self) -> None:
        """Test that distance does not depend on argument order."""
        assert edit_distance("invoice", "voice mail") == edit_distance("voice mail", "invoice")


class TestStringSimilarity:
    """Tests for normalized similarity."""

    def test_empty_strings_are_identical(self) -> None:
        """Test that two empty strings are fully similar."""
        assert string_similarity("", "") == 1.0

    def test_one_substitution(self) -> None:
        """Test similarity after a single substitution."""
        assert string_similarity("abc", "abd") == pytest.approx(2 / 3)

    def test_completely_different(self) -> None:
        """Test that disjoint strings have zero similarity."""
        assert string_similarity("abc", "xyz") == 0.0


class TestMessagesAreSimilar:
    """Tests for batch grouping similarity."""

    def test_same_sender_case_insensitive(self) -> None:
        """Test that senders match regardless of case."""
        first = Message(id="1", sender="Alice@Example.com", subject="Hello")
        second = Message(id="2", sender="alice@example.com", subject="Totally different")
        assert messages_are_similar(first, second) is True

    def test_empty_senders_do_not_match(self) -> None:
        """Test that missing senders never make messages similar."""
        first = Message(id="1", sender="", subject="Quarterly report")
        second = Message(id="2", sender="", subject="Lunch plans")
        assert messages_are_similar(first, second) is False

    def test_similar_subjects(self) -> None:
        """Test that near-identical subjects group different senders."""
        first = Message(id="1", sender="a@x.com", subject="Invoice #1234")
        second = Message(id="2", sender="b@y.com", subject="Invoice #1235")
        assert messages_are_similar(first, second) is True

    def test_threshold_is_exclusive(self) -> None:
        """Similarity of exactly 0.7 does not group."""
        first = Message(id="1", sender="a@x.com", subject="abcdefghij")
        second = Message(id="2", sender="b@y.com", subject="abcdefgxyz")
        assert string_similarity(first.subject, second.subject) == pytest.approx(0.7)
        assert messages_are_similar(first, second) is False
        assert messages_are_similar(first, second, threshold=0.6) is True
