"""Condition predicates: decide whether a rule's condition holds for a message.

The engine never interprets condition expressions itself. It calls a
``ConditionPredicate``, which also declares whether a result computed for one
message of a batch group may be reused for another member of that group.
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Callable

from rule_arbiter.models import ConditionType, Message, Rule

VOLATILE_REFERENCE = re.compile(
    r"\b(message_id|timestamp|received_at|date)\b|\bid:", re.IGNORECASE
)

MESSAGE_FIELDS = ("sender", "subject", "body", "recipients")
FIELD_ALIASES = {"from": "sender", "to": "recipients"}
FIELD_PREFIX = re.compile(r"^(sender|from|subject|body|recipients|to):\s*", re.IGNORECASE)


class ConditionPredicate(ABC):
    """Pluggable condition-matching primitive."""

    @abstractmethod
    def matches(self, rule: Rule, message: Message) -> bool:
        """
        Check whether the rule's condition holds for the message.

        Args:
            rule: Rule whose condition to evaluate.
            message: Message to evaluate against.

        Returns:
            True if the condition matches.
        """
        ...

    def reusable(self, rule: Rule, representative: Message, member: Message) -> bool:
        """
        Whether the representative's result for this rule also holds for member.

        The default trusts batch grouping except for conditions that reference
        fields which always differ between messages (ids, timestamps).
        """
        return not VOLATILE_REFERENCE.search(rule.condition_expression or "")

    def cacheable(self, rule: Rule) -> bool:
        """
        Whether results for this rule may be cached by message content.

        Cache keys ignore message ids and timestamps, so conditions that
        reference them are always evaluated.
        """
        return not VOLATILE_REFERENCE.search(rule.condition_expression or "")


class FunctionPredicate(ConditionPredicate):
    """Adapts a plain ``(rule, message) -> bool`` callable."""

    def __init__(
        self,
        func: Callable[[Rule, Message], bool],
        reusable: Callable[[Rule, Message, Message], bool] | None = None,
        cacheable: Callable[[Rule], bool] | None = None,
    ) -> None:
        self.func = func
        self._reusable = reusable
        self._cacheable = cacheable

    def matches(self, rule: Rule, message: Message) -> bool:
        return bool(self.func(rule, message))

    def reusable(self, rule: Rule, representative: Message, member: Message) -> bool:
        if self._reusable is not None:
            return self._reusable(rule, representative, member)
        return super().reusable(rule, representative, member)

    def cacheable(self, rule: Rule) -> bool:
        if self._cacheable is not None:
            return self._cacheable(rule)
        return super().cacheable(rule)


def _field_text(message: Message, field: str) -> str:
    if field == "recipients":
        return " ".join(message.recipients)
    return getattr(message, field) or ""


def _split_field(term: str) -> tuple[tuple[str, ...], str]:
    """Split an optional ``field:`` prefix off a term."""
    match = FIELD_PREFIX.match(term)
    if not match:
        return ("sender", "subject", "body"), term
    field = match.group(1).lower()
    return (FIELD_ALIASES.get(field, field),), term[match.end() :]


def _terms(rule: Rule) -> list[list[str]]:
    """OR-of-AND groups for complex conditions; one term otherwise."""
    expression = (rule.condition_expression or "").strip()
    if rule.condition_type != ConditionType.COMPLEX:
        return [[expression]]
    return [
        [term.strip() for term in group.split(" AND ") if term.strip()]
        for group in expression.split(" OR ")
    ]


class KeywordPredicate(ConditionPredicate):
    """Default matcher for keyword and regex conditions.

    - simple: case-insensitive substring, optionally scoped with ``subject:``,
      ``sender:``/``from:``, ``body:`` or ``recipients:``/``to:``; a leading
      ``NOT `` inverts the term
    - complex: simple terms joined with ``AND`` / ``OR`` (AND binds tighter)
    - regex: ``re.search`` with IGNORECASE, optionally field-scoped
    """

    def _term_matches(self, term: str, message: Message, regex: bool) -> bool:
        negate = False
        if not regex and term.upper().startswith("NOT "):
            negate = True
            term = term[4:].strip()

        fields, value = _split_field(term)
        if regex:
            result = any(
                re.search(value, _field_text(message, f), re.IGNORECASE) for f in fields
            )
        else:
            needle = value.lower()
            result = any(needle in _field_text(message, f).lower() for f in fields)

        return not result if negate else result

    def matches(self, rule: Rule, message: Message) -> bool:
        if not rule.condition_expression:
            return False

        match rule.condition_type:
            case ConditionType.REGEX:
                return self._term_matches(rule.condition_expression, message, regex=True)

            case ConditionType.COMPLEX:
                return any(
                    group and all(self._term_matches(t, message, regex=False) for t in group)
                    for group in _terms(rule)
                )

            case _:
                return self._term_matches(rule.condition_expression.strip(), message, regex=False)

    def fields_read(self, rule: Rule) -> set[str]:
        """Message fields the rule's condition inspects."""
        fields: set[str] = set()
        for group in _terms(rule):
            for term in group:
                if term.upper().startswith("NOT "):
                    term = term[4:].strip()
                fields.update(_split_field(term)[0])
        return fields

    def reusable(self, rule: Rule, representative: Message, member: Message) -> bool:
        """Reusable only when every field the condition reads is identical."""
        return all(
            _field_text(representative, f) == _field_text(member, f)
            for f in self.fields_read(rule)
        )
