"""Error taxonomy and the fail-open result wrapper."""

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class RuleArbiterError(Exception):
    """Base class for recoverable rule-arbiter errors."""

    def __init__(self, message: str, user_id: str | None = None) -> None:
        super().__init__(message)
        self.user_id = user_id


class StoreUnavailableError(RuleArbiterError):
    """Raised when the rule store or log store read fails or times out."""

    def __init__(
        self,
        store: str,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        message = f"{store} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, user_id=user_id)
        self.store = store
        self.reason = reason


class InvalidRuleError(RuleArbiterError):
    """Raised when a rule is missing fields required for analysis."""

    def __init__(self, rule_id: str, missing: list[str]) -> None:
        super().__init__(f"Rule {rule_id} is missing {', '.join(missing)}")
        self.rule_id = rule_id
        self.missing = missing


class AnalysisFailureError(RuleArbiterError):
    """Raised when detection, resolution or optimization fails unexpectedly."""

    def __init__(
        self,
        operation: str,
        cause: Exception,
        user_id: str | None = None,
    ) -> None:
        super().__init__(f"{operation} failed: {cause}", user_id=user_id)
        self.operation = operation
        self.cause = cause


class RuleConflictError(RuleArbiterError):
    """Raised by a store that enforces blocking on conflicting rules."""

    def __init__(self, rule_name: str, conflict_count: int) -> None:
        super().__init__(
            f"Rule '{rule_name}' conflicts with {conflict_count} existing rule(s)"
        )
        self.rule_name = rule_name
        self.conflict_count = conflict_count


@dataclass
class Recovered(Generic[T]):
    """A usable value, plus the recoverable error that forced a fallback.

    Public engine operations never raise for store or analysis failures. They
    return the best value available (cached order, raw rules, or the original
    input) and attach the error here so callers can decide whether to care.
    """

    value: T
    error: RuleArbiterError | None = None

    @property
    def degraded(self) -> bool:
        """True when the value is a fallback rather than the full result."""
        return self.error is not None
