"""Core data models: rules, messages and execution history."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

PRIORITY_MIN = 1
PRIORITY_MAX = 10
DEFAULT_PRIORITY = 5

_WHITESPACE = re.compile(r"\s+")


class ConditionType(str, Enum):
    """How a rule's condition expression should be interpreted."""

    SIMPLE = "simple"
    COMPLEX = "complex"
    REGEX = "regex"


class RuleAction(str, Enum):
    """Actions a rule can trigger when its condition matches."""

    ESCALATE = "escalate"
    AUTO_REPLY = "auto_reply"
    QUEUE_FOR_REVIEW = "queue_for_review"
    NOTIFY = "notify"


class Rule(BaseModel):
    """A user-defined business rule.

    Optional fields may be ``None`` for rules that arrive malformed from the
    store; the analysis code treats those as maximally generic and lowest
    priority instead of rejecting them.
    """

    id: str = Field(description="Rule identifier")
    name: str = Field(default="", description="Human-readable rule name")
    description: str | None = Field(default=None, description="Rule description")
    priority: int | None = Field(
        default=DEFAULT_PRIORITY,
        ge=PRIORITY_MIN,
        le=PRIORITY_MAX,
        description="Higher number = evaluated and kept first",
    )
    condition_type: ConditionType | None = Field(default=ConditionType.SIMPLE)
    condition_expression: str | None = Field(
        default="", description="Engine-agnostic condition expression"
    )
    action: RuleAction | None = Field(default=None, description="Action to trigger")
    action_target: str | None = Field(
        default=None, description="Person or queue the action is directed at"
    )
    enabled: bool = Field(default=True, description="Whether the rule is active")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        """Name for messages and tables, falling back to the id."""
        return self.name or self.id

    @property
    def missing_fields(self) -> list[str]:
        """Fields required for conflict analysis that are absent."""
        missing = []
        if self.priority is None:
            missing.append("priority")
        if self.condition_type is None:
            missing.append("condition_type")
        if not self.condition_expression:
            missing.append("condition_expression")
        if self.action is None:
            missing.append("action")
        return missing


def effective_priority(rule: Rule) -> int:
    """Priority used for ordering; a missing priority ranks below everything."""
    return rule.priority if rule.priority is not None else 0


@dataclass
class Message:
    """An incoming email message to evaluate rules against."""

    id: str
    sender: str = ""
    subject: str = ""
    body: str = ""
    recipients: list[str] = field(default_factory=list)
    received_at: datetime | None = None

    @property
    def fingerprint(self) -> str:
        """Normalized sender+subject+body+recipients, stable across resubmissions."""
        parts = (self.sender, self.subject, self.body, " ".join(self.recipients))
        return "\x1f".join(_WHITESPACE.sub(" ", p or "").strip().lower() for p in parts)


class RuleExecutionResult(BaseModel):
    """Outcome of one rule during a logged evaluation."""

    rule_id: str
    execution_time_ms: float = Field(default=0.0, ge=0.0)
    success: bool = True


class ExecutionLogEntry(BaseModel):
    """One logged evaluation of a user's rules against a message."""

    user_id: str
    executed_at: datetime
    message_id: str | None = None
    results: list[RuleExecutionResult] = Field(default_factory=list)


class EvaluationResult(BaseModel):
    """Rules triggered for a single message."""

    message_id: str
    triggered: list[Rule] = Field(default_factory=list)
    group_index: int | None = Field(
        default=None, description="Batch group this message belonged to"
    )
    representative_id: str | None = Field(
        default=None, description="Message whose condition results were reused"
    )
    cache_hits: int = Field(default=0, description="Conditions served from cache")
    reused_conditions: int = Field(
        default=0, description="Conditions reused from the group representative"
    )
    predicate_errors: int = Field(default=0, description="Predicate calls that raised")
    executions: list[RuleExecutionResult] = Field(
        default_factory=list,
        description="Timing records for triggered and failed rules, ready for the log store",
    )
    degraded: bool = Field(
        default=False, description="Rules were not fully resolved/optimized"
    )
    error: str | None = None

    @property
    def triggered_ids(self) -> list[str]:
        """Ids of triggered rules, in evaluation order."""
        return [r.id for r in self.triggered]
