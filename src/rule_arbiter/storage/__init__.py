"""Rule and execution-log storage."""

from rule_arbiter.storage.base import LogStore, RuleStore

__all__ = ["LogStore", "RuleStore"]
