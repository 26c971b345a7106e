"""Store collaborators consumed by the rule engine."""

from abc import ABC, abstractmethod
from datetime import timedelta

from rule_arbiter.models import ExecutionLogEntry, Rule


class RuleStore(ABC):
    """Read side of a user's rule storage."""

    @abstractmethod
    async def list_enabled_rules(self, user_id: str) -> list[Rule]:
        """
        Fetch the user's enabled rules.

        Args:
            user_id: Owner of the rules.

        Returns:
            Enabled rules in storage order.

        Raises:
            StoreUnavailableError: If the store cannot be read.
        """
        ...


class LogStore(ABC):
    """Read side of rule execution history."""

    @abstractmethod
    async def recent_executions(
        self,
        user_id: str,
        window: timedelta,
    ) -> list[ExecutionLogEntry]:
        """
        Fetch the user's execution log entries within a trailing window.

        Raises:
            StoreUnavailableError: If the store cannot be read.
        """
        ...
