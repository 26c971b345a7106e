"""Pytest fixtures for rule-arbiter tests."""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

import pytest

from rule_arbiter.config import Settings
from rule_arbiter.errors import StoreUnavailableError
from rule_arbiter.logging import reset_logging
from rule_arbiter.models import (
    ConditionType,
    ExecutionLogEntry,
    Message,
    Rule,
    RuleAction,
)
from rule_arbiter.storage.base import LogStore, RuleStore


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryStore(RuleStore, LogStore):
    """Rule and log store backed by dicts, with switchable failures."""

    def __init__(self) -> None:
        self.rules: dict[str, list[Rule]] = {}
        self.logs: dict[str, list[ExecutionLogEntry]] = {}
        self.rule_reads = 0
        self.log_reads = 0
        self.fail_rules = False
        self.fail_logs = False
        self.delay = 0.0

    async def list_enabled_rules(self, user_id: str) -> list[Rule]:
        self.rule_reads += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_rules:
            raise StoreUnavailableError("rule store", user_id, "connection refused")
        return [r for r in self.rules.get(user_id, []) if r.enabled]

    async def recent_executions(
        self,
        user_id: str,
        window: timedelta,
    ) -> list[ExecutionLogEntry]:
        self.log_reads += 1
        if self.fail_logs:
            raise StoreUnavailableError("log store", user_id, "connection refused")
        return list(self.logs.get(user_id, []))


@pytest.fixture(autouse=True)
def _isolated_logging():
    """Keep file logging state from leaking between tests."""
    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def make_rule() -> Callable[..., Rule]:
    """Factory for rules with sensible defaults."""

    def _make(rule_id: str, **overrides) -> Rule:
        fields = {
            "id": rule_id,
            "name": rule_id.upper(),
            "priority": 5,
            "condition_type": ConditionType.SIMPLE,
            "condition_expression": f"keyword-{rule_id}",
            "action": RuleAction.NOTIFY,
        }
        fields.update(overrides)
        return Rule(**fields)

    return _make


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the user's config and environment files."""
    return Settings(
        _env_file=None,
        config_dir=tmp_path / "config",
        log_dir=tmp_path / "logs",
        store_timeout_seconds=0.2,
    )


@pytest.fixture
def sample_message() -> Message:
    """Create a sample message for testing."""
    return Message(
        id="msg-1",
        sender="customer@example.com",
        subject="Refund request for order 1234",
        body="Please process my refund, the item arrived broken.",
        recipients=["support@shop.example"],
        received_at=datetime(2024, 6, 1, 8, 55),
    )


@pytest.fixture
def newsletter_message() -> Message:
    """Create a newsletter-like message for testing."""
    return Message(
        id="msg-2",
        sender="news@letters.example",
        subject="Weekly Newsletter - June Edition",
        body="Check out our latest updates! Click here to unsubscribe.",
        recipients=["support@shop.example"],
    )
