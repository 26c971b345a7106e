"""Tests for the SQLite rule store."""

import sqlite3
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from rule_arbiter.errors import RuleConflictError, StoreUnavailableError
from rule_arbiter.models import RuleAction, RuleExecutionResult
from rule_arbiter.rules.engine import RuleEngine
from rule_arbiter.storage.database import RuleDatabase


@pytest.fixture
def db(tmp_path) -> RuleDatabase:
    return RuleDatabase(tmp_path / "state" / "rules.db")


class TestRules:
    """Tests for rule persistence."""

    def test_save_and_list(self, db, make_rule) -> None:
        """Test saving rules and listing them back."""
        db.save_rule("u1", make_rule("a", metadata={"team": "billing"}))
        db.save_rule("u1", make_rule("b", enabled=False))
        db.save_rule("u2", make_rule("c"))

        rules = db.list_rules("u1")

        assert [r.id for r in rules] == ["a", "b"]
        assert rules[0].metadata == {"team": "billing"}
        assert [r.id for r in db.list_rules("u1", include_disabled=False)] == ["a"]

    def test_save_replaces_existing(self, db, make_rule) -> None:
        """Test that saving an existing id updates it in place."""
        db.save_rule("u1", make_rule("a", priority=2))
        db.save_rule("u1", make_rule("a", priority=9))

        rule = db.get_rule("u1", "a")
        assert rule.priority == 9
        assert len(db.list_rules("u1")) == 1

    def test_save_reports_conflicts(self, db, make_rule) -> None:
        """Test that saving returns an advisory conflict report."""
        db.save_rule("u1", make_rule("a", action=RuleAction.ESCALATE, condition_expression="vip"))
        report = db.save_rule("u1", make_rule("b", action=RuleAction.AUTO_REPLY, condition_expression="vip"))

        assert report.conflict_count == 1
        assert db.get_rule("u1", "b") is not None

    def test_update_does_not_conflict_with_itself(self, db, make_rule) -> None:
        """Test that re-saving a rule does not conflict with its stored copy."""
        db.save_rule("u1", make_rule("a", action=RuleAction.ESCALATE, condition_expression="vip"))
        report = db.save_rule("u1", make_rule("a", action=RuleAction.AUTO_REPLY, condition_expression="vip"))
        assert report.has_conflicts is False

    def test_strict_save_refuses_conflicts(self, db, make_rule) -> None:
        """Test that strict saves raise and store nothing on conflict."""
        db.save_rule("u1", make_rule("a", action=RuleAction.ESCALATE, condition_expression="vip"))

        with pytest.raises(RuleConflictError) as exc_info:
            db.save_rule(
                "u1",
                make_rule("b", action=RuleAction.AUTO_REPLY, condition_expression="vip"),
                strict=True,
            )

        assert exc_info.value.conflict_count == 1
        assert db.get_rule("u1", "b") is None

    def test_strict_save_accepts_disabled_rule(self, db, make_rule) -> None:
        """Test that a disabled rule is stored even when its enabled twin would conflict."""
        db.save_rule("u1", make_rule("a", action=RuleAction.ESCALATE, condition_expression="vip"))

        report = db.save_rule(
            "u1",
            make_rule("b", action=RuleAction.AUTO_REPLY, condition_expression="vip", enabled=False),
            strict=True,
        )

        assert report.has_conflicts is False
        assert db.get_rule("u1", "b") is not None

    def test_delete(self, db, make_rule) -> None:
        """Test that deleting reports whether a rule was removed."""
        db.save_rule("u1", make_rule("a"))
        assert db.delete_rule("u1", "a") is True
        assert db.delete_rule("u1", "a") is False

    def test_import_rules(self, db) -> None:
        """Test bulk import from plain dictionaries."""
        reports = db.import_rules(
            "u1",
            [
                {"id": "a", "priority": 3, "condition_expression": "refund", "action": "escalate"},
                {"id": "b", "priority": 3, "condition_expression": "refund", "action": "auto_reply"},
            ],
        )
        assert [r.conflict_count for r in reports] == [0, 1]

    def test_import_rejects_invalid_rules(self, db) -> None:
        """Test that import validates every rule."""
        with pytest.raises(ValidationError):
            db.import_rules("u1", [{"id": "a", "priority": 42}])

    def test_invalid_stored_rows_are_skipped(self, db, make_rule) -> None:
        """Test that rows failing validation are skipped when listing."""
        db.save_rule("u1", make_rule("good"))
        with sqlite3.connect(db.db_path) as conn:
            conn.execute(
                "INSERT INTO rules (user_id, rule_id, priority, enabled, created_at, updated_at) "
                "VALUES ('u1', 'bad', 99, 1, '2024-01-01', '2024-01-01')"
            )
        assert [r.id for r in db.list_rules("u1")] == ["good"]


class TestExecutions:
    """Tests for execution history."""

    def test_record_and_list(self, db) -> None:
        """Test recording executions and listing them back."""
        db.record_execution(
            "u1",
            [RuleExecutionResult(rule_id="a", execution_time_ms=3.5, success=True)],
            message_id="m1",
        )
        db.record_execution(
            "u1",
            [RuleExecutionResult(rule_id="a", execution_time_ms=1.0)],
            executed_at=datetime.now() - timedelta(days=60),
        )

        entries = db.list_executions("u1", datetime.now() - timedelta(days=30))

        assert len(entries) == 1
        assert entries[0].message_id == "m1"
        assert entries[0].results[0].execution_time_ms == 3.5

    def test_cleanup_old_executions(self, db) -> None:
        """Test that executions past retention are deleted."""
        db.record_execution("u1", [], executed_at=datetime.now() - timedelta(days=100))
        db.record_execution("u1", [])
        assert db.cleanup_old_executions(retention_days=90) == 1


class TestAsyncInterface:
    """Tests for the async store interface used by the engine."""

    @pytest.mark.asyncio
    async def test_list_enabled_rules(self, db, make_rule) -> None:
        """Test that the async read returns only enabled rules."""
        db.save_rule("u1", make_rule("a"))
        db.save_rule("u1", make_rule("b", enabled=False))

        rules = await db.list_enabled_rules("u1")

        assert [r.id for r in rules] == ["a"]

    @pytest.mark.asyncio
    async def test_recent_executions(self, db) -> None:
        """Test that the async log read honors the window."""
        db.record_execution("u1", [RuleExecutionResult(rule_id="a")])
        entries = await db.recent_executions("u1", timedelta(days=1))
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_sqlite_errors_become_store_unavailable(self, db) -> None:
        """Test that database errors surface as store failures."""
        with sqlite3.connect(db.db_path) as conn:
            conn.execute("DROP TABLE rules")

        with pytest.raises(StoreUnavailableError):
            await db.list_enabled_rules("u1")

    @pytest.mark.asyncio
    async def test_engine_over_database(self, db, settings, make_rule, sample_message) -> None:
        """Test the engine reading rules and history from the database."""
        db.save_rule("u1", make_rule("refunds", condition_expression="refund", priority=4))
        db.save_rule("u1", make_rule("broken", condition_expression="body:broken", priority=7))
        db.record_execution("u1", [RuleExecutionResult(rule_id="refunds", execution_time_ms=2.0)])

        engine = RuleEngine(db, settings=settings)
        result = await engine.evaluate("u1", sample_message)

        assert engine.log_store is db
        assert result.triggered_ids == ["broken", "refunds"]
