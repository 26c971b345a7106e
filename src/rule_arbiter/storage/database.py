"""SQLite reference store for rules and execution history."""

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Generator

from pydantic import ValidationError

from rule_arbiter.errors import RuleConflictError, StoreUnavailableError
from rule_arbiter.models import ExecutionLogEntry, Rule, RuleExecutionResult
from rule_arbiter.rules.conflicts import ConflictDetector
from rule_arbiter.rules.models import ConflictReport
from rule_arbiter.storage.base import LogStore, RuleStore

logger = logging.getLogger(__name__)


def _safe_json_loads(data: str | None, default: Any = None) -> Any:
    """Safely parse JSON, returning default on error."""
    if not data:
        return default
    try:
        return json.loads(data)
    except (json.JSONDecodeError, TypeError) as e:
        # Corrupted rows degrade to the default instead of failing the read
        logger.warning("Failed to parse JSON in database: %s", e)
        return default


class RuleDatabase(RuleStore, LogStore):
    """SQLite database holding each user's rules and rule execution logs."""

    def __init__(self, db_path: Path, detector: ConflictDetector | None = None) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file.
            detector: Conflict detector used when saving rules.
        """
        self.db_path = db_path
        self.detector = detector or ConflictDetector()
        self._ensure_schema()

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        """Create database tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connection() as conn:
            conn.executescript("""
                -- User-defined business rules
                CREATE TABLE IF NOT EXISTS rules (
                    user_id TEXT NOT NULL,
                    rule_id TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    description TEXT,
                    priority INTEGER,
                    condition_type TEXT,
                    condition_expression TEXT,
                    action TEXT,
                    action_target TEXT,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    metadata TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, rule_id)
                );

                -- One row per evaluation of a user's rules against a message
                CREATE TABLE IF NOT EXISTS execution_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    message_id TEXT,
                    executed_at TEXT NOT NULL,
                    results TEXT NOT NULL
                );

                -- Indexes for common queries
                CREATE INDEX IF NOT EXISTS idx_rules_user_enabled
                    ON rules(user_id, enabled);
                CREATE INDEX IF NOT EXISTS idx_logs_user_executed
                    ON execution_logs(user_id, executed_at);
            """)

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> Rule | None:
        try:
            return Rule(
                id=row["rule_id"],
                name=row["name"],
                description=row["description"],
                priority=row["priority"],
                condition_type=row["condition_type"],
                condition_expression=row["condition_expression"],
                action=row["action"],
                action_target=row["action_target"],
                enabled=bool(row["enabled"]),
                metadata=_safe_json_loads(row["metadata"], {}),
            )
        except ValidationError as e:
            logger.warning("Skipping invalid stored rule rule=%s: %s", row["rule_id"], e)
            return None

    # ─── Rules ────────────────────────────────────────────────────────────

    def list_rules(self, user_id: str, include_disabled: bool = True) -> list[Rule]:
        """Get a user's rules in insertion order."""
        query = "SELECT * FROM rules WHERE user_id = ?"
        if not include_disabled:
            query += " AND enabled = 1"
        query += " ORDER BY created_at, rule_id"

        with self._connection() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()

        return [rule for row in rows if (rule := self._row_to_rule(row)) is not None]

    def get_rule(self, user_id: str, rule_id: str) -> Rule | None:
        """Get a single rule by id."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM rules WHERE user_id = ? AND rule_id = ?",
                (user_id, rule_id),
            ).fetchone()
        return self._row_to_rule(row) if row else None

    def save_rule(self, user_id: str, rule: Rule, *, strict: bool = False) -> ConflictReport:
        """
        Insert or update a rule after checking it against the user's other rules.

        Conflicts are advisory: the rule is saved and the report returned,
        unless strict mode asks for conflicting rules to be refused.

        Args:
            user_id: Owner of the rule.
            rule: Rule to save; an existing rule with the same id is replaced.
            strict: Raise instead of saving when the rule conflicts.

        Returns:
            ConflictReport for the rule against the user's existing rules.

        Raises:
            RuleConflictError: If strict and any conflict was found.
        """
        report = self.detector.check_against(
            rule, self.list_rules(user_id), exclude_rule_id=rule.id
        )
        if strict and report.has_conflicts:
            raise RuleConflictError(rule.display_name, report.conflict_count)

        now = datetime.now().isoformat()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO rules
                (user_id, rule_id, name, description, priority, condition_type,
                 condition_expression, action, action_target, enabled, metadata,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, rule_id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    priority = excluded.priority,
                    condition_type = excluded.condition_type,
                    condition_expression = excluded.condition_expression,
                    action = excluded.action,
                    action_target = excluded.action_target,
                    enabled = excluded.enabled,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id,
                    rule.id,
                    rule.name,
                    rule.description,
                    rule.priority,
                    rule.condition_type.value if rule.condition_type else None,
                    rule.condition_expression,
                    rule.action.value if rule.action else None,
                    rule.action_target,
                    1 if rule.enabled else 0,
                    json.dumps(rule.metadata),
                    now,
                    now,
                ),
            )

        if report.has_conflicts:
            logger.info(
                "Saved rule=%s user=%s with conflicts=%d severity=%s",
                rule.id,
                user_id,
                report.conflict_count,
                report.severity.value if report.severity else None,
            )
        return report

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        """Delete a rule. Returns True if a row was removed."""
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM rules WHERE user_id = ? AND rule_id = ?",
                (user_id, rule_id),
            )
            return cursor.rowcount > 0

    def import_rules(self, user_id: str, rules: Iterable[dict[str, Any]]) -> list[ConflictReport]:
        """
        Save rules loaded from a YAML file.

        Args:
            user_id: Owner of the rules.
            rules: Raw rule mappings; validated into Rule models.

        Returns:
            One ConflictReport per imported rule, in input order.

        Raises:
            pydantic.ValidationError: If a mapping is not a valid rule.
        """
        return [self.save_rule(user_id, Rule.model_validate(data)) for data in rules]

    # ─── Execution Logs ───────────────────────────────────────────────────

    def record_execution(
        self,
        user_id: str,
        results: list[RuleExecutionResult],
        message_id: str | None = None,
        executed_at: datetime | None = None,
    ) -> int:
        """Append an execution log entry. Returns the entry ID."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO execution_logs (user_id, message_id, executed_at, results)
                VALUES (?, ?, ?, ?)
                """,
                (
                    user_id,
                    message_id,
                    (executed_at or datetime.now()).isoformat(),
                    json.dumps([r.model_dump() for r in results]),
                ),
            )
            if cursor.lastrowid is None:
                raise RuntimeError("Failed to insert execution log - no lastrowid returned")
            return cursor.lastrowid

    def list_executions(self, user_id: str, since: datetime) -> list[ExecutionLogEntry]:
        """Get a user's execution log entries recorded at or after since."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT user_id, message_id, executed_at, results
                FROM execution_logs
                WHERE user_id = ? AND executed_at >= ?
                ORDER BY executed_at
                """,
                (user_id, since.isoformat()),
            ).fetchall()

        return [
            ExecutionLogEntry(
                user_id=row["user_id"],
                message_id=row["message_id"],
                executed_at=datetime.fromisoformat(row["executed_at"]),
                results=_safe_json_loads(row["results"], []),
            )
            for row in rows
        ]

    def cleanup_old_executions(self, retention_days: int) -> int:
        """
        Remove execution log entries older than retention period.

        Args:
            retention_days: Delete entries older than this many days.

        Returns:
            Number of entries deleted.
        """
        cutoff = datetime.now() - timedelta(days=retention_days)
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM execution_logs WHERE executed_at < ?",
                (cutoff.isoformat(),),
            )
            return cursor.rowcount

    # ─── Async store interface ────────────────────────────────────────────

    async def list_enabled_rules(self, user_id: str) -> list[Rule]:
        try:
            return await asyncio.to_thread(self.list_rules, user_id, False)
        except sqlite3.Error as e:
            raise StoreUnavailableError("rule store", user_id, str(e)) from e

    async def recent_executions(
        self,
        user_id: str,
        window: timedelta,
    ) -> list[ExecutionLogEntry]:
        since = datetime.now() - window
        try:
            return await asyncio.to_thread(self.list_executions, user_id, since)
        except sqlite3.Error as e:
            raise StoreUnavailableError("log store", user_id, str(e)) from e
