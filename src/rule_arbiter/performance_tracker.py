"""Performance tracking for rule engine operations.

Keeps recent operation timings in memory and, when given a file, appends them
as JSONL so they survive across sessions.
"""

import time
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_MAX_METRICS = 10_000


class OperationMetric(BaseModel):
    """A single operation metric."""

    timestamp: str = Field(description="ISO timestamp of operation")
    operation: str = Field(description="Operation name (e.g., 'load_and_prepare')")
    user_id: str | None = Field(default=None, description="Owner of the rules involved")
    duration_seconds: float = Field(description="Operation duration in seconds")
    message_count: int = Field(default=0, description="Number of messages processed")
    rule_count: int = Field(default=0, description="Number of rules involved")
    success: bool = Field(default=True, description="Whether operation succeeded")
    error: str | None = Field(default=None, description="Error message if failed")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Additional metadata")


class PerformanceTracker:
    """Tracks performance metrics for engine operations."""

    def __init__(
        self,
        metrics_file: Path | None = None,
        max_metrics: int = DEFAULT_MAX_METRICS,
    ) -> None:
        """Initialize tracker.

        Args:
            metrics_file: Optional JSONL file to append metrics to.
            max_metrics: How many recent metrics to keep in memory.
        """
        self.metrics_file = metrics_file
        self._metrics: deque[OperationMetric] = deque(maxlen=max_metrics)

    def log_metric(self, metric: OperationMetric) -> None:
        """Record a metric in memory and, if configured, in the metrics file.

        Args:
            metric: Metric to log
        """
        self._metrics.append(metric)
        if self.metrics_file is not None:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.metrics_file, "a") as f:
                f.write(metric.model_dump_json() + "\n")

    @contextmanager
    def track_operation(
        self,
        operation: str,
        user_id: str | None = None,
        message_count: int = 0,
        rule_count: int = 0,
        **metadata,
    ):
        """Context manager to track operation duration.

        Usage:
            with tracker.track_operation("evaluate_batch", user_id="u1", message_count=50) as extra:
                # ... do work ...
                extra["groups"] = 12

        The yielded dict is merged into the metric's metadata, so values only
        known at the end of the operation can still be recorded.

        Args:
            operation: Operation name
            user_id: Owner of the rules involved
            message_count: Number of messages
            rule_count: Number of rules
            **metadata: Additional metadata
        """
        start_time = time.perf_counter()
        success = True
        error = None
        extra: dict[str, Any] = {}

        try:
            yield extra
        except Exception as e:
            success = False
            error = str(e)
            raise
        finally:
            duration = time.perf_counter() - start_time
            metric = OperationMetric(
                timestamp=datetime.now().isoformat(),
                operation=operation,
                user_id=user_id,
                duration_seconds=round(duration, 6),
                message_count=extra.pop("message_count", message_count),
                rule_count=extra.pop("rule_count", rule_count),
                success=success,
                error=error,
                metadata={**metadata, **extra},
            )
            self.log_metric(metric)

    def get_metrics(
        self,
        since: datetime | None = None,
        operation: str | None = None,
        user_id: str | None = None,
    ) -> list[OperationMetric]:
        """Read metrics with optional filtering.

        Reads the metrics file when one is configured, otherwise the
        in-memory buffer.

        Args:
            since: Only return metrics after this timestamp
            operation: Filter by operation name
            user_id: Filter by user

        Returns:
            List of metrics matching filters
        """
        if self.metrics_file is not None and self.metrics_file.exists():
            with open(self.metrics_file) as f:
                source = [OperationMetric.model_validate_json(line) for line in f if line.strip()]
        else:
            source = list(self._metrics)

        metrics = []
        for metric in source:
            if since and datetime.fromisoformat(metric.timestamp) < since:
                continue
            if operation and metric.operation != operation:
                continue
            if user_id and metric.user_id != user_id:
                continue
            metrics.append(metric)

        return metrics

    def generate_report(self, hours: int = 24) -> dict[str, Any]:
        """Generate performance report for the last N hours.

        Args:
            hours: Number of hours to include in report

        Returns:
            Report dictionary with statistics
        """
        since = datetime.now() - timedelta(hours=hours)
        metrics = self.get_metrics(since=since)

        if not metrics:
            return {
                "period_hours": hours,
                "start_time": since.isoformat(),
                "end_time": datetime.now().isoformat(),
                "total_operations": 0,
                "message": "No metrics found for this period",
            }

        total_ops = len(metrics)
        successful_ops = sum(1 for m in metrics if m.success)
        total_messages = sum(m.message_count for m in metrics)
        total_duration = sum(m.duration_seconds for m in metrics)

        operation_stats = {}
        for op in sorted({m.operation for m in metrics}):
            op_metrics = [m for m in metrics if m.operation == op]
            durations = [m.duration_seconds for m in op_metrics]
            operation_stats[op] = {
                "count": len(op_metrics),
                "avg_duration": round(sum(durations) / len(durations), 6),
                "min_duration": round(min(durations), 6),
                "max_duration": round(max(durations), 6),
                "total_duration": round(sum(durations), 4),
                "success_rate": round(sum(1 for m in op_metrics if m.success) / len(op_metrics), 2),
            }

        user_stats = {}
        for user in sorted({m.user_id for m in metrics if m.user_id}):
            user_metrics = [m for m in metrics if m.user_id == user]
            user_stats[user] = {
                "operations": len(user_metrics),
                "messages": sum(m.message_count for m in user_metrics),
                "total_duration": round(sum(m.duration_seconds for m in user_metrics), 4),
            }

        return {
            "period_hours": hours,
            "start_time": since.isoformat(),
            "end_time": datetime.now().isoformat(),
            "total_operations": total_ops,
            "successful_operations": successful_ops,
            "failed_operations": total_ops - successful_ops,
            "total_messages_processed": total_messages,
            "total_duration_seconds": round(total_duration, 4),
            "avg_duration_per_operation": round(total_duration / total_ops, 6),
            "operation_stats": operation_stats,
            "user_stats": user_stats,
        }

    def clear(self) -> None:
        """Drop in-memory metrics (the metrics file is left alone)."""
        self._metrics.clear()

    def __len__(self) -> int:
        return len(self._metrics)
