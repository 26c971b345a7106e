"""Application configuration management."""

from datetime import timedelta
from pathlib import Path

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="RULE_ARBITER_",
        env_file=[
            ".env",  # Project-level defaults (lower priority)
            Path.home() / ".config" / "rule-arbiter" / ".env",  # User config (higher priority)
        ],
        env_file_encoding="utf-8",
    )

    # Feature toggles
    conflict_detection_enabled: bool = Field(
        default=True, description="Resolve rule conflicts before evaluation"
    )
    optimization_enabled: bool = Field(
        default=True, description="Reorder rules using execution history"
    )

    # Cache settings
    order_cache_ttl_minutes: float = Field(
        default=5, gt=0, description="Minutes an optimized rule order stays fresh"
    )
    condition_cache_ttl_minutes: float = Field(
        default=5, gt=0, description="Minutes a cached condition result stays fresh"
    )
    condition_cache_max_entries: int | None = Field(
        default=None, ge=1, description="Optional cap on cached condition results per user"
    )

    # Analysis settings
    analysis_window_days: int = Field(
        default=30, ge=1, description="Trailing window of execution history to analyze"
    )

    # Batch settings
    batch_concurrency: int = Field(
        default=5, ge=1, description="Message groups in progress at once during a batch"
    )
    subject_similarity_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Subject similarity above which messages share a batch group",
    )

    # Store settings
    store_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Upper bound on any rule/log store read"
    )

    # Paths
    config_dir: Path = Field(
        default=Path.home() / ".config" / "rule-arbiter",
        description="Configuration directory",
    )
    rules_file: str = Field(default="rules.yaml", description="Rules config filename")
    database_file: str = Field(default="rules.db", description="SQLite rule store filename")
    metrics_file: str = Field(
        default="metrics.jsonl", description="Operation metrics filename (JSONL)"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_dir: Path = Field(
        default=Path.home() / ".local" / "state" / "rule-arbiter" / "logs",
        description="Directory for log files (per-user logs written here)",
    )
    log_rotation_size_mb: int = Field(
        default=5, ge=1, description="Max size per log file in MB before rotation"
    )
    log_backup_count: int = Field(
        default=3, ge=0, description="Number of rotated log files to keep"
    )

    @property
    def rules_path(self) -> Path:
        """Full path to rules file."""
        return self.config_dir / self.rules_file

    @property
    def database_path(self) -> Path:
        """Path to the SQLite rule store."""
        return self.config_dir / self.database_file

    @property
    def metrics_path(self) -> Path:
        """Path to the operation metrics file."""
        return self.config_dir / self.metrics_file

    @property
    def order_cache_ttl(self) -> timedelta:
        return timedelta(minutes=self.order_cache_ttl_minutes)

    @property
    def condition_cache_ttl(self) -> timedelta:
        return timedelta(minutes=self.condition_cache_ttl_minutes)

    @property
    def analysis_window(self) -> timedelta:
        return timedelta(days=self.analysis_window_days)

    def ensure_config_dir(self) -> None:
        """Create config directory if it doesn't exist."""
        self.config_dir.mkdir(parents=True, exist_ok=True)


def load_rules(path: Path) -> list[dict]:
    """Load rules from a YAML file."""
    if not path.exists():
        return []

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return data.get("rules", [])


def save_rules(path: Path, rules: list[dict]) -> None:
    """Save rules to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump({"rules": rules}, f, default_flow_style=False, sort_keys=False)
