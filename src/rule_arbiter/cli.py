"""Command-line interface for rule-arbiter."""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from rule_arbiter.config import Settings
from rule_arbiter.errors import RuleConflictError
from rule_arbiter.models import ConditionType, Message, Rule, RuleAction

app = typer.Typer(
    name="rule-arbiter",
    help="Conflict detection and evaluation ordering for email business rules",
    no_args_is_help=True,
)
console = Console()

# Sub-command groups
rules_app = typer.Typer(help="Manage stored rules")

app.add_typer(rules_app, name="rules")

UserOption = Annotated[str, typer.Option("--user", "-u", help="Rule owner")]

SEVERITY_STYLES = {"high": "red", "medium": "yellow", "low": "dim"}

EXAMPLE_RULES = """# rule-arbiter rules
# Import with: rule-arbiter rules import --user <user>

rules:
  - id: "vip-escalation"
    name: "Escalate VIP complaints"
    priority: 9
    condition_type: complex
    condition_expression: "from:ceo@example.com AND subject:complaint"
    action: escalate
    action_target: "support-leads"

  - id: "refund-review"
    name: "Queue refund requests"
    priority: 6
    condition_type: simple
    condition_expression: "refund"
    action: queue_for_review
    action_target: "billing"

  - id: "refund-autoreply"
    name: "Acknowledge refund requests"
    priority: 6
    condition_type: simple
    condition_expression: "refund"
    action: auto_reply

  - id: "invoice-notify"
    name: "Notify finance about invoices"
    priority: 4
    condition_type: regex
    condition_expression: "subject:invoice\\\\s+#?\\\\d+"
    action: notify
    action_target: "finance"
"""


def get_settings() -> Settings:
    """Load application settings."""
    return Settings()


def _database(settings: Settings):
    from rule_arbiter.storage.database import RuleDatabase

    return RuleDatabase(settings.database_path)


def _engine(settings: Settings):
    from rule_arbiter.performance_tracker import PerformanceTracker
    from rule_arbiter.rules.engine import RuleEngine

    return RuleEngine(
        _database(settings),
        settings=settings,
        tracker=PerformanceTracker(settings.metrics_path),
    )


def _style(severity: str | None) -> str:
    if severity is None:
        return "-"
    color = SEVERITY_STYLES.get(severity, "white")
    return f"[{color}]{severity}[/{color}]"


def _load_messages(path: Path) -> list[Message]:
    """Load messages from a YAML or JSON file (a list, or a ``messages`` key)."""
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("messages", [])

    messages = []
    for index, item in enumerate(data):
        received = item.get("received_at")
        messages.append(
            Message(
                id=str(item.get("id", index)),
                sender=item.get("sender", ""),
                subject=item.get("subject", ""),
                body=item.get("body", ""),
                recipients=list(item.get("recipients", [])),
                received_at=(
                    datetime.fromisoformat(received) if isinstance(received, str) else received
                ),
            )
        )
    return messages


@app.callback()
def main() -> None:
    """Set up file logging before any command runs."""
    from rule_arbiter.logging import setup_logging

    settings = get_settings()
    setup_logging(
        log_dir=settings.log_dir,
        log_level=settings.log_level,
        max_bytes=settings.log_rotation_size_mb * 1024 * 1024,
        backup_count=settings.log_backup_count,
    )


@app.command()
def version() -> None:
    """Show version information."""
    from rule_arbiter import __version__

    console.print(f"rule-arbiter v{__version__}")


@app.command()
def init(
    config_dir: Annotated[
        Path | None,
        typer.Option("--config-dir", "-c", help="Configuration directory"),
    ] = None,
) -> None:
    """Initialize configuration directory with an example rules file."""
    settings = get_settings()
    if config_dir:
        settings.config_dir = config_dir

    settings.ensure_config_dir()

    if not settings.rules_path.exists():
        settings.rules_path.write_text(EXAMPLE_RULES)
        console.print(f"[green]Created[/green] {settings.rules_path}")
    else:
        console.print(f"[dim]Exists[/dim] {settings.rules_path}")

    _database(settings)
    console.print(f"[green]Ready[/green] {settings.database_path}")


# === Rule Commands ===


@rules_app.command("import")
def rules_import(
    user: UserOption,
    file: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="Rules YAML file (default: configured rules file)"),
    ] = None,
) -> None:
    """Import rules from YAML, reporting conflicts with rules already stored."""
    from rule_arbiter.config import load_rules

    settings = get_settings()
    path = file or settings.rules_path
    raw_rules = load_rules(path)

    if not raw_rules:
        console.print(f"[yellow]No rules found in {path}[/yellow]")
        raise typer.Exit(1)

    try:
        reports = _database(settings).import_rules(user, raw_rules)
    except ValidationError as e:
        console.print(f"[red]Invalid rule:[/red] {e}")
        raise typer.Exit(1)

    conflicting = sum(1 for r in reports if r.has_conflicts)
    console.print(f"[green]Imported {len(reports)} rule(s)[/green] for {user}")
    if conflicting:
        console.print(
            f"[yellow]{conflicting} rule(s) conflict with earlier rules.[/yellow] "
            f"Run [bold]rule-arbiter conflicts --user {user}[/bold] for details."
        )


@rules_app.command("list")
def rules_list(
    user: UserOption,
    show_all: Annotated[bool, typer.Option("--all", "-a", help="Include disabled rules")] = False,
) -> None:
    """List a user's stored rules."""
    settings = get_settings()
    rules = _database(settings).list_rules(user, include_disabled=show_all)

    if not rules:
        console.print("[yellow]No rules configured[/yellow]")
        console.print("Run [bold]rule-arbiter rules import[/bold] to load rules")
        return

    table = Table(title=f"Rules for {user}")
    table.add_column("Priority", style="dim", width=8)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type", width=8)
    table.add_column("Condition", max_width=40)
    table.add_column("Action", style="green")
    table.add_column("Target")
    table.add_column("Enabled", width=7)

    for rule in sorted(rules, key=lambda r: r.priority or 0, reverse=True):
        table.add_row(
            str(rule.priority) if rule.priority is not None else "?",
            rule.id,
            rule.name,
            rule.condition_type.value if rule.condition_type else "?",
            rule.condition_expression or "",
            rule.action.value if rule.action else "?",
            rule.action_target or "",
            "✓" if rule.enabled else "✗",
        )

    console.print(table)


@rules_app.command("add")
def rules_add(
    user: UserOption,
    rule_id: Annotated[str, typer.Argument(help="Rule identifier")],
    expression: Annotated[str, typer.Option("--condition", "-c", help="Condition expression")],
    action: Annotated[RuleAction, typer.Option("--action", "-a", help="Action to trigger")],
    name: Annotated[str, typer.Option("--name", "-n", help="Rule name")] = "",
    priority: Annotated[int, typer.Option("--priority", "-p", min=1, max=10)] = 5,
    condition_type: Annotated[
        ConditionType, typer.Option("--type", "-t", help="Condition type")
    ] = ConditionType.SIMPLE,
    target: Annotated[str | None, typer.Option("--target", help="Action target")] = None,
    strict: Annotated[
        bool, typer.Option("--strict", help="Refuse to save a conflicting rule")
    ] = False,
) -> None:
    """Add or update a rule, showing any conflicts it introduces."""
    settings = get_settings()
    rule = Rule(
        id=rule_id,
        name=name,
        priority=priority,
        condition_type=condition_type,
        condition_expression=expression,
        action=action,
        action_target=target,
    )

    try:
        report = _database(settings).save_rule(user, rule, strict=strict)
    except RuleConflictError as e:
        console.print(f"[red]Not saved:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]Saved[/green] rule {rule_id}")
    for conflict in report.conflicts:
        other = conflict.rule2
        types = ", ".join(f.type.value for f in conflict.findings)
        console.print(f"  {_style(conflict.severity.value)} with {other.id}: {types}")


@rules_app.command("remove")
def rules_remove(
    user: UserOption,
    rule_id: Annotated[str, typer.Argument(help="Rule identifier")],
) -> None:
    """Remove a stored rule."""
    settings = get_settings()
    if _database(settings).delete_rule(user, rule_id):
        console.print(f"[green]Removed[/green] rule {rule_id}")
    else:
        console.print(f"[yellow]No rule {rule_id} for {user}[/yellow]")
        raise typer.Exit(1)


# === Analysis Commands ===


@app.command()
def conflicts(user: UserOption) -> None:
    """Show conflicts between a user's rules with suggested resolutions."""
    settings = get_settings()
    result = asyncio.run(_engine(settings).get_resolution_recommendations(user))

    if result.error:
        console.print(f"[red]Conflict analysis unavailable:[/red] {result.error}")
        raise typer.Exit(1)

    if not result.value:
        console.print("[green]No conflicts found[/green]")
        return

    table = Table(title=f"Rule Conflicts for {user}")
    table.add_column("Severity", width=8)
    table.add_column("Rules", style="cyan")
    table.add_column("Conflicts")
    table.add_column("Strategy", style="green")
    table.add_column("Suggestion", max_width=50)

    for rec in result.value:
        suggestion = rec.suggested_resolution
        first = suggestion.suggestions[0].action if suggestion.suggestions else ""
        table.add_row(
            _style(rec.severity.value),
            f"{rec.rule1} / {rec.rule2}",
            ", ".join(t.value for t in rec.conflict_types),
            suggestion.primary_strategy.value,
            first,
        )

    console.print(table)


@app.command()
def order(user: UserOption) -> None:
    """Show the order in which a user's rules will be evaluated."""
    from rule_arbiter.rules.complexity import specificity

    settings = get_settings()
    prepared = asyncio.run(_engine(settings).load_and_prepare(user))

    if prepared.error:
        console.print(f"[yellow]Degraded:[/yellow] {prepared.error}")

    if not prepared.value:
        console.print("[yellow]No enabled rules[/yellow]")
        return

    table = Table(title=f"Evaluation Order for {user}")
    table.add_column("#", style="dim", width=4)
    table.add_column("Priority", width=8)
    table.add_column("ID", style="cyan")
    table.add_column("Action", style="green")
    table.add_column("Specificity", justify="right")

    for position, rule in enumerate(prepared.value, 1):
        table.add_row(
            str(position),
            str(rule.priority) if rule.priority is not None else "?",
            rule.id,
            rule.action.value if rule.action else "?",
            f"{specificity(rule):.1f}",
        )

    console.print(table)


@app.command()
def evaluate(
    user: UserOption,
    file: Annotated[Path, typer.Argument(help="YAML/JSON file of messages", exists=True)],
    record: Annotated[
        bool, typer.Option("--record/--no-record", help="Store execution history")
    ] = True,
) -> None:
    """Evaluate a batch of messages against a user's rules."""
    settings = get_settings()
    messages = _load_messages(file)
    if not messages:
        console.print("[yellow]No messages to evaluate[/yellow]")
        return

    engine = _engine(settings)
    results = asyncio.run(engine.evaluate_batch(user, messages))

    table = Table(title=f"Evaluation for {user}")
    table.add_column("Message", style="cyan")
    table.add_column("Group", width=6)
    table.add_column("Triggered", style="green")
    table.add_column("Cached", width=6)
    table.add_column("Reused", width=6)

    for result in results:
        table.add_row(
            result.message_id,
            str(result.group_index),
            ", ".join(result.triggered_ids) or "[dim]none[/dim]",
            str(result.cache_hits),
            str(result.reused_conditions),
        )
        if record and result.executions:
            engine.rule_store.record_execution(user, result.executions, result.message_id)

    console.print(table)
    if results and results[0].degraded:
        console.print(f"[yellow]Degraded:[/yellow] {results[0].error}")

    stats = engine.get_optimization_statistics()
    console.print(
        f"\nEstimated batch time reduction: {stats['last_batch_time_reduction']:.1f}%"
    )


@app.command()
def stats(
    user: UserOption,
    hours: Annotated[int, typer.Option("--hours", help="Operation metrics window")] = 24,
    slow_ms: Annotated[
        float, typer.Option("--slow-ms", help="Executions at or above this count as slow")
    ] = 1000.0,
) -> None:
    """Show rule execution statistics and recent operation timings."""
    from rule_arbiter.performance_tracker import PerformanceTracker
    from rule_arbiter.rules.performance import PerformanceAnalyzer

    settings = get_settings()
    db = _database(settings)
    analyzer = PerformanceAnalyzer(settings.analysis_window)
    logs = db.list_executions(user, datetime.now() - settings.analysis_window)
    report = analyzer.analyze(user, logs, db.list_rules(user))

    console.print(f"[bold]Rule statistics[/bold] (last {settings.analysis_window_days} days)")
    console.print(f"  Execution logs: {report.total_logs}")

    if not report.is_empty:
        table = Table()
        table.add_column("Rule", style="cyan")
        table.add_column("Triggered", justify="right")
        table.add_column("Avg ms", justify="right")
        table.add_column("p95 ms", justify="right")
        table.add_column("Success", justify="right")
        table.add_column("Score", justify="right")

        for rule_id in sorted(report.frequency, key=report.frequency.get, reverse=True):
            profile = report.profile(rule_id)
            table.add_row(
                rule_id,
                str(profile.frequency),
                f"{profile.execution_time.average:.2f}",
                f"{profile.execution_time.p95:.2f}",
                f"{profile.success_rate.rate:.0%}",
                str(report.efficiency_score(rule_id)),
            )
        console.print(table)

    slow = analyzer.slow_rules(user, logs, slow_ms)
    if slow:
        console.print(f"\n[bold yellow]Slow rules[/bold yellow] (>= {slow_ms:g}ms, last 7 days)")
        for entry in slow:
            console.print(
                f"  {entry.rule_id}: {entry.occurrences} slow run(s), "
                f"avg {entry.average_time:.0f}ms, max {entry.max_time:.0f}ms"
            )

    ops = PerformanceTracker(settings.metrics_path).generate_report(hours)
    console.print(f"\n[bold]Operations[/bold] (last {hours} hours)")
    console.print(f"  Total: {ops['total_operations']}")
    for name, op in ops.get("operation_stats", {}).items():
        console.print(
            f"  {name}: {op['count']} run(s), avg {op['avg_duration'] * 1000:.1f}ms, "
            f"success {op['success_rate']:.0%}"
        )


if __name__ == "__main__":
    app()
