"""Tests for the command-line interface."""

import pytest
import yaml
from typer.testing import CliRunner

from rule_arbiter import __version__
from rule_arbiter.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    monkeypatch.setenv("RULE_ARBITER_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("RULE_ARBITER_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestCli:
    """Tests for CLI commands."""

    def test_version(self) -> None:
        """Test that the version command prints the package version."""
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init_then_import(self, isolated_config) -> None:
        """Test that init writes example rules that import cleanly."""
        assert runner.invoke(app, ["init"]).exit_code == 0
        assert (isolated_config / "config" / "rules.yaml").exists()

        result = runner.invoke(app, ["rules", "import", "--user", "u1"])

        assert result.exit_code == 0
        assert "Imported 4 rule(s)" in result.output

    def test_add_list_and_remove(self) -> None:
        """Test adding, listing and removing a rule."""
        added = runner.invoke(
            app,
            ["rules", "add", "--user", "u1", "vip", "--condition", "from:ceo@", "--action", "escalate"],
        )
        assert added.exit_code == 0

        listed = runner.invoke(app, ["rules", "list", "--user", "u1"])
        assert "vip" in listed.output

        removed = runner.invoke(app, ["rules", "remove", "--user", "u1", "vip"])
        assert removed.exit_code == 0
        assert runner.invoke(app, ["rules", "remove", "--user", "u1", "vip"]).exit_code == 1

    def test_strict_add_refuses_conflict(self) -> None:
        """Test that strict add refuses a conflicting rule."""
        runner.invoke(
            app, ["rules", "add", "--user", "u1", "a", "--condition", "vip", "--action", "escalate"]
        )
        result = runner.invoke(
            app,
            ["rules", "add", "--user", "u1", "b", "--condition", "vip", "--action", "auto_reply", "--strict"],
        )
        assert result.exit_code == 1
        assert "Not saved" in result.output

    def test_evaluate_and_stats(self, isolated_config) -> None:
        """Test that evaluated messages are recorded and shown in stats."""
        runner.invoke(
            app,
            ["rules", "add", "--user", "u1", "refunds", "--condition", "refund", "--action", "queue_for_review"],
        )
        messages = isolated_config / "messages.yaml"
        messages.write_text(
            yaml.dump({
                "messages": [
                    {"id": "m1", "sender": "a@x.com", "subject": "Refund please"},
                    {"id": "m2", "sender": "b@y.com", "subject": "Hello"},
                ]
            })
        )

        result = runner.invoke(app, ["evaluate", "--user", "u1", str(messages)])
        assert result.exit_code == 0
        assert "refunds" in result.output

        stats = runner.invoke(app, ["stats", "--user", "u1"])
        assert stats.exit_code == 0
        assert "Execution logs: 1" in stats.output
        assert "Score" in stats.output

        slow = runner.invoke(app, ["stats", "--user", "u1", "--slow-ms", "0"])
        assert slow.exit_code == 0
        assert "Slow rules" in slow.output

    def test_conflicts_and_order(self) -> None:
        """Test the conflicts and order reports."""
        runner.invoke(app, ["rules", "add", "--user", "u1", "a", "--condition", "vip", "--action", "escalate"])
        runner.invoke(app, ["rules", "add", "--user", "u1", "b", "--condition", "vip", "--action", "auto_reply"])

        conflicts = runner.invoke(app, ["conflicts", "--user", "u1"])
        assert conflicts.exit_code == 0
        assert "high" in conflicts.output

        order = runner.invoke(app, ["order", "--user", "u1"])
        assert order.exit_code == 0
