"""
Tests for the CLI interface.
"""
import os
import sqlite3
import tempfile
from decimal import Decimal
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from ai_spend_guard.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from ai_spend_guard.core.budget import Scope, ScopeType
from ai_spend_guard.core.periods import PeriodType
from ai_spend_guard.storage.budget_store import SqliteBudgetStore

runner = CliRunner()


@pytest.fixture
def db_path():
    """Path to a fresh, initialized database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        result = runner.invoke(app, ["init", "--db", path])
        assert result.exit_code == EXIT_CODE_PASS
        yield path


class TestCLI:
    """Test CLI commands."""

    def test_init_creates_tables(self, db_path):
        conn = sqlite3.connect(db_path)
        try:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        finally:
            conn.close()
        assert {"budget", "cost_record"} <= tables

    def test_budget_create_and_list(self, db_path):
        result = runner.invoke(
            app, ["budget-create", "--scope", "user:42", "--period", "daily", "--limit", "10", "--db", db_path]
        )
        assert result.exit_code == EXIT_CODE_PASS
        assert "daily budget of $10.00 set for user:42" in result.stdout

        result = runner.invoke(app, ["budgets", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "user:42" in result.stdout
        assert "daily" in result.stdout
        assert "$10.00" in result.stdout

    def test_budget_create_persists(self, db_path):
        runner.invoke(
            app, ["budget-create", "-s", "project:web", "-p", "monthly", "-l", "250.5", "--db", db_path]
        )
        budget = SqliteBudgetStore(db_path).get(Scope(ScopeType.PROJECT, "web"), PeriodType.MONTHLY)
        assert budget.limit == Decimal("250.5")

    def test_budget_create_bad_scope(self, db_path):
        result = runner.invoke(app, ["budget-create", "--scope", "42", "--limit", "10", "--db", db_path])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error" in result.stdout

    def test_budget_create_bad_thresholds(self, db_path):
        result = runner.invoke(app, [
            "budget-create", "--scope", "user:1", "--limit", "10",
            "--warning", "95", "--critical", "90", "--db", db_path,
        ])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_budgets_empty(self, db_path):
        result = runner.invoke(app, ["budgets", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No budgets configured" in result.stdout

    def test_budgets_scope_filter(self, db_path):
        runner.invoke(app, ["budget-create", "-s", "user:1", "-l", "10", "--db", db_path])
        runner.invoke(app, ["budget-create", "-s", "user:2", "-l", "10", "--db", db_path])
        result = runner.invoke(app, ["budgets", "--scope", "user:2", "--db", db_path])
        assert "user:2" in result.stdout
        assert "user:1" not in result.stdout

    def test_rollover_with_nothing_expired(self, db_path):
        runner.invoke(app, ["budget-create", "-s", "user:1", "-l", "10", "--db", db_path])
        result = runner.invoke(app, ["rollover", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No budgets needed rolling over" in result.stdout

    def test_costs_empty_database(self, db_path):
        result = runner.invoke(app, ["costs", "--db", db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Requests: 0" in result.stdout
        assert "Total cost: $0.00" in result.stdout

    def test_costs_uses_filters(self):
        with patch("ai_spend_guard.cli.main.CostRecordRepository") as mock_repo:
            mock_repo.return_value.get_usage_stats.return_value = {
                "total_requests": 1200,
                "total_cost": Decimal("1234.5"),
                "avg_cost": Decimal("1.02875"),
                "total_tokens": 1500000,
            }
            result = runner.invoke(app, ["costs", "--days", "7", "--model", "gpt-4", "--user", "42"])

        assert result.exit_code == EXIT_CODE_PASS
        mock_repo.return_value.get_usage_stats.assert_called_once_with(model="gpt-4", user_id="42", days=7)
        assert "Requests: 1,200" in result.stdout
        assert "Total cost: $1,234.50" in result.stdout

    def test_missing_tables_reported(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, "empty.db")
            for command in ("budgets", "rollover", "costs"):
                result = runner.invoke(app, [command, "--db", path])
                assert result.exit_code == EXIT_CODE_FAIL
                assert "Database not initialized" in result.stdout

    def test_estimate(self):
        result = runner.invoke(app, ["estimate", "a" * 4000, "--model", "gpt-4"])
        assert result.exit_code == EXIT_CODE_PASS
        # 1000 tokens split 400 in / 600 out at $0.03 / $0.06 per 1k
        assert "400 in / 600 out" in result.stdout
        assert "Estimated cost: 0.048000 USD" in result.stdout

    def test_estimate_unknown_model(self):
        result = runner.invoke(app, ["estimate", "hello", "--model", "no-such-model"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unsupported model" in result.stdout

    def test_estimate_with_config_pricing(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = os.path.join(temp_dir, "config.yaml")
            with open(config_path, "w", encoding="utf-8") as f:
                f.write("pricing:\n  house-model:\n    input_per_1k: 1\n    output_per_1k: 1\n")
            result = runner.invoke(app, ["estimate", "a" * 4000, "-m", "house-model", "-c", config_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Estimated cost: 1.000000 USD" in result.stdout

    def test_no_command_prints_banner(self):
        result = runner.invoke(app, [])
        assert "AI Spend Guard" in result.stdout
