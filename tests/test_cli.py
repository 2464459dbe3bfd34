"""
Tests for the pricing engine CLI commands.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from modula.platform.cli import cli
from modula.platform.pricing.subscriptions.models import SweepReport


class TestCLICommands:
    """Test CLI command functionality."""

    @pytest.fixture
    def runner(self):
        """Create CLI runner for testing."""
        return CliRunner()

    def test_cli_commands_exist(self, runner):
        """Test that all expected commands are available."""
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "Modula pricing engine CLI" in result.output
        for command in ("init-database", "sweep"):
            assert command in result.output

    def test_init_database(self, runner):
        """Test init-database creates the tables."""
        with patch("modula.platform.cli.create_all_tables_async", new=AsyncMock()) as create:
            result = runner.invoke(cli, ["init-database"])

        assert result.exit_code == 0
        assert "Database initialized successfully!" in result.output
        create.assert_awaited_once()

    def test_sweep_reports_counts(self, runner):
        """Test sweep passes the parsed instant and prints the report."""
        report = SweepReport(examined=4, advanced=3, unchanged=1)
        with (
            patch("modula.platform.cli.get_session_maker"),
            patch(
                "modula.platform.cli.advance_due_subscriptions", new=AsyncMock(return_value=report)
            ) as sweep,
        ):
            result = runner.invoke(cli, ["sweep", "--at", "2025-05-01T00:00:00", "--concurrency", "2"])

        assert result.exit_code == 0
        assert "Examined 4: 3 advanced, 1 unchanged, 0 failed" in result.output
        args, kwargs = sweep.await_args
        assert args[1] == datetime(2025, 5, 1, tzinfo=UTC)
        assert kwargs["concurrency"] == 2

    def test_sweep_exits_non_zero_on_failure(self, runner):
        """Test failed subscriptions are listed and the exit code is 1."""
        report = SweepReport(examined=1, failed=1, failed_ids=["sub_broken"])
        with (
            patch("modula.platform.cli.get_session_maker"),
            patch("modula.platform.cli.advance_due_subscriptions", new=AsyncMock(return_value=report)),
        ):
            result = runner.invoke(cli, ["sweep", "--at", "2025-05-01T00:00:00+00:00"])

        assert result.exit_code == 1
        assert "sub_broken" in result.output

    def test_sweep_rejects_bad_instant(self, runner):
        """Test an unparseable --at is a usage error."""
        result = runner.invoke(cli, ["sweep", "--at", "next tuesday"])

        assert result.exit_code == 2
        assert "--at" in result.output
