"""Unit tests for the vdiwave CLI commands.

Tests cover:
- CLI syntax (help, missing broker URL)
- recompose/refresh in simulate and execute mode
- stop-on-error exit status
- pools listing and config commands
"""

from __future__ import annotations

from unittest.mock import patch

from click.testing import CliRunner

from vdiwave.cli import main

BROKER = ["--broker-url", "https://broker.example.com/api"]


class TestCommandSyntax:
    """Test CLI syntax."""

    def test_help_lists_commands(self):
        """Test 'vdiwave --help' shows the scheduling commands."""
        result = CliRunner().invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "recompose" in result.output
        assert "refresh" in result.output

    def test_recompose_help(self):
        """Test 'vdiwave recompose --help' lists run options."""
        result = CliRunner().invoke(main, ["recompose", "--help"])

        assert result.exit_code == 0
        for option in ("--pool", "--except", "--force-logoff", "--stop-on-error", "--simulate"):
            assert option in result.output

    def test_missing_broker_url(self):
        """Test that a broker URL is required."""
        result = CliRunner().invoke(main, ["refresh", "--simulate"])

        assert result.exit_code == 1
        assert "No broker URL specified" in result.output


class TestRecomposeCommand:
    """Test 'vdiwave recompose'."""

    def test_simulate_prints_schedule(self, fake_broker):
        """Test that simulate renders the plan and dispatches nothing."""
        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker):
            result = CliRunner().invoke(main, ["recompose", "--simulate", *BROKER])

        assert result.exit_code == 0, result.output
        assert "Recompose schedule (simulated)" in result.output
        assert "+5m" in result.output
        assert "+120m" in result.output
        assert fake_broker.commands == []

    def test_except_option(self, fake_broker):
        """Test that --except removes a pool from the run."""
        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker):
            result = CliRunner().invoke(main, ["recompose", "--except", "sales", *BROKER])

        assert result.exit_code == 0, result.output
        assert fake_broker.commands
        assert "sales" not in {c["pool_id"] for c in fake_broker.commands}
        assert "Total:" in result.output

    def test_no_eligible_pools(self, fake_broker):
        """Test the informational message when nothing is eligible."""
        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker):
            result = CliRunner().invoke(main, ["recompose", "--pool", "kiosk", *BROKER])

        assert result.exit_code == 0
        assert "No eligible pools found for recompose" in result.output


class TestRefreshCommand:
    """Test 'vdiwave refresh'."""

    def test_refresh_dispatches_with_flags(self, fake_broker):
        """Test that flags reach the broker commands."""
        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker):
            result = CliRunner().invoke(
                main, ["refresh", "--pool", "lab", "--force-logoff", *BROKER]
            )

        assert result.exit_code == 0, result.output
        assert {c["pool_id"] for c in fake_broker.commands} == {"lab"}
        assert all(c["force_logoff"] for c in fake_broker.commands)
        assert all(not c["stop_on_error"] for c in fake_broker.commands)

    def test_stop_on_error_exits_nonzero(self, fake_broker):
        """Test that a halted dispatch exits with status 1."""
        fake_broker.fail_pools = {"lab"}
        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker):
            result = CliRunner().invoke(main, ["refresh", "--stop-on-error", *BROKER])

        assert result.exit_code == 1
        assert "Dispatch stopped after 1 slot(s)" in result.output
        assert len(fake_broker.commands) == 1

    def test_stop_on_error_shows_partial_totals(self, fake_broker):
        """Test that the schedule and partial totals are shown after a halt."""
        fake_broker.fail_pools = {"lab"}
        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker):
            result = CliRunner().invoke(main, ["refresh", "--stop-on-error", *BROKER])

        assert result.exit_code == 1
        assert "Refresh schedule" in result.output
        assert "Total: Attempted: 15, Successful: 0, Unchanged: 0" in result.output
        assert "refresh of pool lab failed" in result.output

    def test_config_defaults_applied(self, fake_broker, tmp_path):
        """Test that default_exclude and force_logoff come from config."""
        config_path = tmp_path / "vdiwave.toml"
        config_path.write_text(
            'broker_url = "https://broker.example.com/api"\n'
            'default_exclude = ["sales", "support"]\n'
            "force_logoff = true\n"
        )
        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker):
            result = CliRunner().invoke(main, ["refresh", "--config", str(config_path)])

        assert result.exit_code == 0, result.output
        assert {c["pool_id"] for c in fake_broker.commands} == {"lab"}
        assert all(c["force_logoff"] for c in fake_broker.commands)


class TestBrokerUrl:
    """Test broker URL resolution."""

    def test_cli_url_overrides_config(self, fake_broker, tmp_path):
        """Test that --broker-url wins over the config file."""
        config_path = tmp_path / "vdiwave.toml"
        config_path.write_text('broker_url = "https://from-config.example.com"\n')

        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker) as mock_client:
            result = CliRunner().invoke(
                main, ["refresh", "--simulate", "--config", str(config_path), *BROKER]
            )

        assert result.exit_code == 0, result.output
        session = mock_client.call_args.args[0]
        assert session.base_url == "https://broker.example.com/api"

    def test_url_from_config(self, fake_broker, tmp_path):
        """Test that the config file supplies the URL when no option is given."""
        config_path = tmp_path / "vdiwave.toml"
        config_path.write_text('broker_url = "https://from-config.example.com"\n')

        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker) as mock_client:
            result = CliRunner().invoke(main, ["pools", "--config", str(config_path)])

        assert result.exit_code == 0, result.output
        assert mock_client.call_args.args[0].base_url == "https://from-config.example.com"


class TestPoolsCommand:
    """Test 'vdiwave pools'."""

    def test_pools_table(self, fake_broker):
        """Test that every pool is listed with a status."""
        with patch("vdiwave.cli.BrokerClient", return_value=fake_broker):
            result = CliRunner().invoke(main, ["pools", *BROKER])

        assert result.exit_code == 0, result.output
        for pool_id in ("lab", "sales", "support", "kiosk"):
            assert pool_id in result.output
        assert "eligible" in result.output


class TestConfigCommands:
    """Test 'vdiwave config'."""

    def test_set_then_show(self, tmp_path):
        """Test setting a value and reading it back."""
        config_path = str(tmp_path / "vdiwave.toml")
        runner = CliRunner()

        set_result = runner.invoke(
            main, ["config", "set", "replica_check_workers", "4", "--config", config_path]
        )
        show_result = runner.invoke(main, ["config", "show", "--config", config_path])

        assert set_result.exit_code == 0, set_result.output
        assert "Set replica_check_workers = 4" in set_result.output
        assert "replica_check_workers = 4" in show_result.output

    def test_set_unknown_key(self, tmp_path):
        """Test that unknown keys are rejected."""
        result = CliRunner().invoke(
            main, ["config", "set", "colour", "blue", "--config", str(tmp_path / "c.toml")]
        )

        assert result.exit_code == 1
        assert "Unknown config key" in result.output
