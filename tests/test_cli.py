"""Tests for the agentrt command-line interface."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from agent_runtime.cli import format_duration, main, summarize_states
from agent_runtime.exceptions import NotInstalledError
from agent_runtime.probe import HealthResult
from agent_runtime.service.base import AgentHandle, AgentStatus, LogOptions

AGENT_TOML = """name = "my-brain"
entrypoint = "main.py"
port = 3051
"""


@pytest.fixture
def runner():
    """Create a CLI runner."""
    return CliRunner()


@pytest.fixture
def project(tmp_path, monkeypatch):
    """An agent project as the current directory."""
    (tmp_path / "agent.toml").write_text(AGENT_TOML)
    (tmp_path / "main.py").write_text("print('hi')\n")
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _status(name="my-brain", state="online", **kwargs):
    return AgentStatus(name=name, state=state, backend="systemd", **kwargs)


class TestFormatDuration:
    def test_values(self):
        assert format_duration(None) == "-"
        assert format_duration(0) == "-"
        assert format_duration(42) == "42s"
        assert format_duration(125) == "2m 5s"
        assert format_duration(3720) == "1h 2m"
        assert format_duration(90000) == "1d 1h"


class TestSummarizeStates:
    def test_unknown_not_counted_as_stopped(self):
        statuses = [_status(state="unknown"), _status(state="stopped")]
        assert summarize_states(statuses) == "0 online, 1 stopped, 1 unknown"


class TestHelp:
    def test_help(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Run agents as supervised background services" in result.output

    def test_logs_help(self, runner):
        result = runner.invoke(main, ["logs", "--help"])
        assert result.exit_code == 0
        assert "View agent logs" in result.output


class TestInstallStart:
    def test_install(self, runner, project):
        with (
            patch("agent_runtime.cli.agent_install") as mock_install,
            patch("agent_runtime.cli.detect_backend", return_value="systemd"),
        ):
            result = runner.invoke(main, ["install"])

        assert result.exit_code == 0, result.output
        assert "my-brain installed (systemd)" in result.output
        spec = mock_install.call_args.args[0]
        assert spec.name == "my-brain"
        assert spec.env["AGENT_NAME"] == "my-brain"

    def test_install_without_agent_toml(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(main, ["install"])
        assert result.exit_code == 1
        assert "❌ No agent config found" in result.output

    def test_start(self, runner, project):
        with (
            patch(
                "agent_runtime.cli.agent_status",
                return_value=_status(state="unknown"),
            ),
            patch(
                "agent_runtime.cli.agent_start",
                return_value=AgentHandle(
                    name="my-brain", pid=1234, backend="systemd", port=3051
                ),
            ) as mock_start,
        ):
            result = runner.invoke(main, ["start"])

        assert result.exit_code == 0, result.output
        assert "my-brain started" in result.output
        assert "PID: 1234" in result.output
        assert "Health: http://localhost:3051/health" in result.output
        assert mock_start.call_args.args[0].port == 3051

    def test_start_pending_pid(self, runner, project):
        with (
            patch(
                "agent_runtime.cli.agent_status",
                return_value=_status(state="stopped"),
            ),
            patch(
                "agent_runtime.cli.agent_start",
                return_value=AgentHandle(name="my-brain", pid=None, backend="launchd"),
            ),
        ):
            result = runner.invoke(main, ["start"])
        assert "PID: pending" in result.output

    def test_start_already_running(self, runner, project):
        with (
            patch("agent_runtime.cli.agent_status", return_value=_status()),
            patch("agent_runtime.cli.agent_start") as mock_start,
        ):
            result = runner.invoke(main, ["start"])

        assert result.exit_code == 0
        assert "already running" in result.output
        mock_start.assert_not_called()

    def test_start_foreground(self, runner, project):
        with (
            patch(
                "agent_runtime.cli.resolve_interpreter_path",
                return_value="/usr/bin/python3",
            ),
            patch("agent_runtime.cli.os.chdir") as mock_chdir,
            patch("agent_runtime.cli.os.execve") as mock_execve,
            patch("agent_runtime.cli.agent_start") as mock_start,
        ):
            result = runner.invoke(main, ["start", "--foreground"])

        assert result.exit_code == 0, result.output
        mock_start.assert_not_called()
        mock_chdir.assert_called_once_with(project.resolve())
        path, argv, env = mock_execve.call_args.args
        assert path == "/usr/bin/python3"
        assert argv == ["/usr/bin/python3", str((project / "main.py").resolve())]
        assert env["AGENT_NAME"] == "my-brain"
        assert env["AGENT_PORT"] == "3051"


class TestNamedCommands:
    def test_stop_by_name(self, runner):
        with patch("agent_runtime.cli.agent_stop") as mock_stop:
            result = runner.invoke(main, ["stop", "other"])
        assert result.exit_code == 0
        assert "Agent 'other' stopped" in result.output
        mock_stop.assert_called_once_with("other")

    def test_restart_name_from_agent_toml(self, runner, project):
        with patch("agent_runtime.cli.agent_restart") as mock_restart:
            result = runner.invoke(main, ["restart"])
        assert result.exit_code == 0
        mock_restart.assert_called_once_with("my-brain")

    def test_missing_name_and_no_agent_toml(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with patch("agent_runtime.cli.agent_stop") as mock_stop:
            result = runner.invoke(main, ["stop"])
        assert result.exit_code == 1
        assert "No agent name provided" in result.output
        mock_stop.assert_not_called()

    def test_runtime_error_reported(self, runner):
        with patch(
            "agent_runtime.cli.agent_stop", side_effect=NotInstalledError("ghost")
        ):
            result = runner.invoke(main, ["stop", "ghost"])
        assert result.exit_code == 1
        assert "❌ Service not installed: ghost" in result.output

    def test_remove_confirm_declined(self, runner):
        with patch("agent_runtime.cli.agent_uninstall") as mock_uninstall:
            result = runner.invoke(main, ["remove", "old"], input="n\n")
        assert result.exit_code == 0
        mock_uninstall.assert_not_called()

    def test_remove_yes(self, runner):
        with patch("agent_runtime.cli.agent_uninstall") as mock_uninstall:
            result = runner.invoke(main, ["remove", "old", "--yes"])
        assert result.exit_code == 0
        assert "Agent 'old' removed" in result.output
        mock_uninstall.assert_called_once_with("old")

    def test_status(self, runner):
        status = _status(pid=4321, port=3051, memory="45MB", uptime=125, restarts=1)
        with patch("agent_runtime.cli.agent_status", return_value=status):
            result = runner.invoke(main, ["status", "my-brain"])
        assert result.exit_code == 0
        assert "🟢 my-brain" in result.output
        assert "PID: 4321" in result.output
        assert "Memory: 45MB" in result.output
        assert "Uptime: 2m 5s" in result.output

    def test_logs_options(self, runner):
        with patch("agent_runtime.cli.agent_logs", return_value="a line") as mock_logs:
            result = runner.invoke(main, ["logs", "my-brain", "-n", "10", "--err"])
        assert result.exit_code == 0
        assert "a line" in result.output
        mock_logs.assert_called_once_with(
            "my-brain", LogOptions(lines=10, follow=False, channel="stderr")
        )

    def test_logs_default_channel(self, runner):
        with patch("agent_runtime.cli.agent_logs", return_value="") as mock_logs:
            runner.invoke(main, ["logs", "my-brain"])
        assert mock_logs.call_args.args[1] == LogOptions()


class TestFleet:
    def test_empty(self, runner):
        with patch("agent_runtime.cli.agent_fleet", return_value=[]):
            result = runner.invoke(main, ["fleet"])
        assert result.exit_code == 0
        assert "No agents running" in result.output

    def test_table(self, runner):
        fleet = [
            _status(name="alpha", pid=1, memory="40MB", uptime=60, restarts=0),
            _status(name="beta", state="stopped"),
        ]
        with patch("agent_runtime.cli.agent_fleet", return_value=fleet):
            result = runner.invoke(main, ["fleet"])

        assert result.exit_code == 0
        assert "alpha" in result.output
        assert "beta" in result.output
        assert "Total: 2 agent(s) (1 online, 1 stopped)" in result.output

    def test_summary_counts_each_state(self, runner):
        fleet = [
            _status(name="alpha", pid=1),
            _status(name="beta", pid=2),
            _status(name="gamma", state="stopped"),
            _status(name="delta", state="errored"),
        ]
        with patch("agent_runtime.cli.agent_fleet", return_value=fleet):
            result = runner.invoke(main, ["fleet"])

        assert result.exit_code == 0
        assert "Total: 4 agent(s) (2 online, 1 stopped, 1 errored)" in result.output

    def test_json(self, runner):
        fleet = [_status(name="alpha", pid=1)]
        with patch("agent_runtime.cli.agent_fleet", return_value=fleet):
            result = runner.invoke(main, ["fleet", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data[0]["name"] == "alpha"
        assert data[0]["state"] == "online"
        assert data[0]["pid"] == 1


class TestHealth:
    def test_not_running(self, runner):
        with patch(
            "agent_runtime.cli.agent_status", return_value=_status(state="stopped")
        ):
            result = runner.invoke(main, ["health", "my-brain"])
        assert result.exit_code == 1
        assert "not running (state: stopped)" in result.output

    def test_no_port(self, runner):
        with patch("agent_runtime.cli.agent_status", return_value=_status(pid=5)):
            result = runner.invoke(main, ["health", "my-brain"])
        assert result.exit_code == 0
        assert "no port configured" in result.output

    def test_healthy(self, runner):
        with (
            patch(
                "agent_runtime.cli.agent_status",
                return_value=_status(pid=5, port=3051),
            ),
            patch(
                "agent_runtime.cli.check_health",
                return_value=HealthResult(healthy=True, status_code=200),
            ),
            patch(
                "agent_runtime.cli.probe_status",
                return_value={
                    "uptime": 3_720_000,
                    "services": {"dispatch": {"running": True}},
                },
            ),
        ):
            result = runner.invoke(main, ["health", "my-brain"])

        assert result.exit_code == 0, result.output
        assert "my-brain: healthy" in result.output
        assert "Uptime: 1h 2m" in result.output
        assert 'Service "dispatch": running' in result.output

    def test_unhealthy(self, runner):
        with (
            patch(
                "agent_runtime.cli.agent_status",
                return_value=_status(pid=5, port=3051),
            ),
            patch(
                "agent_runtime.cli.check_health",
                return_value=HealthResult(healthy=False, status_code=503),
            ),
        ):
            result = runner.invoke(main, ["health", "my-brain"])
        assert result.exit_code == 1
        assert "unhealthy (HTTP 503)" in result.output

    def test_unreachable(self, runner):
        with (
            patch(
                "agent_runtime.cli.agent_status",
                return_value=_status(pid=5, port=3051),
            ),
            patch(
                "agent_runtime.cli.check_health",
                return_value=HealthResult(
                    healthy=False, error="Could not connect to port 3051"
                ),
            ),
        ):
            result = runner.invoke(main, ["health", "my-brain"])
        assert result.exit_code == 1
        assert "unreachable on port 3051" in result.output
