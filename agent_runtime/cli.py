"""
Command-line interface for agent-runtime.

Usage:
    agentrt install              # Install the service for the agent in cwd
    agentrt start [--foreground] # Install + start the agent in cwd
    agentrt stop [<name>]        # Stop an agent
    agentrt restart [<name>]     # Restart an agent
    agentrt remove [<name>]      # Stop and uninstall an agent
    agentrt status [<name>]      # Show status of one agent
    agentrt fleet [--json]       # List all managed agents
    agentrt logs [<name>]        # Tail agent logs
    agentrt health [<name>]      # Probe an agent's /health endpoint
"""

import functools
import json
import logging
import os
import sys
from collections import Counter

import click
from rich.console import Console
from rich.table import Table

from .__version__ import __version__
from .api import (
    agent_fleet,
    agent_install,
    agent_logs,
    agent_restart,
    agent_start,
    agent_status,
    agent_stop,
    agent_uninstall,
    validate_spec,
)
from .config import (
    PROJECT_CONFIG_FILENAME,
    find_agent_config,
    load_agent_definition,
    to_start_spec,
)
from .exceptions import AgentRuntimeError, ConfigError
from .init import init_logging
from .probe import check_health, probe_status
from .service import AgentStartSpec, AgentStatus, LogOptions, detect_backend
from .service.detect import resolve_interpreter_path

logger = logging.getLogger(__name__)

console = Console()

HEALTH_TIMEOUT = 5.0

STATE_EMOJI = {
    "online": "🟢",
    "stopped": "⚪",
    "errored": "🔴",
    "unknown": "❓",
}


def handle_errors(f):
    """Report runtime errors as a one-line message and a non-zero exit."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except AgentRuntimeError as e:
            logger.debug("Command failed", exc_info=True)
            click.echo(f"❌ {e}", err=True)
            sys.exit(1)

    return wrapper


def _resolve_name(name: str | None) -> str:
    """Use the given name, or fall back to the agent.toml in the current directory."""
    if name:
        return name
    if find_agent_config() is None:
        raise ConfigError(
            f"No agent name provided and no {PROJECT_CONFIG_FILENAME} "
            "found in current directory."
        )
    return load_agent_definition().name


def format_duration(seconds: float | None) -> str:
    if not seconds or seconds <= 0:
        return "-"
    sec = int(seconds)
    minutes, hours, days = sec // 60, sec // 3600, sec // 86400
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {sec % 60}s"
    return f"{sec}s"


def summarize_states(statuses: list[AgentStatus]) -> str:
    """Count agents per state, e.g. ``2 online, 1 stopped, 1 errored``.

    Online and stopped are always shown; other states only when present.
    """
    counts = Counter(s.state for s in statuses)
    parts = [f"{counts[state]} {state}" for state in ("online", "stopped")]
    parts += [
        f"{counts[state]} {state}" for state in ("errored", "unknown") if counts[state]
    ]
    return ", ".join(parts)


def _print_status(status: AgentStatus) -> None:
    """Print formatted status for an agent."""
    click.echo(f"{STATE_EMOJI.get(status.state, '❓')} {status.name}")
    click.echo(f"   State: {status.state} ({status.backend})")
    if status.pid:
        click.echo(f"   PID: {status.pid}")
    if status.port:
        click.echo(f"   Port: {status.port}")
    if status.memory:
        click.echo(f"   Memory: {status.memory}")
    if status.uptime:
        click.echo(f"   Uptime: {format_duration(status.uptime)}")
    if status.restarts is not None:
        click.echo(f"   Restarts: {status.restarts}")


def _run_foreground(spec: AgentStartSpec) -> None:
    """Replace this process with the agent, attached to the terminal."""
    validate_spec(spec)
    interpreter_path = resolve_interpreter_path(spec.interpreter)
    script = str(spec.resolved_script())

    env = {**os.environ, **spec.env}
    if spec.port:
        env.setdefault("AGENT_PORT", str(spec.port))

    click.echo(f"▶️  Running {spec.name} in the foreground (Ctrl+C to stop)")
    os.chdir(spec.resolved_working_directory())
    os.execve(interpreter_path, [interpreter_path, script], env)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
@click.version_option(__version__, prog_name="agentrt")
def main(verbose: bool = False):
    """Run agents as supervised background services.

    Agents are installed into the host's native service manager: launchd on
    macOS, systemd on Linux, and pm2 everywhere else (including WSL). The
    service manager restarts them on crash and at login.

    \b
    Quick start (in a directory with agent.toml):
      agentrt start                # Install + start
      agentrt fleet                # See everything running
      agentrt logs -f              # Follow output
    """
    init_logging(verbose)


@main.command("install")
@handle_errors
def install_cmd():
    """Install the service config for the agent in the current directory.

    Writes the plist, unit file or pm2 config without starting it.
    """
    spec = to_start_spec(load_agent_definition())
    agent_install(spec)

    click.echo(f"✅ {spec.name} installed ({detect_backend()})")
    click.echo('   Run "agentrt start" to start the service.')


@main.command("start")
@click.option(
    "--foreground",
    "-f",
    is_flag=True,
    help="Run in the foreground instead of as a service (for debugging).",
)
@handle_errors
def start_cmd(foreground: bool):
    """Start the agent defined by agent.toml in the current directory.

    Installs (or reinstalls) the service config, then starts it.
    """
    spec = to_start_spec(load_agent_definition())

    if foreground:
        _run_foreground(spec)
        return

    existing = agent_status(spec.name)
    if existing.state == "online":
        click.echo(
            f'{spec.name} is already running. Use "agentrt restart" to restart.'
        )
        return

    handle = agent_start(spec)
    click.echo(f"✅ {spec.name} started")
    click.echo(f"   PID: {handle.pid or 'pending'}")
    click.echo(f"   Port: {handle.port or 'none'}")
    click.echo(f"   Backend: {handle.backend}")
    if handle.port:
        click.echo(f"   Health: http://localhost:{handle.port}/health")


@main.command("stop")
@click.argument("name", required=False)
@handle_errors
def stop_cmd(name: str | None):
    """Stop an agent.

    If NAME is not provided, stops the agent in the current directory.
    """
    agent_name = _resolve_name(name)
    agent_stop(agent_name)
    click.echo(f"✅ Agent '{agent_name}' stopped")


@main.command("restart")
@click.argument("name", required=False)
@handle_errors
def restart_cmd(name: str | None):
    """Restart an agent.

    If NAME is not provided, restarts the agent in the current directory.
    """
    agent_name = _resolve_name(name)
    agent_restart(agent_name)
    click.echo(f"✅ Agent '{agent_name}' restarted")


@main.command("remove")
@click.argument("name", required=False)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@handle_errors
def remove_cmd(name: str | None, yes: bool):
    """Stop an agent and uninstall its service config.

    This does NOT delete the agent's project directory.
    """
    agent_name = _resolve_name(name)
    if not yes:
        if not click.confirm(f"Remove agent '{agent_name}'?"):
            return

    agent_uninstall(agent_name)
    click.echo(f"✅ Agent '{agent_name}' removed")


@main.command("status")
@click.argument("name", required=False)
@handle_errors
def status_cmd(name: str | None):
    """Show status of an agent."""
    _print_status(agent_status(_resolve_name(name)))


@main.command("fleet")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@handle_errors
def fleet_cmd(as_json: bool):
    """List all agents managed on this host."""
    statuses = agent_fleet()

    if as_json:
        click.echo(json.dumps([s.to_dict() for s in statuses], indent=2))
        return

    if not statuses:
        click.echo(
            'No agents running. Start one with "agentrt start" in a project directory.'
        )
        return

    table = Table()
    for header in ("Name", "State", "PID", "Memory", "Uptime", "Backend", "Restarts"):
        table.add_column(header)
    for s in statuses:
        table.add_row(
            s.name,
            s.state,
            str(s.pid) if s.pid else "-",
            s.memory or "-",
            format_duration(s.uptime),
            s.backend,
            str(s.restarts) if s.restarts is not None else "-",
        )
    console.print(table)

    click.echo(f"Total: {len(statuses)} agent(s) ({summarize_states(statuses)})")


@main.command("logs")
@click.argument("name", required=False)
@click.option("--lines", "-n", default=50, help="Number of lines to show")
@click.option("--follow", "-f", is_flag=True, help="Follow log output")
@click.option("--out", "channel", flag_value="stdout", help="Show stdout only")
@click.option("--err", "channel", flag_value="stderr", help="Show stderr only")
@handle_errors
def logs_cmd(name: str | None, lines: int, follow: bool, channel: str | None):
    """View agent logs.

    If NAME is not provided, shows logs for the agent in the current directory.
    """
    agent_name = _resolve_name(name)
    options = LogOptions(
        lines=lines,
        follow=follow,
        channel=channel or "all",  # type: ignore[arg-type]
    )

    if follow:
        click.echo(f"Streaming logs for {agent_name} (Ctrl+C to stop)...\n")

    output = agent_logs(agent_name, options)
    if output:
        click.echo(output)


@main.command("health")
@click.argument("name", required=False)
@handle_errors
def health_cmd(name: str | None):
    """Check an agent's /health endpoint.

    Exits non-zero if the agent is not running or not healthy.
    """
    agent_name = _resolve_name(name)
    info = agent_status(agent_name)

    if info.state != "online":
        click.echo(f"❌ {agent_name}: not running (state: {info.state})")
        sys.exit(1)

    if not info.port:
        click.echo(
            f"{agent_name}: online (pid: {info.pid}), "
            "but no port configured, cannot probe health."
        )
        return

    result = check_health(info.port, timeout=HEALTH_TIMEOUT)
    if not result.healthy:
        if result.status_code is not None:
            click.echo(f"❌ {agent_name}: unhealthy (HTTP {result.status_code})")
        else:
            click.echo(
                f"❌ {agent_name}: online (pid: {info.pid}) but health endpoint "
                f"unreachable on port {info.port}"
            )
            click.echo(f"   Error: {result.error}")
        sys.exit(1)

    click.echo(f"✅ {agent_name}: healthy")
    click.echo(f"   Backend: {info.backend}")
    click.echo(f"   Port: {info.port}")
    if info.pid:
        click.echo(f"   PID: {info.pid}")
    if info.memory:
        click.echo(f"   Memory: {info.memory}")

    body = probe_status(info.port, timeout=HEALTH_TIMEOUT)
    if not body:
        return
    if isinstance(body.get("uptime"), (int, float)) and body["uptime"] > 0:
        click.echo(f"   Uptime: {format_duration(body['uptime'] / 1000)}")
    services = body.get("services")
    if isinstance(services, dict):
        for svc, svc_status in services.items():
            running = isinstance(svc_status, dict) and svc_status.get("running")
            click.echo(f'   Service "{svc}": {"running" if running else "stopped"}')


if __name__ == "__main__":
    main()
