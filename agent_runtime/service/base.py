"""
Shared types and helpers for the process managers.

Every backend implements :class:`ProcessManager` and reports state through
the same :class:`AgentStatus` shape, whatever its native tooling prints.
"""

import logging
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from ..exceptions import BackendCommandError
from .detect import build_service_path

logger = logging.getLogger(__name__)

Backend = Literal["launchd", "systemd", "pm2"]
AgentState = Literal["online", "stopped", "errored", "unknown"]
LogChannel = Literal["stdout", "stderr", "all"]

# Prefix of every service identifier we generate (com.agentrt.<name>, agentrt-<name>)
NAMESPACE = "agentrt"
PORT_ENV_VAR = "AGENT_PORT"
DEFAULT_COMMAND_TIMEOUT = 15.0


@dataclass
class AgentStartSpec:
    """Everything needed to install an agent as a background service."""

    name: str
    script: str
    port: int | None = None
    # Interpreter name or absolute path; None means the runtime config default
    interpreter: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    working_directory: str | None = None
    restart: bool = True
    max_restarts: int = 10
    # Seconds between automatic restarts; None lets each backend pick its default
    restart_backoff: float | None = None
    max_memory: str | None = None
    log_dir: str | None = None

    def resolved_script(self) -> Path:
        """Absolute script path; relative scripts resolve against the working directory."""
        script = Path(self.script).expanduser()
        if self.working_directory:
            script = Path(self.working_directory).expanduser() / script
        return script.resolve()

    def resolved_working_directory(self) -> Path:
        if self.working_directory:
            return Path(self.working_directory).expanduser().resolve()
        return self.resolved_script().parent

    @property
    def restarts_enabled(self) -> bool:
        """Whether the backend should relaunch the agent after a crash.

        ``max_restarts=0`` means "never restart", not "no limit".
        """
        return self.restart and self.max_restarts > 0


@dataclass
class AgentHandle:
    """Returned by start(). Goes stale as soon as the process dies; re-query status."""

    name: str
    # None when the backend had not reported a PID before the poll timed out
    pid: int | None
    backend: Backend
    port: int | None = None


@dataclass
class AgentStatus:
    """Status of an agent, computed fresh from the backend on every call."""

    name: str
    state: AgentState
    backend: Backend
    pid: int | None = None
    port: int | None = None
    memory: str | None = None
    # Seconds
    uptime: float | None = None
    restarts: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class LogOptions:
    lines: int = 50
    follow: bool = False
    channel: LogChannel = "all"


def build_environment(spec: AgentStartSpec, interpreter_path: str) -> dict[str, str]:
    """Environment for the managed process.

    Service managers do not inherit the user's shell, so PATH and HOME are
    always set explicitly. Caller-supplied variables win over ours.
    """
    env = {
        "PATH": build_service_path(interpreter_path),
        "HOME": str(Path.home()),
    }
    if spec.port:
        env[PORT_ENV_VAR] = str(spec.port)
    env.update(spec.env)
    return env


def run_command(
    cmd: list[str],
    *,
    check: bool = True,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess:
    """Run a control command and capture its output.

    Raises BackendCommandError on timeout, on a missing executable and, when
    ``check`` is set, on a non-zero exit.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout, env=env
        )
    except subprocess.TimeoutExpired as e:
        raise BackendCommandError(cmd, None, f"timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise BackendCommandError(cmd, None, f"command not found: {cmd[0]}") from e

    if check and result.returncode != 0:
        output = (result.stderr or result.stdout or "").strip()
        raise BackendCommandError(cmd, result.returncode, output)
    return result


def stream_command(cmd: list[str], env: dict[str, str] | None = None) -> int:
    """Run a long-lived command with its output going straight to our stdout.

    Blocks until the command exits or the caller interrupts (Ctrl+C), in
    which case the child is terminated. Returns the child's exit code.
    """
    logger.debug(f"Streaming: {' '.join(cmd)}")
    try:
        proc = subprocess.Popen(cmd, env=env)
    except FileNotFoundError as e:
        raise BackendCommandError(cmd, None, f"command not found: {cmd[0]}") from e

    try:
        return proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        return proc.returncode


def format_bytes(num_bytes: int) -> str:
    """Human-scaled memory figure (e.g. ``512KB``, ``45MB``, ``1.5GB``)."""
    if num_bytes >= 1024**3:
        return f"{num_bytes / 1024**3:.1f}GB"
    if num_bytes >= 1024**2:
        return f"{round(num_bytes / 1024**2)}MB"
    return f"{round(num_bytes / 1024)}KB"


def merge_probe(status: AgentStatus, body: dict) -> AgentStatus:
    """Fill uptime/memory/restarts from an agent's /status response.

    The agent reports uptime in milliseconds.
    """
    if isinstance(body.get("uptime"), (int, float)) and body["uptime"] > 0:
        status.uptime = body["uptime"] / 1000
    if isinstance(body.get("memory"), str):
        status.memory = body["memory"]
    if isinstance(body.get("restarts"), int):
        status.restarts = body["restarts"]
    return status


def poll(fn, timeout: float, interval: float):
    """Call ``fn`` until it returns something truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if result := fn():
            return result
        time.sleep(interval)
    return None


class ProcessManager(ABC):
    """Abstract base class for process managers."""

    backend: Backend

    @abstractmethod
    def install(self, spec: AgentStartSpec) -> None:
        """Write the service config. Does not start the service."""
        ...

    @abstractmethod
    def uninstall(self, name: str) -> None:
        """Stop the service if running and remove its config."""
        ...

    @abstractmethod
    def start(self, name: str) -> AgentHandle:
        """Start a previously installed service."""
        ...

    @abstractmethod
    def stop(self, name: str) -> None:
        """Stop a running service."""
        ...

    @abstractmethod
    def restart(self, name: str) -> None:
        """Restart a service."""
        ...

    @abstractmethod
    def status(self, name: str) -> AgentStatus:
        """Get status of a single service. Never raises for unknown names."""
        ...

    @abstractmethod
    def fleet(self) -> list[AgentStatus]:
        """List all services in our namespace."""
        ...

    @abstractmethod
    def logs(self, name: str, options: LogOptions | None = None) -> str:
        """Return recent log output, or stream it when following."""
        ...
