"""
Systemd process manager for Linux.

Agents are installed as user units at
``~/.config/systemd/user/agentrt-<name>.service`` and controlled with
``systemctl --user``. Output goes to the journal.
"""

import getpass
import logging
import math
import re
from pathlib import Path

from ..config import get_config
from ..dirs import get_systemd_user_dir
from ..exceptions import (
    BackendCommandError,
    InvalidServiceConfigError,
    NotInstalledError,
)
from ..metadata import AgentMetadata, MetadataStore
from .base import (
    NAMESPACE,
    AgentHandle,
    AgentStartSpec,
    AgentState,
    AgentStatus,
    LogOptions,
    ProcessManager,
    build_environment,
    format_bytes,
    run_command,
    stream_command,
)
from .detect import resolve_interpreter_path

logger = logging.getLogger(__name__)

DEFAULT_RESTART_SEC = 5
STOP_TIMEOUT_SEC = 10

# systemd reports this for MemoryCurrent when accounting is unavailable
MEMORY_NOT_AVAILABLE = 2**64 - 1

ACTIVE_STATES: dict[str, AgentState] = {
    "active": "online",
    "inactive": "stopped",
    "failed": "errored",
}


def get_service_name(name: str) -> str:
    return f"{NAMESPACE}-{name}"


def restart_sec(restart_backoff: float | None) -> int:
    if not restart_backoff:
        return DEFAULT_RESTART_SEC
    return max(1, math.ceil(restart_backoff))


def start_limit_interval(restart_seconds: int, max_restarts: int) -> int:
    """Rate-limit window for StartLimitIntervalSec.

    Must exceed RestartSec * StartLimitBurst, otherwise a burst of crashes
    exhausts the limit and systemd refuses to restart the unit again.
    """
    return restart_seconds * max(max_restarts, 1) * 3


CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

# systemd decodes these C escapes inside double-quoted values
_C_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def _escape_value(value: str) -> str:
    """Escape a value for use inside a double-quoted unit-file setting.

    Line breaks would otherwise end the directive and start a new one.
    """
    value = value.replace("\\", "\\\\").replace('"', '\\"').replace("%", "%%")
    for char, escaped in _C_ESCAPES.items():
        value = value.replace(char, escaped)
    return value


def _quote_arg(arg: str) -> str:
    if re.search(r"\s", arg) or '"' in arg:
        return f'"{_escape_value(arg)}"'
    return arg.replace("%", "%%")


def _unquoted_setting(key: str, value: str) -> str:
    """Value for a setting systemd reads verbatim up to the end of the line."""
    if CONTROL_CHARS.search(value):
        raise InvalidServiceConfigError(
            f"{key} must not contain control characters: {value!r}"
        )
    return value.replace("%", "%%")


def generate_unit_file(spec: AgentStartSpec, interpreter_path: str) -> str:
    """Render the systemd user unit for an agent."""
    service_name = get_service_name(spec.name)
    restart_seconds = restart_sec(spec.restart_backoff)
    interval = start_limit_interval(restart_seconds, spec.max_restarts)

    exec_start = " ".join(
        _quote_arg(arg) for arg in (interpreter_path, str(spec.resolved_script()))
    )
    env_lines = "\n".join(
        f'Environment="{_escape_value(key)}={_escape_value(value)}"'
        for key, value in build_environment(spec, interpreter_path).items()
    )
    description = _unquoted_setting("Description", f"agentrt agent: {spec.name}")
    working_directory = _unquoted_setting(
        "WorkingDirectory", str(spec.resolved_working_directory())
    )
    memory_line = f"MemoryMax={spec.max_memory}\n" if spec.max_memory else ""
    restart_policy = "on-failure" if spec.restarts_enabled else "no"

    # A burst of 0 would switch rate limiting off entirely
    return f"""[Unit]
Description={description}
After=network-online.target
Wants=network-online.target
StartLimitBurst={max(spec.max_restarts, 1)}
StartLimitIntervalSec={interval}s

[Service]
Type=simple
ExecStart={exec_start}
WorkingDirectory={working_directory}
Restart={restart_policy}
RestartSec={restart_seconds}s
{memory_line}{env_lines}
StandardOutput=journal
StandardError=journal
SyslogIdentifier={service_name}
KillSignal=SIGTERM
TimeoutStopSec={STOP_TIMEOUT_SEC}s

[Install]
WantedBy=default.target
"""


def parse_properties(output: str) -> dict[str, str]:
    """Parse ``systemctl show`` output (``Key=Value`` per line)."""
    return dict(line.split("=", 1) for line in output.strip().split("\n") if "=" in line)


def parse_memory(value: str | None) -> str | None:
    if not value or not value.isdigit():
        # includes "[not set]"
        return None
    num_bytes = int(value)
    if num_bytes >= MEMORY_NOT_AVAILABLE:
        return None
    return format_bytes(num_bytes)


class SystemdManager(ProcessManager):
    """Systemd service manager for Linux."""

    backend = "systemd"

    def __init__(
        self, user_dir: Path | None = None, metadata: MetadataStore | None = None
    ):
        self.user_dir = user_dir or get_systemd_user_dir()
        self.metadata = metadata or MetadataStore()

    def _unit(self, name: str) -> str:
        return f"{get_service_name(name)}.service"

    def _service_path(self, name: str) -> Path:
        return self.user_dir / self._unit(name)

    def _run_systemctl(self, *args: str, check: bool = True):
        """Run systemctl with user flag."""
        return run_command(
            ["systemctl", "--user", *args],
            check=check,
            timeout=get_config().command_timeout,
        )

    def _check_linger(self) -> bool:
        """Warn if lingering is off, since user services then die at logout."""
        user = getpass.getuser()
        try:
            result = run_command(
                ["loginctl", "show-user", user, "-p", "Linger"],
                check=False,
                timeout=get_config().command_timeout,
            )
        except BackendCommandError as e:
            logger.debug(f"Could not query linger status: {e}")
            return False

        enabled = "Linger=yes" in result.stdout
        if not enabled:
            logger.warning(
                "Linger not enabled: agent services will stop when you log out. "
                f"Enable with: sudo loginctl enable-linger {user}"
            )
        return enabled

    def install(self, spec: AgentStartSpec) -> None:
        """Write the unit file and reload systemd."""
        interpreter_path = resolve_interpreter_path(spec.interpreter)
        self.user_dir.mkdir(parents=True, exist_ok=True)

        service_path = self._service_path(spec.name)
        service_path.write_text(generate_unit_file(spec, interpreter_path))
        service_path.chmod(0o644)
        logger.info(f"Created service file: {service_path}")

        # Reload systemd so it notices the new file
        self._run_systemctl("daemon-reload")

        self.metadata.put(
            AgentMetadata(name=spec.name, backend=self.backend, port=spec.port)
        )
        self._check_linger()

    def uninstall(self, name: str) -> None:
        """Disable, stop and remove the unit."""
        self._run_systemctl("disable", "--now", self._unit(name), check=False)

        service_path = self._service_path(name)
        if service_path.exists():
            service_path.unlink()
            logger.info(f"Removed service file: {service_path}")
        self.metadata.remove(name)

        self._run_systemctl("daemon-reload")

    def start(self, name: str) -> AgentHandle:
        """Enable (so it comes back at login) and start the unit now."""
        if not self._service_path(name).exists():
            raise NotInstalledError(name)

        self._run_systemctl("enable", "--now", self._unit(name))

        result = self._run_systemctl(
            "show", self._unit(name), "-p", "MainPID", "--value", check=False
        )
        pid_str = result.stdout.strip()
        pid = int(pid_str) if pid_str.isdigit() and int(pid_str) > 0 else None

        return AgentHandle(
            name=name, pid=pid, backend=self.backend, port=self.metadata.port(name)
        )

    def stop(self, name: str) -> None:
        self._run_systemctl("stop", self._unit(name))

    def restart(self, name: str) -> None:
        self._run_systemctl("restart", self._unit(name))

    def status(self, name: str) -> AgentStatus:
        """Get status of the agent service."""
        if not self._service_path(name).exists():
            return AgentStatus(name=name, state="unknown", backend=self.backend)

        try:
            result = self._run_systemctl(
                "show",
                self._unit(name),
                "--property=ActiveState,MainPID,MemoryCurrent",
                check=False,
            )
        except BackendCommandError as e:
            logger.debug(f"systemctl show failed: {e}")
            return AgentStatus(name=name, state="unknown", backend=self.backend)

        if result.returncode != 0:
            return AgentStatus(name=name, state="unknown", backend=self.backend)

        props = parse_properties(result.stdout)
        pid_str = props.get("MainPID", "0")
        pid = int(pid_str) if pid_str.isdigit() else 0

        return AgentStatus(
            name=name,
            state=ACTIVE_STATES.get(props.get("ActiveState", ""), "unknown"),
            backend=self.backend,
            pid=pid or None,
            port=self.metadata.port(name),
            memory=parse_memory(props.get("MemoryCurrent")),
        )

    def fleet(self) -> list[AgentStatus]:
        """List all agent units, loaded or not."""
        try:
            result = self._run_systemctl(
                "list-units",
                f"{NAMESPACE}-*",
                "--all",
                "--plain",
                "--no-legend",
                "--no-pager",
                check=False,
            )
        except BackendCommandError as e:
            logger.warning(f"Could not list systemd units: {e}")
            return []

        prefix = f"{NAMESPACE}-"
        results = []
        for line in result.stdout.strip().splitlines():
            # UNIT LOAD ACTIVE SUB DESCRIPTION...
            parts = line.split()
            if len(parts) < 4:
                continue
            unit, active_state = parts[0], parts[2]
            if not unit.startswith(prefix) or not unit.endswith(".service"):
                continue
            name = unit[len(prefix) : -len(".service")]
            results.append(
                AgentStatus(
                    name=name,
                    state=ACTIVE_STATES.get(active_state, "unknown"),
                    backend=self.backend,
                    port=self.metadata.port(name),
                )
            )
        return results

    def logs(self, name: str, options: LogOptions | None = None) -> str:
        """Get logs from journalctl."""
        options = options or LogOptions()
        if options.channel != "all":
            logger.warning(
                "The journal does not separate stdout and stderr; showing both"
            )

        cmd = [
            "journalctl",
            "--user-unit",
            self._unit(name),
            "-n",
            str(options.lines),
            "--no-pager",
        ]
        if options.follow:
            stream_command([*cmd, "-f"])
            return ""

        result = run_command(cmd, check=False, timeout=get_config().command_timeout)
        return result.stdout
