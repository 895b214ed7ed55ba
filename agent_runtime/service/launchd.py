"""
Launchd process manager for macOS.

Agents are installed as per-user LaunchAgents at
``~/Library/LaunchAgents/com.agentrt.<name>.plist`` and controlled with
``launchctl bootstrap/bootout/kickstart``.
"""

import logging
import math
import os
import plistlib
import time
from dataclasses import dataclass
from pathlib import Path

from ..config import get_config
from ..dirs import get_launch_agents_dir, get_launchd_logs_dir
from ..exceptions import (
    BackendCommandError,
    InvalidServiceConfigError,
    NotInstalledError,
)
from ..metadata import AgentMetadata, MetadataStore
from ..probe import probe_status
from .base import (
    NAMESPACE,
    AgentHandle,
    AgentStartSpec,
    AgentState,
    AgentStatus,
    LogOptions,
    ProcessManager,
    build_environment,
    merge_probe,
    poll,
    run_command,
    stream_command,
)
from .detect import resolve_interpreter_path

logger = logging.getLogger(__name__)

LABEL_PREFIX = f"com.{NAMESPACE}"

# launchd ignores throttle intervals below this and logs a complaint
MIN_THROTTLE_INTERVAL = 10
EXIT_TIMEOUT = 20

PID_POLL_TIMEOUT = 5.0
PID_POLL_INTERVAL = 0.2
BOOTOUT_SETTLE_DELAY = 0.5


def get_label(name: str) -> str:
    return f"{LABEL_PREFIX}.{name}"


def throttle_interval(restart_backoff: float | None) -> int:
    """ThrottleInterval in whole seconds, never below the launchd floor."""
    if not restart_backoff:
        return MIN_THROTTLE_INTERVAL
    return max(MIN_THROTTLE_INTERVAL, math.ceil(restart_backoff))


def generate_plist(spec: AgentStartSpec, interpreter_path: str, log_dir: Path) -> bytes:
    """Build a LaunchAgent plist as bytes using plistlib.

    Uses plistlib for safe XML generation (proper escaping of all values).
    """
    plist: dict = {
        "Label": get_label(spec.name),
        "ProgramArguments": [interpreter_path, str(spec.resolved_script())],
        "WorkingDirectory": str(spec.resolved_working_directory()),
        "EnvironmentVariables": build_environment(spec, interpreter_path),
        "RunAtLoad": True,
        # A bare KeepAlive=true would also relaunch after a clean exit
        "KeepAlive": {"SuccessfulExit": False} if spec.restarts_enabled else False,
        "ThrottleInterval": throttle_interval(spec.restart_backoff),
        "ExitTimeOut": EXIT_TIMEOUT,
        "ProcessType": "Background",
        "StandardOutPath": str(log_dir / f"{spec.name}.out.log"),
        "StandardErrorPath": str(log_dir / f"{spec.name}.err.log"),
    }
    return plistlib.dumps(plist, sort_keys=False)


@dataclass
class LaunchctlEntry:
    """One line of ``launchctl list``: ``PID<TAB>LastExitStatus<TAB>Label``."""

    pid: int | None
    exit_status: int
    label: str

    @property
    def state(self) -> AgentState:
        if self.pid:
            return "online"
        return "errored" if self.exit_status != 0 else "stopped"


def parse_list_line(line: str) -> LaunchctlEntry | None:
    """Parse a ``launchctl list`` line, returning None for headers and junk."""
    parts = line.split()
    if len(parts) < 3:
        return None
    pid_str, status_str, label = parts[0], parts[1], parts[2]

    pid: int | None = None
    if pid_str != "-":
        try:
            pid = int(pid_str)
        except ValueError:
            return None

    try:
        exit_status = int(status_str) if status_str != "-" else 0
    except ValueError:
        exit_status = 0

    return LaunchctlEntry(
        pid=pid if pid and pid > 0 else None,
        exit_status=exit_status,
        label=label,
    )


class LaunchdManager(ProcessManager):
    """Launchd process manager for macOS."""

    backend = "launchd"

    def __init__(
        self,
        agents_dir: Path | None = None,
        logs_dir: Path | None = None,
        metadata: MetadataStore | None = None,
    ):
        self.agents_dir = agents_dir or get_launch_agents_dir()
        if logs_dir is None:
            configured = get_config().log_dir
            logs_dir = (
                Path(configured).expanduser() if configured else get_launchd_logs_dir()
            )
        self.logs_dir = logs_dir
        self.metadata = metadata or MetadataStore()

    def _label(self, name: str) -> str:
        return get_label(name)

    def _plist_path(self, name: str) -> Path:
        return self.agents_dir / f"{self._label(name)}.plist"

    def _domain(self) -> str:
        return f"gui/{os.getuid()}"

    def _target(self, name: str) -> str:
        return f"{self._domain()}/{self._label(name)}"

    def _log_dir(self, name: str) -> Path:
        metadata = self.metadata.get(name)
        if metadata and metadata.log_dir:
            return Path(metadata.log_dir)
        return self.logs_dir

    def _run_launchctl(self, *args: str, check: bool = True):
        """Run launchctl command."""
        return run_command(
            ["launchctl", *args],
            check=check,
            timeout=get_config().command_timeout,
        )

    def _lint(self, path: Path) -> None:
        run_command(["plutil", "-lint", str(path)], timeout=get_config().command_timeout)

    def _is_loaded(self, name: str) -> bool:
        """Check if the agent is currently loaded."""
        result = self._run_launchctl("list", self._label(name), check=False)
        return result.returncode == 0

    def _list_entries(self) -> list[LaunchctlEntry]:
        result = self._run_launchctl("list", check=False)
        if result.returncode != 0:
            return []
        entries = []
        for line in result.stdout.splitlines():
            entry = parse_list_line(line)
            if entry:
                entries.append(entry)
        return entries

    def _find_entry(self, name: str) -> LaunchctlEntry | None:
        label = self._label(name)
        for entry in self._list_entries():
            if entry.label == label:
                return entry
        return None

    def install(self, spec: AgentStartSpec) -> None:
        """Install the LaunchAgent plist, validating it with plutil."""
        interpreter_path = resolve_interpreter_path(spec.interpreter)
        log_dir = Path(spec.log_dir).expanduser() if spec.log_dir else self.logs_dir

        self.agents_dir.mkdir(parents=True, exist_ok=True)
        log_dir.mkdir(parents=True, exist_ok=True)

        plist_path = self._plist_path(spec.name)
        plist_path.write_bytes(generate_plist(spec, interpreter_path, log_dir))
        plist_path.chmod(0o644)
        logger.info(f"Created plist file: {plist_path}")

        try:
            self._lint(plist_path)
        except BackendCommandError as e:
            plist_path.unlink(missing_ok=True)
            raise InvalidServiceConfigError(
                f"Invalid plist generated for {spec.name}: {e.output or e}"
            ) from e

        self.metadata.put(
            AgentMetadata(
                name=spec.name,
                backend=self.backend,
                port=spec.port,
                log_dir=str(log_dir),
            )
        )

    def uninstall(self, name: str) -> None:
        """Unload the agent and remove its plist."""
        try:
            self.stop(name)
        except BackendCommandError as e:
            logger.debug(f"Ignoring stop failure during uninstall of {name}: {e}")

        plist_path = self._plist_path(name)
        if plist_path.exists():
            plist_path.unlink()
            logger.info(f"Removed plist file: {plist_path}")
        self.metadata.remove(name)

    def start(self, name: str) -> AgentHandle:
        """Bootstrap the agent and wait briefly for it to report a PID."""
        plist_path = self._plist_path(name)
        if not plist_path.exists():
            raise NotInstalledError(name)

        # launchd has no "ensure loaded": a stale registration makes bootstrap fail
        if self._is_loaded(name):
            self._run_launchctl("bootout", self._target(name), check=False)
            time.sleep(BOOTOUT_SETTLE_DELAY)

        self._run_launchctl("bootstrap", self._domain(), str(plist_path))

        pid = self._poll_for_pid(name)
        if pid is None:
            logger.warning(
                f"{name} did not report a PID within {PID_POLL_TIMEOUT:.0f}s; "
                "it may still be starting"
            )
        return AgentHandle(
            name=name, pid=pid, backend=self.backend, port=self.metadata.port(name)
        )

    def _poll_for_pid(self, name: str) -> int | None:
        def current_pid() -> int | None:
            entry = self._find_entry(name)
            return entry.pid if entry else None

        return poll(current_pid, PID_POLL_TIMEOUT, PID_POLL_INTERVAL)

    def stop(self, name: str) -> None:
        self._run_launchctl("bootout", self._target(name))

    def restart(self, name: str) -> None:
        """Kill and relaunch in one step, so the label is never unregistered."""
        self._run_launchctl("kickstart", "-kp", self._target(name))

    def status(self, name: str) -> AgentStatus:
        """Get status of the agent from ``launchctl list``."""
        if not self._plist_path(name).exists():
            return AgentStatus(name=name, state="unknown", backend=self.backend)

        try:
            entry = self._find_entry(name)
        except BackendCommandError as e:
            logger.debug(f"launchctl list failed: {e}")
            entry = None
        if entry is None:
            return AgentStatus(name=name, state="unknown", backend=self.backend)

        port = self.metadata.port(name)
        status = AgentStatus(
            name=name,
            state=entry.state,
            backend=self.backend,
            pid=entry.pid,
            port=port,
        )

        if status.state == "online" and port:
            body = probe_status(port, timeout=get_config().probe_timeout)
            if body:
                merge_probe(status, body)
        return status

    def fleet(self) -> list[AgentStatus]:
        """List all agents loaded under our label prefix."""
        try:
            entries = self._list_entries()
        except BackendCommandError as e:
            logger.warning(f"Could not list launchd agents: {e}")
            return []

        prefix = f"{LABEL_PREFIX}."
        results = []
        for entry in entries:
            if not entry.label.startswith(prefix):
                continue
            name = entry.label[len(prefix) :]
            results.append(
                AgentStatus(
                    name=name,
                    state=entry.state,
                    backend=self.backend,
                    pid=entry.pid,
                    port=self.metadata.port(name),
                )
            )
        return results

    def logs(self, name: str, options: LogOptions | None = None) -> str:
        """Get logs from the agent's stdout/stderr files."""
        options = options or LogOptions()
        log_dir = self._log_dir(name)

        files: list[Path] = []
        if options.channel in ("stdout", "all"):
            files.append(log_dir / f"{name}.out.log")
        if options.channel in ("stderr", "all"):
            files.append(log_dir / f"{name}.err.log")

        existing = [f for f in files if f.exists()]
        if not existing:
            return f"No log files found for {name} in {log_dir}"

        if options.follow:
            stream_command(["tail", "-f", *(str(f) for f in existing)])
            return ""

        sections = []
        for path in existing:
            result = run_command(
                ["tail", "-n", str(options.lines), str(path)],
                check=False,
                timeout=get_config().command_timeout,
            )
            if result.stdout:
                channel = "stdout" if path.name.endswith(".out.log") else "stderr"
                sections.append(f"--- {channel} ({path}) ---\n{result.stdout.rstrip()}")
        return "\n".join(sections)
