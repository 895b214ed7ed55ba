"""
pm2 process manager, the fallback for hosts without launchd or systemd.

pm2 runs with a private ``PM2_HOME`` so our daemon and process list never mix
with a pm2 instance the user runs for other things.
"""

import json
import logging
import os
import shutil
import time
from pathlib import Path

from ..config import get_config
from ..dirs import get_pm2_home
from ..exceptions import BackendCommandError, NotInstalledError
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
    run_command,
    stream_command,
)
from .detect import resolve_interpreter_path

logger = logging.getLogger(__name__)

DEFAULT_RESTART_DELAY_MS = 1000

PM2_STATES: dict[str, AgentState] = {
    "online": "online",
    "stopped": "stopped",
    "errored": "errored",
}


def get_process_name(name: str) -> str:
    return f"{NAMESPACE}-{name}"


def generate_pm2_config(spec: AgentStartSpec, interpreter_path: str) -> dict:
    """Build a pm2 ecosystem config with a single app."""
    app: dict = {
        "name": get_process_name(spec.name),
        "script": str(spec.resolved_script()),
        "interpreter": interpreter_path,
        "cwd": str(spec.resolved_working_directory()),
        "env": build_environment(spec, interpreter_path),
        "autorestart": spec.restarts_enabled,
        "max_restarts": spec.max_restarts,
        "exp_backoff_restart_delay": (
            round(spec.restart_backoff * 1000)
            if spec.restart_backoff
            else DEFAULT_RESTART_DELAY_MS
        ),
    }
    if spec.max_memory:
        app["max_memory_restart"] = spec.max_memory
    return {"apps": [app]}


def parse_jlist(output: str) -> list[dict]:
    """Parse ``pm2 jlist`` output.

    pm2 may print warnings (e.g. ``[PM2] Spawning PM2 daemon``) before the
    JSON array, so decoding is attempted from each ``[`` until one yields a list.
    """
    decoder = json.JSONDecoder()
    index = output.find("[")
    while index != -1:
        try:
            processes, _ = decoder.raw_decode(output, index)
        except json.JSONDecodeError:
            processes = None
        if isinstance(processes, list):
            return [p for p in processes if isinstance(p, dict)]
        index = output.find("[", index + 1)

    logger.debug("Could not find a process list in pm2 jlist output")
    return []


def _status_from_process(name: str, proc: dict, port: int | None) -> AgentStatus:
    pm2_env = proc.get("pm2_env") or {}
    monit = proc.get("monit") or {}

    memory = None
    if monit.get("memory"):
        memory = f"{round(monit['memory'] / (1024 * 1024))}MB"

    uptime = None
    if pm2_env.get("pm_uptime") and pm2_env.get("status") == "online":
        # pm_uptime is the epoch-millisecond timestamp of the last (re)start
        uptime = max(0.0, time.time() - pm2_env["pm_uptime"] / 1000)

    return AgentStatus(
        name=name,
        state=PM2_STATES.get(pm2_env.get("status", ""), "unknown"),
        backend="pm2",
        pid=proc.get("pid") or None,
        port=port,
        memory=memory,
        uptime=uptime,
        restarts=pm2_env.get("restart_time"),
    )


class PM2Manager(ProcessManager):
    """pm2 process manager with an isolated PM2_HOME."""

    backend = "pm2"

    def __init__(self, pm2_home: Path | None = None, metadata: MetadataStore | None = None):
        self.pm2_home = pm2_home or get_pm2_home()
        self.metadata = metadata or MetadataStore()

    @property
    def configs_dir(self) -> Path:
        return self.pm2_home / "configs"

    def _config_path(self, name: str) -> Path:
        return self.configs_dir / f"{get_process_name(name)}.json"

    def _pm2_command(self) -> list[str]:
        if pm2 := shutil.which("pm2"):
            return [pm2]
        return ["npx", "pm2"]

    def _env(self) -> dict[str, str]:
        return {**os.environ, "PM2_HOME": str(self.pm2_home)}

    def _run_pm2(self, *args: str, check: bool = True):
        """Run pm2 against our private PM2_HOME."""
        self.pm2_home.mkdir(parents=True, exist_ok=True)
        return run_command(
            [*self._pm2_command(), *args],
            check=check,
            timeout=get_config().supervisor_timeout,
            env=self._env(),
        )

    def _processes(self) -> list[dict]:
        result = self._run_pm2("jlist", check=False)
        if result.returncode != 0:
            return []
        return parse_jlist(result.stdout)

    def _find_process(self, name: str) -> dict | None:
        process_name = get_process_name(name)
        for proc in self._processes():
            if proc.get("name") == process_name:
                return proc
        return None

    def install(self, spec: AgentStartSpec) -> None:
        """Save the pm2 app config; pm2 itself only learns about it on start."""
        interpreter_path = resolve_interpreter_path(spec.interpreter)
        self.configs_dir.mkdir(parents=True, exist_ok=True)

        config_path = self._config_path(spec.name)
        config_path.write_text(
            json.dumps(generate_pm2_config(spec, interpreter_path), indent=2)
        )
        logger.info(f"Created pm2 config: {config_path}")

        self.metadata.put(
            AgentMetadata(name=spec.name, backend=self.backend, port=spec.port)
        )

    def uninstall(self, name: str) -> None:
        """Stop the process, drop it from pm2 and remove the saved config."""
        try:
            self.stop(name)
        except BackendCommandError as e:
            logger.debug(f"Ignoring stop failure during uninstall of {name}: {e}")
        self._run_pm2("delete", get_process_name(name), check=False)

        config_path = self._config_path(name)
        if config_path.exists():
            config_path.unlink()
            logger.info(f"Removed pm2 config: {config_path}")
        self.metadata.remove(name)

    def start(self, name: str) -> AgentHandle:
        config_path = self._config_path(name)
        if not config_path.exists():
            raise NotInstalledError(name)

        self._run_pm2("start", str(config_path))

        proc = self._find_process(name)
        pid = proc.get("pid") if proc else None
        return AgentHandle(
            name=name,
            pid=pid or None,
            backend=self.backend,
            port=self.metadata.port(name),
        )

    def stop(self, name: str) -> None:
        self._run_pm2("stop", get_process_name(name))

    def restart(self, name: str) -> None:
        self._run_pm2("restart", get_process_name(name))

    def status(self, name: str) -> AgentStatus:
        if not self._config_path(name).exists():
            return AgentStatus(name=name, state="unknown", backend=self.backend)

        try:
            proc = self._find_process(name)
        except BackendCommandError as e:
            logger.debug(f"pm2 jlist failed: {e}")
            proc = None
        if proc is None:
            return AgentStatus(name=name, state="unknown", backend=self.backend)

        return _status_from_process(name, proc, self.metadata.port(name))

    def fleet(self) -> list[AgentStatus]:
        try:
            processes = self._processes()
        except BackendCommandError as e:
            logger.warning(f"Could not list pm2 processes: {e}")
            return []

        prefix = f"{NAMESPACE}-"
        results = []
        for proc in processes:
            process_name = proc.get("name") or ""
            if not process_name.startswith(prefix):
                continue
            name = process_name[len(prefix) :]
            results.append(_status_from_process(name, proc, self.metadata.port(name)))
        return results

    def logs(self, name: str, options: LogOptions | None = None) -> str:
        """Get logs via ``pm2 logs``."""
        options = options or LogOptions()
        args = ["logs", get_process_name(name), "--lines", str(options.lines)]
        if options.channel == "stdout":
            args.append("--out")
        elif options.channel == "stderr":
            args.append("--err")

        if options.follow:
            self.pm2_home.mkdir(parents=True, exist_ok=True)
            stream_command([*self._pm2_command(), *args], env=self._env())
            return ""

        result = self._run_pm2(*args, "--nostream", check=False)
        return result.stdout
