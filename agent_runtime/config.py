import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import tomlkit
from tomlkit.exceptions import TOMLKitError
from typing_extensions import Self

from .dirs import get_config_dir
from .exceptions import ConfigError

if TYPE_CHECKING:
    from .service.base import AgentStartSpec

logger = logging.getLogger(__name__)

PROJECT_CONFIG_FILENAME = "agent.toml"


@dataclass
class RuntimeConfig:
    """User-level settings for how agent-runtime drives the host service manager."""

    # Interpreter used to run agent scripts when a spec does not name one
    interpreter: str = "python3"
    # Seconds before a launchctl/systemctl call is abandoned
    command_timeout: float = 15.0
    # pm2 spins up its daemon on first use, so it gets a longer budget
    supervisor_timeout: float = 30.0
    probe_timeout: float = 2.0
    # Overrides the launchd default log dir (~/Library/Logs/agentrt)
    log_dir: str | None = None

    @classmethod
    def from_dict(cls, doc: dict) -> Self:
        """Create a RuntimeConfig from the [runtime] table. Warns about unknown keys."""
        doc = dict(doc)
        config = cls(
            interpreter=doc.pop("interpreter", cls.interpreter),
            command_timeout=float(doc.pop("command_timeout", cls.command_timeout)),
            supervisor_timeout=float(
                doc.pop("supervisor_timeout", cls.supervisor_timeout)
            ),
            probe_timeout=float(doc.pop("probe_timeout", cls.probe_timeout)),
            log_dir=doc.pop("log_dir", None),
        )
        if doc:
            logger.warning(f"Unknown keys in runtime config: {list(doc.keys())}")
        return config


def get_config_path() -> Path:
    if path := os.environ.get("AGENTRT_CONFIG"):
        return Path(path)
    return get_config_dir() / "config.toml"


def _load_toml(path: Path) -> dict:
    try:
        with open(path) as f:
            return tomlkit.load(f).unwrap()
    except TOMLKitError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def load_config(path: Path | None = None) -> RuntimeConfig:
    """Load the runtime config, falling back to defaults when no file exists."""
    path = path or get_config_path()
    if not path.exists():
        logger.debug(f"No runtime config at {path}, using defaults")
        return RuntimeConfig()

    doc = _load_toml(path)
    runtime = doc.pop("runtime", {})
    if doc:
        logger.warning(f"Unknown keys in config: {list(doc.keys())}")
    return RuntimeConfig.from_dict(runtime)


_config: RuntimeConfig | None = None


def get_config() -> RuntimeConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: RuntimeConfig) -> None:
    global _config
    _config = config


def reload_config() -> RuntimeConfig:
    global _config
    _config = load_config()
    return _config


@dataclass
class ProcessConfig:
    """The [process] table of agent.toml."""

    restart: bool = True
    max_restarts: int = 10
    # Seconds between automatic restarts; None lets each backend pick its default
    restart_backoff: float | None = None
    max_memory: str | None = None
    log_dir: str | None = None


@dataclass
class AgentDefinition:
    """An agent as declared by a project's agent.toml."""

    name: str
    entrypoint: str
    port: int | None = None
    interpreter: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    process: ProcessConfig = field(default_factory=ProcessConfig)

    # Directory containing the agent.toml, used as working directory
    path: Path = field(default_factory=Path.cwd)

    @classmethod
    def from_dict(cls, doc: dict, path: Path) -> Self:
        doc = dict(doc)
        name = doc.pop("name", None)
        entrypoint = doc.pop("entrypoint", None)
        if not name:
            raise ConfigError(f"{path / PROJECT_CONFIG_FILENAME}: missing 'name'")
        if not entrypoint:
            raise ConfigError(
                f"{path / PROJECT_CONFIG_FILENAME}: missing 'entrypoint'"
            )

        process_doc = dict(doc.pop("process", {}))
        try:
            process = ProcessConfig(**process_doc)
        except TypeError as e:
            raise ConfigError(f"Invalid [process] table in agent.toml: {e}") from e

        definition = cls(
            name=name,
            entrypoint=entrypoint,
            port=doc.pop("port", None),
            interpreter=doc.pop("interpreter", None),
            env={k: str(v) for k, v in doc.pop("env", {}).items()},
            process=process,
            path=path,
        )
        if doc:
            logger.warning(f"Unknown keys in agent.toml: {list(doc.keys())}")
        return definition


def find_agent_config(workspace: Path | None = None) -> Path | None:
    """Return the path of agent.toml in the given directory, if there is one."""
    workspace = (workspace or Path.cwd()).resolve()
    config_path = workspace / PROJECT_CONFIG_FILENAME
    return config_path if config_path.exists() else None


def load_agent_definition(workspace: Path | None = None) -> AgentDefinition:
    """Load agent.toml from a project directory (default: the current one)."""
    workspace = (workspace or Path.cwd()).resolve()
    config_path = find_agent_config(workspace)
    if config_path is None:
        raise ConfigError(
            f"No agent config found in {workspace}. Create {PROJECT_CONFIG_FILENAME}."
        )
    return AgentDefinition.from_dict(_load_toml(config_path), workspace)


def to_start_spec(definition: AgentDefinition) -> "AgentStartSpec":
    """Convert a project definition into the AgentStartSpec the managers consume."""
    from .service.base import AgentStartSpec

    env = {
        "AGENT_NAME": definition.name,
        "AGENT_CONFIG_DIR": str(definition.path),
    }
    if definition.port:
        env["AGENT_PORT"] = str(definition.port)
    env.update(definition.env)

    return AgentStartSpec(
        name=definition.name,
        script=definition.entrypoint,
        port=definition.port,
        interpreter=definition.interpreter,
        env=env,
        working_directory=str(definition.path),
        restart=definition.process.restart,
        max_restarts=definition.process.max_restarts,
        restart_backoff=definition.process.restart_backoff,
        max_memory=definition.process.max_memory,
        log_dir=definition.process.log_dir,
    )
