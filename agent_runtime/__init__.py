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
)
from .exceptions import (
    AgentRuntimeError,
    BackendCommandError,
    ConfigError,
    InterpreterNotFoundError,
    InvalidServiceConfigError,
    NotInstalledError,
    ValidationError,
)
from .service import AgentHandle, AgentStartSpec, AgentStatus, LogOptions

__all__ = [
    "agent_install",
    "agent_start",
    "agent_stop",
    "agent_restart",
    "agent_status",
    "agent_fleet",
    "agent_logs",
    "agent_uninstall",
    "AgentStartSpec",
    "AgentHandle",
    "AgentStatus",
    "LogOptions",
    "AgentRuntimeError",
    "BackendCommandError",
    "ConfigError",
    "InterpreterNotFoundError",
    "InvalidServiceConfigError",
    "NotInstalledError",
    "ValidationError",
    "__version__",
]
