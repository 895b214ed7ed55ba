"""Exceptions raised by agent-runtime."""


class AgentRuntimeError(Exception):
    """Base class for all agent-runtime errors."""


class ValidationError(AgentRuntimeError, ValueError):
    """Raised when caller input is rejected before any backend is touched.

    Covers bad agent names, missing scripts, out-of-range ports and
    malformed process options.
    """


class NotInstalledError(AgentRuntimeError):
    """Raised when an operation needs an installed service config that is missing."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service not installed: {name}. Run install() first.")


class BackendCommandError(AgentRuntimeError):
    """Raised when a service-manager control command fails, times out or is missing."""

    def __init__(self, cmd: list[str], returncode: int | None, output: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.output = output
        status = f"exit code {returncode}" if returncode is not None else "no exit code"
        message = f"Command failed ({status}): {' '.join(cmd)}"
        if output:
            message += f"\n{output}"
        super().__init__(message)


class InterpreterNotFoundError(AgentRuntimeError):
    """Raised when the interpreter used to run agent scripts cannot be located.

    This is fatal: no service config can be generated without it.
    """


class InvalidServiceConfigError(AgentRuntimeError):
    """Raised when a generated service config fails validation.

    The offending file has already been removed when this is raised.
    """


class ConfigError(AgentRuntimeError):
    """Raised when an agent.toml or runtime config file is malformed."""
