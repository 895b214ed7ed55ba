"""
Library API.

Callers use these functions directly::

    from agent_runtime import AgentStartSpec, agent_start, agent_status

    handle = agent_start(AgentStartSpec(name="my-brain", script="main.py", port=3051))
    print(agent_status("my-brain").state)

Each function validates its input before anything touches the host's
service manager, then delegates to the process manager for this platform.
"""

import logging
import re

from .exceptions import ValidationError
from .service import get_manager
from .service.base import AgentHandle, AgentStartSpec, AgentStatus, LogOptions

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*$")
MAX_NAME_LENGTH = 64

# Below 1024 needs privileges a per-user service does not have
MIN_PORT = 1024
MAX_PORT = 65535

MEMORY_PATTERN = re.compile(r"^\d+[KMG]?$")

ENV_KEY_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def validate_name(name: str) -> None:
    if not name:
        raise ValidationError("Agent name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"Agent name must be {MAX_NAME_LENGTH} characters or less"
        )
    if not NAME_PATTERN.fullmatch(name):
        raise ValidationError(
            "Agent name must contain only alphanumeric characters and hyphens, "
            "and start with an alphanumeric character"
        )


def validate_spec(spec: AgentStartSpec) -> None:
    validate_name(spec.name)

    if not spec.script:
        raise ValidationError("Agent script path is required")

    # Service configs carry paths on a single line
    for label, path in (
        ("Script path", spec.script),
        ("Working directory", spec.working_directory),
    ):
        if path and CONTROL_CHARS.search(path):
            raise ValidationError(f"{label} must not contain control characters")

    for key in spec.env:
        if not ENV_KEY_PATTERN.fullmatch(key):
            raise ValidationError(f"Invalid environment variable name: {key!r}")

    if spec.working_directory and not spec.resolved_working_directory().is_dir():
        raise ValidationError(
            f"Working directory not found: {spec.working_directory}"
        )

    script_path = spec.resolved_script()
    if not script_path.is_file():
        raise ValidationError(f"Script not found: {spec.script} ({script_path})")

    if spec.port is not None:
        if isinstance(spec.port, bool) or not isinstance(spec.port, int):
            raise ValidationError(f"Port must be an integer, got {spec.port!r}")
        if not MIN_PORT <= spec.port <= MAX_PORT:
            raise ValidationError(f"Port must be between {MIN_PORT} and {MAX_PORT}")

    if spec.max_restarts < 0:
        raise ValidationError("max_restarts must be zero or greater")
    if spec.restart_backoff is not None and spec.restart_backoff < 0:
        raise ValidationError("restart_backoff must be zero or greater")
    if spec.max_memory and not MEMORY_PATTERN.fullmatch(spec.max_memory):
        raise ValidationError(
            f"max_memory must look like '300M' or '1G', got {spec.max_memory!r}"
        )


def agent_install(spec: AgentStartSpec) -> None:
    """Write the platform-native service config without starting it."""
    validate_spec(spec)
    manager = get_manager()
    manager.install(spec)


def agent_start(spec: AgentStartSpec) -> AgentHandle:
    """Start an agent as a background service.

    Installs (or overwrites) the service config, then starts it, so calling
    this again with a changed spec simply reinstalls and restarts.
    """
    validate_spec(spec)
    manager = get_manager()
    manager.install(spec)
    handle = manager.start(spec.name)
    logger.info(f"Started {spec.name} via {handle.backend} (pid: {handle.pid})")
    return handle


def agent_stop(name: str) -> None:
    """Stop a running agent by name."""
    validate_name(name)
    get_manager().stop(name)


def agent_restart(name: str) -> None:
    """Restart a running agent by name."""
    validate_name(name)
    get_manager().restart(name)


def agent_status(name: str) -> AgentStatus:
    """Get status of a single agent."""
    validate_name(name)
    return get_manager().status(name)


def agent_fleet() -> list[AgentStatus]:
    """List all agents managed on this host."""
    return get_manager().fleet()


def agent_logs(name: str, options: LogOptions | None = None) -> str:
    """Tail logs for an agent, or stream them when ``options.follow`` is set."""
    validate_name(name)
    return get_manager().logs(name, options)


def agent_uninstall(name: str) -> None:
    """Stop an agent and remove its service config."""
    validate_name(name)
    get_manager().uninstall(name)
