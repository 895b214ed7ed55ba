"""
Service manager abstraction for agent processes.

Provides a unified interface over launchd (macOS), systemd (Linux) and pm2
(everything else, including WSL) for running agents in the background.
"""

import importlib

from .base import (
    AgentHandle,
    AgentStartSpec,
    AgentStatus,
    Backend,
    LogOptions,
    ProcessManager,
)
from .detect import build_service_path, detect_backend, is_wsl, resolve_interpreter_path

# Backend → (module, class); imported on demand so only one backend is loaded
_MANAGERS: dict[str, tuple[str, str]] = {
    "launchd": (".launchd", "LaunchdManager"),
    "systemd": (".systemd", "SystemdManager"),
    "pm2": (".pm2", "PM2Manager"),
}


def get_manager(backend: Backend | None = None) -> ProcessManager:
    """Get the process manager for the current system (or the given backend)."""
    backend = backend or detect_backend()
    try:
        module_name, class_name = _MANAGERS[backend]
    except KeyError:
        raise ValueError(f"Unsupported backend: {backend}") from None

    module = importlib.import_module(module_name, __name__)
    return getattr(module, class_name)()


__all__ = [
    "AgentHandle",
    "AgentStartSpec",
    "AgentStatus",
    "Backend",
    "LogOptions",
    "ProcessManager",
    "build_service_path",
    "detect_backend",
    "get_manager",
    "is_wsl",
    "resolve_interpreter_path",
]
