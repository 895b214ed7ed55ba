"""
In-process agent runtime: what runs inside the script a service manager launches.

It serves the ``/health`` and ``/status`` endpoints that ``agentrt health``
and status probes read.
"""

from .core import Agent, AlreadyRunningError, create_agent
from .lifecycle import ProcessLock, acquire_lock, release_lock, setup_signals
from .server import AgentServer
from .services import HeartbeatService, Service, ServiceContext

__all__ = [
    "Agent",
    "AgentServer",
    "AlreadyRunningError",
    "HeartbeatService",
    "ProcessLock",
    "Service",
    "ServiceContext",
    "acquire_lock",
    "create_agent",
    "release_lock",
    "setup_signals",
]
