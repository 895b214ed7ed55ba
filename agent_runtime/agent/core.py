"""
The in-process side of an agent: wires the PID lock, signal handling, the
HTTP server and pluggable services into one runtime.

Usage in an agent's entrypoint::

    from agent_runtime.agent import HeartbeatService, create_agent

    agent = create_agent(services=[HeartbeatService(handler=tick)])
    agent.run()

Name and port default to ``AGENT_NAME``/``AGENT_PORT``, which the service
config sets for every managed agent.
"""

import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import psutil

from ..exceptions import AgentRuntimeError, ConfigError
from ..service.base import PORT_ENV_VAR, format_bytes
from .lifecycle import (
    DEFAULT_FORCE_EXIT_AFTER,
    ProcessLock,
    SignalHandlers,
    acquire_lock,
    release_lock,
    setup_signals,
)
from .server import DEFAULT_HOST, AgentServer
from .services import Service, ServiceContext

logger = logging.getLogger(__name__)

NAME_ENV_VAR = "AGENT_NAME"


class AlreadyRunningError(AgentRuntimeError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Another instance of "{name}" is already running')


class Agent:
    def __init__(
        self,
        name: str,
        port: int,
        host: str = DEFAULT_HOST,
        api_token: str | None = None,
        services: list[Service] | None = None,
        lock: bool = True,
        lock_dir: Path | None = None,
        force_exit_after: float = DEFAULT_FORCE_EXIT_AFTER,
    ):
        self.name = name
        self.services = services or []
        self.use_lock = lock
        self.lock_dir = lock_dir
        self.force_exit_after = force_exit_after

        self.server = AgentServer(port=port, host=host, api_token=api_token)
        self.server.set_status_provider(self.get_status)

        self.lock: ProcessLock | None = None
        self.signals: SignalHandlers | None = None
        self.started_at: datetime | None = None
        self._started_monotonic: float | None = None
        self.running = False
        self._stopped = threading.Event()

    def start(self) -> None:
        """Lock, install signal handlers, serve HTTP, then start services.

        A service that fails to start is logged and skipped.
        """
        logger.info(f"[{self.name}] Starting...")

        if self.use_lock:
            self.lock = acquire_lock(self.name, self.lock_dir)
            if self.lock is None:
                raise AlreadyRunningError(self.name)
            logger.info(f"[{self.name}] Lock acquired (PID {os.getpid()})")

        # signal.signal only works on the main thread
        if threading.current_thread() is threading.main_thread():
            self.signals = setup_signals(
                self.stop, force_exit_after=self.force_exit_after
            )

        try:
            self.server.start()
        except OSError:
            self._release()
            raise

        ctx = ServiceContext(agent_name=self.name, server=self.server)
        for service in self.services:
            try:
                service.start(ctx)
                logger.info(f'[{self.name}] Service "{service.name}" started')
            except Exception as e:
                logger.error(
                    f'[{self.name}] Service "{service.name}" failed to start: {e}'
                )

        self.started_at = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()
        self.running = True
        self._stopped.clear()
        logger.info(
            f"[{self.name}] Running on http://{self.server.host}:{self.server.port}"
        )

    def stop(self) -> None:
        """Stop services (in reverse), the server, then release the lock."""
        if not self.running:
            return
        self.running = False
        logger.info(f"[{self.name}] Stopping...")

        for service in reversed(self.services):
            try:
                service.stop()
            except Exception as e:
                logger.error(f'[{self.name}] Service "{service.name}" stop error: {e}')

        self.server.stop()
        self._release()

        self._stopped.set()
        logger.info(f"[{self.name}] Stopped")

    def _release(self) -> None:
        if self.lock:
            release_lock(self.lock)
            self.lock = None
        if self.signals:
            self.signals.remove()
            self.signals = None

    def run(self) -> None:
        """Start and block until stopped (by a signal or another thread)."""
        self.start()
        try:
            # short waits keep the main thread responsive to signals
            while not self._stopped.wait(0.5):
                pass
        finally:
            self.stop()

    def get_status(self) -> dict:
        """Body of ``/status``. ``uptime`` is in milliseconds."""
        uptime_ms = 0
        if self._started_monotonic is not None and self.running:
            uptime_ms = round((time.monotonic() - self._started_monotonic) * 1000)

        return {
            "name": self.name,
            "running": self.running,
            "pid": os.getpid(),
            "uptime": uptime_ms,
            "started_at": self.started_at.isoformat() if self.started_at else "",
            "memory": format_bytes(psutil.Process().memory_info().rss),
            "restarts": self.lock.restarts if self.lock else 0,
            "services": {
                service.name: {"running": self.running, "stats": service.get_stats()}
                for service in self.services
            },
        }


def create_agent(
    name: str | None = None,
    port: int | None = None,
    **kwargs,
) -> Agent:
    """Build an Agent, taking name and port from the environment when omitted."""
    name = name or os.environ.get(NAME_ENV_VAR)
    if not name:
        raise ConfigError(f"Agent name not given and {NAME_ENV_VAR} is not set")

    if port is None:
        port_str = os.environ.get(PORT_ENV_VAR)
        if not port_str:
            raise ConfigError(f"Agent port not given and {PORT_ENV_VAR} is not set")
        try:
            port = int(port_str)
        except ValueError:
            raise ConfigError(
                f"{PORT_ENV_VAR} must be an integer, got {port_str!r}"
            ) from None

    return Agent(name=name, port=port, **kwargs)
