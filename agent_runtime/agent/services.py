"""
Pluggable services that run inside an agent.

A service is started after the agent's HTTP server is up, can register
routes on it, and reports its stats through ``/status``.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from .server import AgentServer

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    agent_name: str
    server: AgentServer


class Service(ABC):
    name: str

    @abstractmethod
    def start(self, ctx: ServiceContext) -> None:
        """Register routes, start timers, etc."""
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    def get_stats(self) -> dict:
        return {}


@dataclass
class HeartbeatStats:
    runs: int = 0
    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_run_at: str | None = None
    last_error_at: str | None = None
    last_error: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HeartbeatService(Service):
    """Runs ``handler`` every ``interval`` seconds.

    A failing run is retried after ``retry_delay`` up to ``max_retries``
    times in a row; after that it waits for the next scheduled run.
    """

    name = "heartbeat"

    def __init__(
        self,
        handler: Callable[[ServiceContext], None],
        interval: float = 30 * 60,
        retry_delay: float = 30,
        max_retries: int = 5,
        run_on_start: bool = True,
    ):
        self.handler = handler
        self.interval = interval
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.run_on_start = run_on_start
        self.stats = HeartbeatStats()

        self._ctx: ServiceContext | None = None
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self, ctx: ServiceContext) -> None:
        self._ctx = ctx
        self._stopped.clear()
        if self.run_on_start:
            self.beat()
        self._thread = threading.Thread(
            target=self._loop, name="agent-heartbeat", daemon=True
        )
        self._thread.start()
        logger.info(f"Heartbeat started, interval {self.interval}s")

    def stop(self) -> None:
        self._stopped.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Heartbeat stopped")

    def get_stats(self) -> dict:
        return asdict(self.stats)

    def beat(self) -> bool:
        """Run the handler once. Returns whether it succeeded."""
        if self._ctx is None:
            return False

        self.stats.runs += 1
        self.stats.last_run_at = _now()
        try:
            self.handler(self._ctx)
        except Exception as e:
            self.stats.failures += 1
            self.stats.consecutive_failures += 1
            self.stats.last_error_at = _now()
            self.stats.last_error = str(e)
            logger.error(
                f"Heartbeat failed ({self.stats.consecutive_failures}"
                f"/{self.max_retries}): {e}"
            )
            return False

        self.stats.successes += 1
        self.stats.consecutive_failures = 0
        return True

    def _next_delay(self, succeeded: bool) -> float:
        if succeeded:
            return self.interval
        if self.stats.consecutive_failures < self.max_retries:
            return self.retry_delay
        logger.error("Heartbeat max retries reached, waiting for next interval")
        self.stats.consecutive_failures = 0
        return self.interval

    def _loop(self) -> None:
        delay = self.interval
        if self.run_on_start and self.stats.consecutive_failures:
            delay = self._next_delay(succeeded=False)
        while not self._stopped.wait(delay):
            delay = self._next_delay(self.beat())
