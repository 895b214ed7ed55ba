"""
Process lifecycle for a running agent: a PID lock against duplicate
instances, and signal handlers for graceful shutdown.
"""

import json
import logging
import os
import signal
import sys
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

import psutil

from ..dirs import get_locks_dir

logger = logging.getLogger(__name__)

DEFAULT_FORCE_EXIT_AFTER = 5.0


@dataclass
class ProcessLock:
    lock_file: str
    pid: int
    acquired_at: str
    # Unclean exits since the last graceful shutdown (a stale lock means a crash)
    restarts: int = 0


def _read_lock(lock_file: Path) -> ProcessLock | None:
    try:
        return ProcessLock(**json.loads(lock_file.read_text()))
    except (OSError, json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Removing corrupt lock file {lock_file}: {e}")
        return None


def acquire_lock(name: str, lock_dir: Path | None = None) -> ProcessLock | None:
    """Take the PID lock for ``name``.

    Returns None if another live process holds it. A lock left behind by a
    dead process is taken over, and counted as a restart.
    """
    lock_dir = lock_dir or get_locks_dir()
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"{name}.lock"

    restarts = 0
    if lock_file.exists():
        existing = _read_lock(lock_file)
        if existing and existing.pid == os.getpid():
            restarts = existing.restarts
        elif existing and psutil.pid_exists(existing.pid):
            return None
        elif existing:
            logger.info(f"Taking over stale lock from PID {existing.pid}")
            restarts = existing.restarts + 1
        lock_file.unlink(missing_ok=True)

    lock = ProcessLock(
        lock_file=str(lock_file),
        pid=os.getpid(),
        acquired_at=datetime.now(timezone.utc).isoformat(),
        restarts=restarts,
    )
    lock_file.write_text(json.dumps(asdict(lock), indent=2))
    lock_file.chmod(0o600)
    return lock


def release_lock(lock: ProcessLock) -> None:
    Path(lock.lock_file).unlink(missing_ok=True)


class SignalHandlers:
    """SIGTERM/SIGINT trigger one graceful shutdown; SIGUSR1 an in-place restart.

    The process exits once ``on_shutdown`` returns, or is forced out after
    ``force_exit_after`` seconds if shutdown hangs.
    """

    def __init__(
        self,
        on_shutdown: Callable[[], None],
        on_restart: Callable[[], None] | None = None,
        force_exit_after: float = DEFAULT_FORCE_EXIT_AFTER,
    ):
        self.on_shutdown = on_shutdown
        self.on_restart = on_restart
        self.force_exit_after = force_exit_after
        self.shutdown_initiated = False
        self._previous: dict[int, object] = {}

    def _signals(self) -> dict[int, Callable]:
        handlers: dict[int, Callable] = {
            signal.SIGTERM: self.handle_shutdown,
            signal.SIGINT: self.handle_shutdown,
        }
        # not available on Windows
        if hasattr(signal, "SIGUSR1"):
            handlers[signal.SIGUSR1] = self.handle_restart
        return handlers

    def install(self) -> "SignalHandlers":
        for signum, handler in self._signals().items():
            self._previous[signum] = signal.signal(signum, handler)
        return self

    def remove(self) -> None:
        for signum, previous in self._previous.items():
            # None means the old handler was not installed from Python
            if previous is not None:
                signal.signal(signum, previous)  # type: ignore[arg-type]
        self._previous.clear()

    def handle_shutdown(self, signum, frame=None) -> None:
        if self.shutdown_initiated:
            return
        self.shutdown_initiated = True
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")

        timer = threading.Timer(self.force_exit_after, self._force_exit)
        timer.daemon = True
        timer.start()
        try:
            self.on_shutdown()
        except Exception:
            logger.exception("Shutdown failed")
            sys.exit(1)
        finally:
            timer.cancel()
        sys.exit(0)

    def handle_restart(self, signum, frame=None) -> None:
        if self.on_restart:
            logger.info("Received SIGUSR1, restarting")
            self.on_restart()

    def _force_exit(self) -> None:
        logger.error("Shutdown timed out, forcing exit")
        os._exit(1)


def setup_signals(
    on_shutdown: Callable[[], None],
    on_restart: Callable[[], None] | None = None,
    force_exit_after: float = DEFAULT_FORCE_EXIT_AFTER,
) -> SignalHandlers:
    """Install shutdown/restart handlers. Must be called from the main thread."""
    return SignalHandlers(on_shutdown, on_restart, force_exit_after).install()
