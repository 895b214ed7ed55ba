"""
Platform detection.

Picks the service-manager backend for the current host and locates the
interpreter that runs agent scripts.
"""

import logging
import os
import platform
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import get_config
from ..exceptions import InterpreterNotFoundError

if TYPE_CHECKING:
    from .base import Backend

logger = logging.getLogger(__name__)

PROC_VERSION = Path("/proc/version")

# Checked in order after PATH lookup fails
INTERPRETER_SEARCH_DIRS = [
    Path.home() / ".local" / "bin",
    Path("/usr/local/bin"),
    Path("/opt/homebrew/bin"),
    Path("/usr/bin"),
]

STANDARD_PATHS = ["/usr/local/bin", "/usr/bin", "/bin", "/usr/sbin", "/sbin"]


def is_wsl() -> bool:
    """Detect a Linux personality running under Windows (WSL)."""
    if platform.system() != "Linux":
        return False
    try:
        version = PROC_VERSION.read_text()
    except OSError:
        return False
    return bool(re.search(r"microsoft|wsl", version, re.IGNORECASE))


def detect_backend() -> "Backend":
    """Detect the service-manager backend for the current system.

    - Darwin → launchd
    - Linux → systemd, except under WSL where user units are unreliable → pm2
    - anything else → pm2
    """
    system = platform.system()

    if system == "Darwin":
        return "launchd"
    elif system == "Linux":
        return "pm2" if is_wsl() else "systemd"
    return "pm2"


def resolve_interpreter_path(interpreter: str | None = None) -> str:
    """Resolve the absolute path of the interpreter used to run agent scripts.

    Strategy:
    1. An absolute path is taken as is, if it exists
    2. Look it up on the current PATH
    3. Fall back to conventional installation directories
    """
    interpreter = interpreter or get_config().interpreter

    if os.path.isabs(interpreter):
        if Path(interpreter).exists():
            return interpreter
        raise InterpreterNotFoundError(f"Interpreter not found: {interpreter}")

    found = shutil.which(interpreter)
    if found and Path(found).exists():
        return str(Path(found).absolute())

    for directory in INTERPRETER_SEARCH_DIRS:
        candidate = directory / interpreter
        if candidate.exists():
            logger.debug(f"Found {interpreter} outside PATH at {candidate}")
            return str(candidate)

    searched = ", ".join(str(d) for d in INTERPRETER_SEARCH_DIRS)
    raise InterpreterNotFoundError(
        f"Could not find '{interpreter}' on PATH or in {searched}. "
        "Install it, or set an absolute interpreter path in agent.toml."
    )


def build_service_path(interpreter_path: str) -> str:
    """Build a PATH for service configs: interpreter dir first, then system dirs.

    launchd and systemd start services without the user's shell PATH.
    """
    interpreter_dir = str(Path(interpreter_path).parent)
    parts = [interpreter_dir, *(p for p in STANDARD_PATHS if p != interpreter_dir)]
    return ":".join(parts)
