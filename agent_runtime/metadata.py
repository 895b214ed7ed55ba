"""
Structured side-metadata for installed agents.

The rendered service config is the registry of what is installed; this store
only keeps the facts a backend cannot hand back in a structured way (the
agent's HTTP port and custom log directory), so status and logs never have to
scrape them out of a plist or unit file.
"""

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path

from .dirs import get_metadata_dir

logger = logging.getLogger(__name__)


@dataclass
class AgentMetadata:
    name: str
    backend: str
    port: int | None = None
    log_dir: str | None = None


class MetadataStore:
    """One small JSON document per agent, keyed by agent name."""

    def __init__(self, root: Path | None = None):
        self.root = root or get_metadata_dir()

    def _path(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def get(self, name: str) -> AgentMetadata | None:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
            return AgentMetadata(**data)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Ignoring unreadable metadata at {path}: {e}")
            return None

    def put(self, metadata: AgentMetadata) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(metadata.name)
        path.write_text(json.dumps(asdict(metadata), indent=2))
        logger.debug(f"Wrote metadata: {path}")

    def remove(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)

    def port(self, name: str) -> int | None:
        metadata = self.get(name)
        return metadata.port if metadata else None
