"""
HTTP probes against an agent's own server.

Agents that register a port serve ``/health`` and ``/status`` on localhost.
Probes are best effort: any network or decoding failure yields ``None`` or an
unhealthy result, never an exception.
"""

import logging
from dataclasses import dataclass

import requests

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 2.0


def _url(port: int, path: str) -> str:
    return f"http://localhost:{port}{path}"


def probe_status(port: int, timeout: float = DEFAULT_PROBE_TIMEOUT) -> dict | None:
    """Fetch ``/status`` from the agent listening on ``port``.

    Returns the decoded JSON body, or None if the agent did not answer with a
    JSON object in time.
    """
    try:
        response = requests.get(_url(port, "/status"), timeout=timeout)
        if response.status_code != 200:
            logger.debug(f"Status probe on port {port} returned {response.status_code}")
            return None
        body = response.json()
    except requests.RequestException as e:
        logger.debug(f"Status probe on port {port} failed: {e}")
        return None
    except ValueError:
        logger.debug(f"Status probe on port {port} returned non-JSON body")
        return None
    return body if isinstance(body, dict) else None


@dataclass
class HealthResult:
    """Outcome of a ``/health`` probe."""

    healthy: bool
    status_code: int | None = None
    error: str | None = None


def check_health(port: int, timeout: float = 5.0) -> HealthResult:
    """Probe ``/health`` on the agent listening on ``port``."""
    try:
        response = requests.get(_url(port, "/health"), timeout=timeout)
    except requests.exceptions.Timeout:
        return HealthResult(healthy=False, error="Request timed out")
    except requests.exceptions.ConnectionError:
        return HealthResult(healthy=False, error=f"Could not connect to port {port}")
    except requests.RequestException as e:
        return HealthResult(healthy=False, error=str(e))

    return HealthResult(
        healthy=response.status_code == 200,
        status_code=response.status_code,
    )
