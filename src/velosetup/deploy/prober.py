"""Readiness probing for the server's web interface.

The GUI serves HTTPS with a self-signed certificate, so the probe skips
certificate verification: it only asks whether the TLS handshake completes
and the server answers with a non-error HTTP status.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

import httpx

from velosetup.deploy.poll import PollResult, poll_until
from velosetup.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1.0
DEFAULT_REQUEST_TIMEOUT = 5.0


class Readiness(str, Enum):
    """Result of a readiness wait."""

    READY = "ready"
    TIMED_OUT = "timed_out"


def gui_endpoint(address: str, port: int, scheme: str = "https") -> str:
    """Build the probe URL. A wildcard bind is probed on loopback."""
    if address in ("0.0.0.0", "", "::"):
        address = "127.0.0.1"
    if ":" in address:
        address = f"[{address}]"
    return f"{scheme}://{address}:{port}/"


class ReadinessProber:
    """Polls an HTTP(S) endpoint until it answers."""

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.interval = interval
        self.request_timeout = request_timeout
        self.last_result: Optional[PollResult] = None

    async def probe_once(self, client: httpx.AsyncClient, endpoint: str) -> bool:
        """One health check. Connection and TLS errors propagate to the poller."""
        response = await client.get(endpoint)
        logger.debug(f"Probe {endpoint} -> HTTP {response.status_code}")
        return response.status_code < 500

    async def wait_until_ready(self, endpoint: str, timeout: float) -> Readiness:
        """Wait until ``endpoint`` responds or ``timeout`` seconds pass.

        Connection refused and TLS-not-ready errors during the window are
        tolerated. Cancelling the caller cancels the wait.

        Args:
            endpoint: URL to probe, e.g. ``https://127.0.0.1:8889/``.
            timeout: Overall budget in seconds.

        Returns:
            Readiness.READY on the first successful probe, else TIMED_OUT.
        """
        parsed = urlparse(endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"Invalid probe endpoint: {endpoint}")

        logger.info(f"Waiting up to {timeout:.0f}s for {endpoint}")
        async with httpx.AsyncClient(
            verify=False,
            timeout=self.request_timeout,
            follow_redirects=False,
        ) as client:
            result = await poll_until(
                lambda: self.probe_once(client, endpoint),
                interval=self.interval,
                timeout=timeout,
                name=endpoint,
            )

        self.last_result = result
        if result.ready:
            logger.info(f"{endpoint} is ready ({result.attempts} attempts, {result.elapsed:.1f}s)")
            return Readiness.READY

        logger.warning(
            f"{endpoint} not ready after {result.elapsed:.1f}s: {result.last_error}"
        )
        return Readiness.TIMED_OUT
