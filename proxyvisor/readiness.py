"""
Upstream readiness probe.

Polls a TCP endpoint until it accepts a connection or the attempt budget is
spent. The proxy has nothing to front until the upstream is reachable, so a
timed-out probe aborts startup.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class ProbeStatus(Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a readiness probe."""

    status: ProbeStatus
    attempts: int

    @property
    def ready(self) -> bool:
        return self.status is ProbeStatus.READY


async def tcp_connect(host: str, port: int, timeout: float) -> bool:
    """Return True if a bare TCP connection to host:port succeeds within timeout."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_ready(
    host: str,
    port: int,
    max_attempts: int,
    interval: float,
    connect_timeout: float = 1.0,
    connect: Callable[[str, int, float], Awaitable[bool]] = tcp_connect,
) -> ProbeResult:
    """
    Wait for host:port to accept TCP connections.

    Args:
        host: Upstream host name or address
        port: Upstream TCP port
        max_attempts: Number of consecutive failed attempts before giving up
        interval: Seconds to wait between attempts
        connect_timeout: Seconds allowed for each connection attempt
        connect: Connection primitive, replaceable in tests

    Returns:
        ProbeResult with READY and the attempt that succeeded, or TIMED_OUT
        with attempts equal to max_attempts.
    """
    logger.info(f"Waiting for {host} to be ready on port {port}...")

    attempt = 0
    while attempt < max_attempts:
        attempt += 1
        if await connect(host, port, connect_timeout):
            logger.info(f"{host} is ready on port {port}.")
            return ProbeResult(ProbeStatus.READY, attempt)

        if attempt >= max_attempts:
            break

        logger.warning(
            f"Attempt {attempt}: {host} is not ready. Retrying in {interval:g} seconds..."
        )
        await asyncio.sleep(interval)

    logger.error(f"Service {host} not ready after {max_attempts} attempts.")
    return ProbeResult(ProbeStatus.TIMED_OUT, attempt)
