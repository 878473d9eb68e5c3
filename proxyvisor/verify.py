"""
Domain verification.

Checks that the managed domain resolves to this instance's public address
before a certificate is requested, so issuance attempts (and the CA's rate
limit budget) are not wasted on a domain that cannot reach us yet.

The expected address is either an explicit override (FLOATING_IP) or
discovered from a public "what is my IP" endpoint, with exactly one fallback
endpoint. Results are never cached: DNS records and the public address can
change between attempts.
"""

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

import httpx

from .config import Config

logger = logging.getLogger(__name__)


class VerificationStatus(Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    LOOKUP_FAILED = "lookup_failed"


@dataclass(frozen=True)
class VerificationResult:
    """Expected vs. observed address for one verification attempt."""

    domain: str
    expected: str | None
    observed: tuple[str, ...]
    status: VerificationStatus

    @property
    def match(self) -> bool:
        return self.status is VerificationStatus.VERIFIED

    @property
    def observed_display(self) -> str:
        return ", ".join(self.observed) if self.observed else "<none>"


async def resolve_ipv4(domain: str) -> list[str]:
    """Resolve the A records for domain. Returns an empty list if resolution fails."""
    try:
        result = await asyncio.to_thread(
            socket.getaddrinfo, domain, None, socket.AF_INET, socket.SOCK_STREAM
        )
    except (socket.gaierror, UnicodeError) as e:
        logger.warning(f"DNS lookup for {domain} failed: {e}")
        return []
    return sorted(set(addr[4][0] for addr in result))


class DomainVerifier:
    """Compares a domain's DNS records against the expected public address."""

    def __init__(
        self,
        config: Config,
        resolver: Callable[[str], Awaitable[list[str]]] = resolve_ipv4,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.config = config
        self._resolver = resolver
        self._transport = transport

    async def discover_public_ip(self) -> str | None:
        """
        Ask the discovery endpoints for our public address.

        The first endpoint that answers with an IP address within the timeout
        wins; the second is only tried when the first fails.
        """
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self.config.ip_discovery_timeout,
        ) as client:
            for url in self.config.ip_discovery_urls:
                try:
                    response = await client.get(url)
                except httpx.HTTPError as e:
                    logger.warning(f"Public IP lookup via {url} failed: {e!r}")
                    continue

                address = response.text.strip()
                if response.status_code != 200:
                    logger.warning(f"Public IP lookup via {url} returned HTTP {response.status_code}")
                    continue
                try:
                    ipaddress.ip_address(address)
                except ValueError:
                    logger.warning(f"Public IP lookup via {url} returned a non-address body")
                    continue
                return address

        return None

    async def resolve(self, domain: str) -> list[str]:
        """Look up domain's A records, giving up (empty answer) after dns_timeout."""
        try:
            return await asyncio.wait_for(self._resolver(domain), self.config.dns_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"DNS lookup for {domain} timed out after {self.config.dns_timeout:g} seconds")
            return []

    async def verify(self, domain: str, expected_override: str | None = None) -> VerificationResult:
        """
        Verify that domain resolves to the expected address.

        Returns:
            VerificationResult with VERIFIED when the DNS answer is exactly the
            expected address, MISMATCH when both are known but differ, and
            LOOKUP_FAILED when the public address or the DNS answer is missing.
        """
        if expected_override:
            expected = expected_override
            logger.info(f"Using FLOATING_IP: {expected}")
        else:
            expected = await self.discover_public_ip()
            if not expected:
                logger.error("Failed to retrieve public IP address. Please check your internet connection.")
                return VerificationResult(domain, None, (), VerificationStatus.LOOKUP_FAILED)
            logger.info(f"Using public IP: {expected}")

        observed = tuple(await self.resolve(domain))

        logger.info("Verifying domain IP...")
        logger.info(f"Expected IP: {expected}")
        logger.info(f"Actual IP (DNS): {', '.join(observed) or '<none>'}")

        if not observed:
            logger.error(f"Domain {domain} did not resolve to any address")
            return VerificationResult(domain, expected, observed, VerificationStatus.LOOKUP_FAILED)

        if observed == (expected,):
            logger.info(f"Domain IP verification successful: {domain} -> {expected}")
            return VerificationResult(domain, expected, observed, VerificationStatus.VERIFIED)

        logger.error(f"Domain IP mismatch: {domain} -> {', '.join(observed)} (expected {expected})")
        return VerificationResult(domain, expected, observed, VerificationStatus.MISMATCH)
