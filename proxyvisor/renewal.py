"""
Periodic certificate renewal.

Sleeps for the renewal interval, re-evaluates the certificate, and repeats
forever. Certificate failures are logged and retried after the (shorter)
retry interval; the certificate already in service keeps being used.
"""

import asyncio
import logging

from .certs import CertificateManager
from .config import Config
from .errors import IssuanceFailure, RenewalFailure, VerificationFailure

logger = logging.getLogger(__name__)


class RenewalLoop:
    """Background certificate checker."""

    def __init__(self, config: Config, certificates: CertificateManager):
        self.config = config
        self.certificates = certificates
        self.checks = 0
        self.failures = 0

    async def check_once(self) -> bool:
        """Run one certificate check. Returns False if it failed."""
        self.checks += 1
        try:
            await self.certificates.check(reload_proxy=True)
        except (IssuanceFailure, RenewalFailure, VerificationFailure) as e:
            self.failures += 1
            logger.error(f"Certificate check failed: {e}")
            return False
        except OSError as e:
            self.failures += 1
            logger.error(f"Certificate check failed on file access: {e}")
            return False
        return True

    async def run(self) -> None:
        """Main renewal loop. Never returns; cancelled at shutdown."""
        logger.info("Starting certificate auto-renewal process...")
        delay = self.config.renewal_interval

        while True:
            logger.debug(f"Next certificate check in {delay:g} seconds")
            await asyncio.sleep(delay)

            if await self.check_once():
                delay = self.config.renewal_interval
            else:
                delay = self.config.renewal_retry_interval
                logger.warning(f"Retrying certificate check in {delay:g} seconds")
