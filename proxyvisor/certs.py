"""
Certificate lifecycle.

Decides, on demand, whether the managed certificate has to be issued,
renewed, or left alone, and drives the ACME client accordingly:

    ABSENT                 no certificate on disk            -> issue
    INVALID_AUTHENTICATOR  renewal metadata names another
                           authenticator                     -> purge metadata, issue
    EXPIRING_SOON          days to expiry <= threshold       -> renew
    VALID                  otherwise                         -> nothing

Issuance is gated on domain verification. A running proxy is reloaded after
every successful issuance or renewal; a failed renewal leaves the current
certificate in service until the next check.
"""

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from cryptography import x509

from .acme import AcmeClient
from .config import ACME_AUTHENTICATOR, Config
from .errors import IssuanceFailure, RenewalFailure, VerificationFailure
from .verify import DomainVerifier, VerificationStatus

logger = logging.getLogger(__name__)

_AUTHENTICATOR_RE = re.compile(r"^\s*authenticator\s*=\s*(\S+)\s*$", re.MULTILINE)


class CertState(Enum):
    ABSENT = "absent"
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    INVALID_AUTHENTICATOR = "invalid_authenticator"


@dataclass(frozen=True)
class CertificateStatus:
    """Snapshot of the certificate on disk."""

    domain: str
    state: CertState
    not_after: datetime | None = None
    days_left: int | None = None
    authenticator: str | None = None

    @property
    def expired(self) -> bool:
        return self.days_left is not None and self.days_left < 0


def read_not_after(cert_path: Path) -> datetime:
    """Read the notAfter timestamp (UTC) of a PEM certificate."""
    cert = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
    return cert.not_valid_after_utc


def read_authenticator(renewal_path: Path) -> str | None:
    """Return the authenticator named in a certbot renewal file, or None."""
    try:
        text = Path(renewal_path).read_text()
    except FileNotFoundError:
        return None
    match = _AUTHENTICATOR_RE.search(text)
    return match.group(1) if match else ""


def days_until(not_after: datetime, now: datetime) -> int:
    """Whole days from now until not_after, rounded down."""
    return math.floor((not_after - now).total_seconds() / 86400)


class CertificateManager:
    """Evaluates the certificate state and issues or renews through the ACME client."""

    def __init__(
        self,
        config: Config,
        acme: AcmeClient = None,
        verifier: DomainVerifier = None,
        proxy=None,
    ):
        self.config = config
        self.acme = acme or AcmeClient(config)
        self.verifier = verifier or DomainVerifier(config)
        self.proxy = proxy

    def evaluate(self, now: datetime = None) -> CertificateStatus:
        """Classify the certificate on disk without changing anything."""
        if now is None:
            now = datetime.now(timezone.utc)

        domain = self.config.certbot_domain
        cert_path = self.config.certificate_path

        if not cert_path.is_file():
            return CertificateStatus(domain, CertState.ABSENT)

        authenticator = read_authenticator(self.config.renewal_config_path)
        if authenticator is None:
            logger.info(f"Renewal config not found for {self.config.fqdn}")
        elif authenticator != ACME_AUTHENTICATOR:
            return CertificateStatus(
                domain, CertState.INVALID_AUTHENTICATOR, authenticator=authenticator
            )

        try:
            not_after = read_not_after(cert_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read certificate {cert_path}: {e}")
            return CertificateStatus(domain, CertState.ABSENT, authenticator=authenticator)

        days_left = days_until(not_after, now)
        if days_left <= self.config.renewal_threshold_days:
            state = CertState.EXPIRING_SOON
        else:
            state = CertState.VALID
        return CertificateStatus(domain, state, not_after, days_left, authenticator)

    def purge_renewal_config(self) -> bool:
        """Delete renewal metadata that does not use the expected authenticator."""
        path = self.config.renewal_config_path
        authenticator = read_authenticator(path)
        if authenticator is None or authenticator == ACME_AUTHENTICATOR:
            return False
        path.unlink(missing_ok=True)
        logger.info(f"Removed invalid renewal config for {self.config.fqdn}")
        return True

    async def check(self, reload_proxy: bool = True, now: datetime = None) -> CertificateStatus:
        """
        Evaluate the certificate and act on the result.

        Args:
            reload_proxy: Reload the proxy after a successful issuance or renewal
            now: Reference time for the expiry computation

        Returns:
            The status that was evaluated before acting.

        Raises:
            VerificationFailure, IssuanceFailure: issuing a missing certificate failed.
            RenewalFailure: renewing an expiring certificate failed.
        """
        status = self.evaluate(now)

        if status.state is CertState.ABSENT:
            await self.issue()
            await self._reload(reload_proxy)
        elif status.state is CertState.INVALID_AUTHENTICATOR:
            logger.warning(
                f"Certificate for {status.domain} was obtained with authenticator "
                f"{status.authenticator or '<unknown>'}; re-issuing with {ACME_AUTHENTICATOR}"
            )
            self.purge_renewal_config()
            await self.issue()
            await self._reload(reload_proxy)
        elif status.state is CertState.EXPIRING_SOON:
            logger.warning(f"Certificate expires in {status.days_left} days. Renewing...")
            await self.renew(reload_proxy=reload_proxy)
        else:
            logger.info(f"Certificate valid for {status.days_left} days. Skipping renewal.")

        return status

    async def issue(self) -> None:
        """
        Obtain a new certificate after verifying the domain points at us.

        Raises:
            VerificationFailure: the domain does not resolve to the expected address.
            IssuanceFailure: certbot failed.
        """
        logger.info("Generating new certificate...")
        self.purge_renewal_config()

        result = await self.verifier.verify(self.config.fqdn, self.config.floating_ip or None)
        if result.status is VerificationStatus.LOOKUP_FAILED:
            raise VerificationFailure(
                f"Domain IP verification failed for {self.config.fqdn}: address lookup failed",
                result=result,
                suggestion="check connectivity and DNS, or set FLOATING_IP to the expected address",
            )
        if not result.match:
            raise VerificationFailure(
                f"Domain IP verification failed: {self.config.fqdn} -> "
                f"{result.observed_display} (expected {result.expected})",
                result=result,
                suggestion=f"ensure {self.config.fqdn} points to {result.expected} in your DNS settings",
            )

        ok, output = await self.acme.certonly(self.config.certbot_email, self.config.certbot_domain)
        if not ok:
            logger.error(f"certbot output: {output}")
            raise IssuanceFailure(
                f"Failed to generate certificate for {self.config.certbot_domain}",
                suggestion="check Certbot logs",
            )
        logger.info("Certificate generated successfully.")

    async def renew(self, reload_proxy: bool = True) -> None:
        """
        Force renewal of the managed certificates and reload the proxy.

        A failed proxy reload after a successful renewal is logged only: the
        new certificate is picked up by the next successful reload.

        Raises:
            RenewalFailure: certbot failed.
        """
        logger.info("Renewing certificate...")
        self.purge_renewal_config()

        ok, output = await self.acme.renew_all()
        if not ok:
            logger.error(f"certbot output: {output}")
            raise RenewalFailure("Failed to renew certificate", suggestion="check Certbot logs")
        logger.info("Certificate renewed successfully.")

        await self._reload(reload_proxy)

    async def _reload(self, reload_proxy: bool) -> None:
        if reload_proxy and self.proxy is not None:
            await self.proxy.reload()
