"""
ACME client wrapper.

Drives certbot with the Cloudflare DNS plugin (DNS-01 challenge). certbot
owns everything under the Let's Encrypt directory; this module only builds
the command lines, writes the DNS credentials file, and reports outcomes.
"""

import logging
import os
from pathlib import Path

from .commands import run_command
from .config import ACME_AUTHENTICATOR, Config

logger = logging.getLogger(__name__)


def write_credentials(path: Path, email: str, api_key: str) -> bool:
    """
    Write the Cloudflare credentials file read by the DNS plugin.

    The file is created with mode 0600 and never overwritten.

    Returns:
        True if the file was written, False if it already existed.
    """
    path = Path(path)
    if path.exists():
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(f"dns_cloudflare_email = {email}\n")
        f.write(f"dns_cloudflare_api_key = {api_key}\n")
    os.chmod(path, 0o600)

    logger.info(f"Wrote DNS credentials to {path}")
    return True


class AcmeClient:
    """Runs certbot for issuance and renewal."""

    def __init__(self, config: Config):
        self.config = config

    def _dns_args(self) -> list[str]:
        return [
            f"--{ACME_AUTHENTICATOR}",
            f"--{ACME_AUTHENTICATOR}-credentials",
            str(self.config.cloudflare_ini),
            "--preferred-challenges",
            "dns-01",
        ]

    def _base_args(self, subcommand: str) -> list[str]:
        return [
            self.config.certbot_bin,
            subcommand,
            "--config-dir",
            str(self.config.letsencrypt_dir),
        ]

    def ensure_credentials(self) -> None:
        """Write the DNS credentials file unless it is already present."""
        write_credentials(
            self.config.cloudflare_ini,
            self.config.cloudflare_email,
            self.config.cloudflare_api_key,
        )

    def certonly_command(self, email: str, domain: str) -> list[str]:
        return (
            self._base_args("certonly")
            + ["-n", "--agree-tos", "-m", email]
            + self._dns_args()
            + ["-d", domain]
        )

    def renew_command(self) -> list[str]:
        return self._base_args("renew") + ["--force-renewal"] + self._dns_args()

    async def certonly(self, email: str, domain: str) -> tuple[bool, str]:
        """Request a new certificate for domain. Returns (success, certbot output)."""
        self.ensure_credentials()
        return await run_command(self.certonly_command(email, domain), self.config.acme_timeout)

    async def renew_all(self) -> tuple[bool, str]:
        """Force renewal of every certificate certbot manages. Returns (success, certbot output)."""
        self.ensure_credentials()
        return await run_command(self.renew_command(), self.config.acme_timeout)
