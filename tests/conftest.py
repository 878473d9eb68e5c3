"""Shared fixtures and fakes for the proxyvisor tests."""

import asyncio
import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from proxyvisor.config import Config, RunMode
from proxyvisor.proxy import StartResult
from proxyvisor.readiness import ProbeResult, ProbeStatus
from proxyvisor.verify import VerificationResult, VerificationStatus

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

TEMPLATE = """\
# Site for ${FQDN}
server {
    listen 80;
    server_name ${FQDN};

    location / {
        proxy_pass http://${SERVICE_NAME}:${SERVICE_PORT};
        proxy_set_header Host $host;
    }
}
"""


def write_certificate(path: Path, not_after: datetime, domain: str = "example.com") -> None:
    """Write a self-signed PEM certificate expiring at not_after."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=90))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cert.public_bytes(Encoding.PEM))


def write_renewal_config(path: Path, authenticator: str = "dns-cloudflare") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "version = 2.11.0\n"
        "archive_dir = /etc/letsencrypt/archive/example.com\n"
        "\n"
        "[renewalparams]\n"
        f"authenticator = {authenticator}\n"
        "server = https://acme-v02.api.letsencrypt.org/directory\n"
    )


class FakeProxy:
    """Stands in for ProxyController without running nginx."""

    def __init__(self, valid: bool = True, reload_ok: bool = True):
        self.valid = valid
        self.reload_ok = reload_ok
        self.starts = 0
        self.reloads = 0
        self.validations = 0
        self.stopped = False
        self.exit_code = 0
        self._exited = asyncio.Event()

    async def start(self) -> StartResult:
        self.starts += 1
        return StartResult.STARTED

    async def wait(self) -> int:
        await self._exited.wait()
        return self.exit_code

    async def stop(self, timeout: float = None) -> None:
        self.stopped = True
        self._exited.set()

    def crash(self, code: int = 1) -> None:
        self.exit_code = code
        self._exited.set()

    async def validate(self) -> tuple[bool, str]:
        self.validations += 1
        if self.valid:
            return True, "nginx: configuration file test is successful"
        return False, "nginx: [emerg] unexpected end of file"

    async def reload(self) -> tuple[bool, str]:
        self.reloads += 1
        return self.reload_ok, "reloaded" if self.reload_ok else "nginx: [error] invalid PID"


class FakeAcme:
    """Records ACME client invocations."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.calls = []

    async def certonly(self, email: str, domain: str) -> tuple[bool, str]:
        self.calls.append(("certonly", email, domain))
        return self.ok, "certbot output"

    async def renew_all(self) -> tuple[bool, str]:
        self.calls.append(("renew",))
        return self.ok, "certbot output"


class FakeVerifier:
    """Returns a fixed verification outcome."""

    def __init__(self, status: VerificationStatus = VerificationStatus.VERIFIED):
        self.status = status
        self.calls = []

    async def verify(self, domain: str, expected_override: str = None) -> VerificationResult:
        self.calls.append((domain, expected_override))
        observed = {
            VerificationStatus.VERIFIED: ("1.2.3.4",),
            VerificationStatus.MISMATCH: ("5.6.7.8",),
            VerificationStatus.LOOKUP_FAILED: (),
        }[self.status]
        return VerificationResult(domain, "1.2.3.4", observed, self.status)


async def ready_probe(host, port, max_attempts, interval, connect_timeout=1.0) -> ProbeResult:
    return ProbeResult(ProbeStatus.READY, 1)


async def timed_out_probe(host, port, max_attempts, interval, connect_timeout=1.0) -> ProbeResult:
    return ProbeResult(ProbeStatus.TIMED_OUT, max_attempts)


@pytest.fixture
def make_config(tmp_path):
    """Build a Config rooted in a temporary directory."""

    def factory(**overrides) -> Config:
        values = dict(
            fqdn="example.com",
            service_name="app",
            service_port=8080,
            run_mode=RunMode.PRODUCTION,
            certbot_email="admin@example.com",
            certbot_domain="example.com",
            cloudflare_email="dns@example.com",
            cloudflare_api_key="secret-key",
            nginx_template=tmp_path / "default.conf.template",
            nginx_conf=tmp_path / "conf.d" / "default.conf",
            letsencrypt_dir=tmp_path / "letsencrypt",
            cloudflare_ini=tmp_path / "cloudflare.ini",
            readiness_attempts=3,
            readiness_interval=0,
            renewal_interval=3600,
            renewal_retry_interval=60,
            watch_interval=0.01,
            shutdown_grace=1,
        )
        values.update(overrides)
        return Config(**values)

    return factory


@pytest.fixture
def template(tmp_path) -> Path:
    path = tmp_path / "default.conf.template"
    path.write_text(TEMPLATE)
    return path


@pytest.fixture
def fake_nginx(tmp_path) -> Path:
    """A shell script that answers like nginx for -t, -s and -g."""
    script = tmp_path / "bin" / "fake-nginx"
    script.parent.mkdir()
    script.write_text(
        "#!/bin/sh\n"
        'dir="$(dirname "$0")"\n'
        'case "$1" in\n'
        '  -t) if [ -f "$dir/invalid" ]; then echo "nginx: [emerg] bad config" >&2; exit 1; fi\n'
        '      echo "nginx: configuration file test is successful" >&2; exit 0 ;;\n'
        '  -s) if [ -f "$dir/reject" ]; then echo "nginx: [error] reload rejected" >&2; exit 1; fi\n'
        '      echo "$2" >> "$dir/signals"; exit 0 ;;\n'
        '  -g) if [ -f "$dir/stubborn" ]; then trap "" QUIT; fi\n'
        '      exec sleep 30 ;;\n'
        "esac\n"
        "exit 2\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script
