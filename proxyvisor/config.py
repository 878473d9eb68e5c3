"""
Configuration for the proxy supervisor.

Loads settings from environment variables (and an optional .env file) into a
single immutable Config object that is built once at startup and handed to
every component.
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

from .errors import ConfigurationError

# Authenticator recorded by certbot in the renewal metadata for DNS-01 via Cloudflare
ACME_AUTHENTICATOR = "dns-cloudflare"

DEFAULT_IP_DISCOVERY_URLS = ("https://ifconfig.me/ip", "https://ifconfig.co/ip")

REQUIRED_VARS = ("FQDN", "SERVICE_NAME", "SERVICE_PORT")
PRODUCTION_VARS = ("CERTBOT_EMAIL", "CERTBOT_DOMAIN", "CLOUDFLARE_EMAIL", "CLOUDFLARE_API_KEY")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


class RunMode(Enum):
    LOCAL = "local"
    PRODUCTION = "production"


def parse_duration(value: str) -> float:
    """Parse a sleep-style duration ("90", "45s", "30m", "12h", "3d") into seconds."""
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigurationError(
            f"Invalid duration: {value!r}",
            suggestion="use a number optionally followed by s, m, h or d",
        )
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit]


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() == "true"


def _parse_number(environ: Mapping[str, str], key: str, default, cast=float):
    raw = environ.get(key, "")
    if raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Config:
    """Proxy supervisor configuration."""

    # Proxied service
    fqdn: str = ""
    service_name: str = ""
    service_port: int | None = None
    run_mode: RunMode = RunMode.PRODUCTION

    # ACME / DNS provider
    certbot_email: str = ""
    certbot_domain: str = ""
    cloudflare_email: str = ""
    cloudflare_api_key: str = ""
    floating_ip: str = ""
    ip_discovery_urls: tuple[str, ...] = DEFAULT_IP_DISCOVERY_URLS
    ip_discovery_timeout: float = 5.0
    dns_timeout: float = 5.0
    acme_timeout: float = 600.0

    # Renewal
    renewal_interval: float = 3 * 86400.0
    renewal_retry_interval: float = 3600.0
    renewal_threshold_days: int = 30

    # Paths
    nginx_template: Path = Path("/etc/nginx/conf.d/default.conf.template")
    nginx_conf: Path = Path("/etc/nginx/conf.d/default.conf")
    letsencrypt_dir: Path = Path("/etc/letsencrypt")
    cloudflare_ini: Path = Path("/etc/cloudflare.ini")

    # External programs
    nginx_bin: str = "nginx"
    certbot_bin: str = "certbot"
    proxy_command_timeout: float = 30.0

    # Upstream readiness
    readiness_attempts: int = 30
    readiness_interval: float = 5.0
    readiness_timeout: float = 1.0

    # Background activities
    watch_interval: float = 2.0
    shutdown_grace: float = 10.0

    # Optional OS user
    custom_user: bool = False
    custom_username: str = ""
    custom_uid: str = ""

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None
    log_max_bytes: int = 10 * 1024 * 1024  # 10MB
    log_backup_count: int = 5

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        """Build the configuration from an environment mapping (os.environ by default)."""
        if environ is None:
            load_dotenv()
            environ = os.environ

        get = environ.get

        port = _parse_number(environ, "SERVICE_PORT", None, int)
        if port is not None and not 0 < port < 65536:
            raise ConfigurationError(f"SERVICE_PORT out of range: {port}")

        urls = tuple(
            url.strip() for url in get("IP_DISCOVERY_URLS", "").split(",") if url.strip()
        ) or DEFAULT_IP_DISCOVERY_URLS
        # Only a primary and a single fallback endpoint are consulted
        urls = urls[:2]

        renewal_interval = parse_duration(get("RENEWAL_INTERVAL") or "3d")
        retry_interval = parse_duration(get("RENEWAL_RETRY_INTERVAL") or "1h")

        log_file = get("LOG_FILE") or None

        return cls(
            fqdn=get("FQDN", "").strip(),
            service_name=get("SERVICE_NAME", "").strip(),
            service_port=port,
            run_mode=RunMode.LOCAL if _parse_bool(get("LOCAL")) else RunMode.PRODUCTION,
            certbot_email=get("CERTBOT_EMAIL", "").strip(),
            certbot_domain=get("CERTBOT_DOMAIN", "").strip(),
            cloudflare_email=get("CLOUDFLARE_EMAIL", "").strip(),
            cloudflare_api_key=get("CLOUDFLARE_API_KEY", "").strip(),
            floating_ip=get("FLOATING_IP", "").strip(),
            ip_discovery_urls=urls,
            ip_discovery_timeout=_parse_number(environ, "IP_DISCOVERY_TIMEOUT", 5.0),
            dns_timeout=_parse_number(environ, "DNS_TIMEOUT", 5.0),
            acme_timeout=_parse_number(environ, "ACME_TIMEOUT", 600.0),
            renewal_interval=renewal_interval,
            renewal_retry_interval=min(retry_interval, renewal_interval),
            renewal_threshold_days=_parse_number(environ, "CERT_RENEWAL_THRESHOLD", 30, int),
            nginx_template=Path(get("NGINX_TEMPLATE") or "/etc/nginx/conf.d/default.conf.template"),
            nginx_conf=Path(get("NGINX_CONF") or "/etc/nginx/conf.d/default.conf"),
            letsencrypt_dir=Path(get("LETSENCRYPT_DIR") or "/etc/letsencrypt"),
            cloudflare_ini=Path(get("CLOUDFLARE_INI") or "/etc/cloudflare.ini"),
            nginx_bin=get("NGINX_BIN") or "nginx",
            certbot_bin=get("CERTBOT_BIN") or "certbot",
            proxy_command_timeout=_parse_number(environ, "PROXY_COMMAND_TIMEOUT", 30.0),
            readiness_attempts=_parse_number(environ, "READINESS_ATTEMPTS", 30, int),
            readiness_interval=_parse_number(environ, "READINESS_INTERVAL", 5.0),
            readiness_timeout=_parse_number(environ, "READINESS_TIMEOUT", 1.0),
            watch_interval=_parse_number(environ, "WATCH_INTERVAL", 2.0),
            shutdown_grace=_parse_number(environ, "SHUTDOWN_GRACE", 10.0),
            custom_user=_parse_bool(get("CUSTOM_USER")),
            custom_username=get("CUSTOM_USERNAME", "").strip(),
            custom_uid=get("CUSTOM_UID", "").strip(),
            log_level=(get("LOG_LEVEL") or "INFO").upper(),
            log_file=Path(log_file) if log_file else None,
            log_max_bytes=_parse_number(environ, "LOG_MAX_BYTES", 10 * 1024 * 1024, int),
            log_backup_count=_parse_number(environ, "LOG_BACKUP_COUNT", 5, int),
        )

    @property
    def is_local(self) -> bool:
        return self.run_mode is RunMode.LOCAL

    def missing_vars(self, production: bool | None = None) -> list[str]:
        """Return the names of required variables that are unset or empty."""
        if production is None:
            production = not self.is_local

        values = {
            "FQDN": self.fqdn,
            "SERVICE_NAME": self.service_name,
            "SERVICE_PORT": self.service_port,
            "CERTBOT_EMAIL": self.certbot_email,
            "CERTBOT_DOMAIN": self.certbot_domain,
            "CLOUDFLARE_EMAIL": self.cloudflare_email,
            "CLOUDFLARE_API_KEY": self.cloudflare_api_key,
        }
        names = REQUIRED_VARS + (PRODUCTION_VARS if production else ())
        return [name for name in names if values[name] in (None, "")]

    def validate(self, production: bool | None = None) -> None:
        """
        Check that every required variable is present.

        Production-only variables are checked unless running in local mode
        (or when `production` says otherwise).

        Raises:
            ConfigurationError: listing every missing variable at once.
        """
        missing = self.missing_vars(production)
        if missing:
            raise ConfigurationError(f"Missing required variables: {' '.join(missing)}")

    @property
    def template_variables(self) -> dict[str, str]:
        """The fixed set of variables substituted into the proxy template."""
        return {
            "FQDN": self.fqdn,
            "SERVICE_NAME": self.service_name,
            "SERVICE_PORT": "" if self.service_port is None else str(self.service_port),
        }

    @property
    def certificate_path(self) -> Path:
        return self.letsencrypt_dir / "live" / self.certbot_domain / "cert.pem"

    @property
    def renewal_config_path(self) -> Path:
        return self.letsencrypt_dir / "renewal" / f"{self.fqdn}.conf"
