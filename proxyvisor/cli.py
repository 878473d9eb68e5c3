"""
Command line entry point.

    proxyvisor [run]        start the proxy and its background activities
    proxyvisor reload       reload the running proxy
    proxyvisor renew        force certificate renewal and reload the proxy
    proxyvisor reconfigure  regenerate the proxy config, reload if it changed
    proxyvisor help         show usage
"""

import argparse
import asyncio
import logging
import sys

from .certs import CertificateManager
from .config import Config
from .errors import ProxyvisorError, ReloadFailure
from .log import setup_logging
from .proxy import ProxyController
from .render import ConfigRenderer
from .supervisor import Supervisor
from .users import ensure_custom_user
from .watcher import reconfigure

logger = logging.getLogger(__name__)

COMMANDS = {
    "run": "Start the normal process (default)",
    "reload": "Reload Nginx configuration",
    "renew": "Generate or renew SSL certificate",
    "reconfigure": "Regenerate Nginx configuration from template and reload if changed",
    "help": "Show this help message",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxyvisor",
        description="Supervise an Nginx reverse proxy and its TLS certificate.",
        epilog="\n".join(f"  {name:<12} {text}" for name, text in COMMANDS.items()),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=list(COMMANDS),
        metavar="COMMAND",
        help="one of: " + ", ".join(COMMANDS),
    )
    return parser


async def cmd_run(config: Config) -> int:
    return await Supervisor(config).run()


async def cmd_reload(config: Config) -> int:
    ok, message = await ProxyController(config).reload()
    if not ok:
        raise ReloadFailure(f"Failed to reload Nginx: {message}")
    return 0


async def cmd_renew(config: Config) -> int:
    config.validate(production=True)
    certificates = CertificateManager(config, proxy=ProxyController(config))
    await certificates.renew(reload_proxy=True)
    return 0


async def cmd_reconfigure(config: Config) -> int:
    config.validate(production=False)
    proxy = ProxyController(config)
    await ensure_custom_user(config)
    _, ok = await reconfigure(ConfigRenderer(config, proxy), proxy)
    if not ok:
        raise ReloadFailure("Nginx configuration updated but the reload was rejected")
    return 0


HANDLERS = {
    "run": cmd_run,
    "reload": cmd_reload,
    "renew": cmd_renew,
    "reconfigure": cmd_reconfigure,
}


def main(argv: list[str] | None = None) -> int:
    """Run a proxyvisor command and return its exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "help":
        parser.print_help()
        return 0

    try:
        config = Config.from_env()
    except ProxyvisorError as e:
        # Logging is not configured yet
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    setup_logging(config)

    try:
        return asyncio.run(HANDLERS[args.command](config))
    except ProxyvisorError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
