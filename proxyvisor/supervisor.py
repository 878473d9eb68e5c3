"""
Proxy supervisor.

Brings the container up in order and then keeps it running:

    INITIALIZING -> WAITING_FOR_UPSTREAM -> PROVISIONING_CERTIFICATE (production)
      -> CONFIGURING_PROXY -> RUNNING -> TERMINATING

While RUNNING, the proxy process, the renewal loop (production only) and the
template watcher run side by side. The first of them to exit takes the whole
supervisor down, so the container's restart policy can take over instead of
the container limping along without one of its activities. SIGTERM/SIGINT
trigger a graceful shutdown of all three.
"""

import asyncio
import logging
import signal
from enum import Enum

from .certs import CertificateManager
from .config import Config
from .errors import ReadinessTimeout, RenewalFailure
from .jobs import HandleSet
from .proxy import ProxyController
from .readiness import wait_ready
from .render import ConfigRenderer
from .renewal import RenewalLoop
from .users import ensure_custom_user
from .watcher import TemplateWatcher

logger = logging.getLogger(__name__)


class SupervisorState(Enum):
    INITIALIZING = "initializing"
    WAITING_FOR_UPSTREAM = "waiting_for_upstream"
    PROVISIONING_CERTIFICATE = "provisioning_certificate"
    CONFIGURING_PROXY = "configuring_proxy"
    RUNNING = "running"
    TERMINATING = "terminating"


class Supervisor:
    """Runs the proxy, renewal loop and template watcher for one container."""

    def __init__(
        self,
        config: Config,
        proxy: ProxyController = None,
        certificates: CertificateManager = None,
        renderer: ConfigRenderer = None,
        probe=wait_ready,
        install_signal_handlers: bool = True,
    ):
        self.config = config
        self.proxy = proxy or ProxyController(config)
        self.renderer = renderer or ConfigRenderer(config, self.proxy)
        self._certificates = certificates
        self._probe = probe
        self._install_signal_handlers = install_signal_handlers

        self.handles = HandleSet()
        self.state = SupervisorState.INITIALIZING
        self.history = [SupervisorState.INITIALIZING]
        self._stop = asyncio.Event()
        self._watcher: TemplateWatcher | None = None

    @property
    def certificates(self) -> CertificateManager:
        if self._certificates is None:
            self._certificates = CertificateManager(self.config, proxy=self.proxy)
        return self._certificates

    def _transition(self, state: SupervisorState) -> None:
        logger.debug(f"Supervisor state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def request_stop(self) -> None:
        """Ask the supervisor to shut down gracefully."""
        if not self._stop.is_set():
            logger.info("Shutdown requested")
        self._stop.set()

    async def run(self) -> int:
        """
        Start everything and block until shutdown.

        Returns:
            0 after a requested shutdown, 1 if a background activity exited
            on its own.

        Raises:
            ConfigurationError, ReadinessTimeout, VerificationFailure,
            IssuanceFailure, RenewalFailure, InvalidConfig: startup failed.
        """
        self._initialize()
        await self._wait_for_upstream()
        if not self.config.is_local:
            await self._provision_certificate()
        await self._configure_proxy()
        return await self._supervise()

    def _initialize(self) -> None:
        self.config.validate()

        if self.config.is_local:
            logger.info("Running in local mode. Skipping Cloudflare and Certbot checks.")
            logger.info(f"Add '127.0.0.1 {self.config.fqdn}' to your /etc/hosts file for local access.")
        else:
            logger.info("Running in production mode. Cloudflare and Certbot checks will be performed.")

    async def _wait_for_upstream(self) -> None:
        self._transition(SupervisorState.WAITING_FOR_UPSTREAM)

        result = await self._probe(
            self.config.service_name,
            self.config.service_port,
            self.config.readiness_attempts,
            self.config.readiness_interval,
            self.config.readiness_timeout,
        )
        if not result.ready:
            raise ReadinessTimeout(
                f"Service {self.config.service_name} not ready after {result.attempts} attempts",
                suggestion=f"check that {self.config.service_name} listens on port {self.config.service_port}",
            )

    async def _provision_certificate(self) -> None:
        self._transition(SupervisorState.PROVISIONING_CERTIFICATE)

        # The proxy is not running yet, so a renewal must not try to reload it
        try:
            await self.certificates.check(reload_proxy=False)
        except RenewalFailure as e:
            status = self.certificates.evaluate()
            if status.expired:
                raise
            logger.error(
                f"{e}; continuing with the current certificate "
                f"({status.days_left} days left), will retry later"
            )

    async def _configure_proxy(self) -> None:
        self._transition(SupervisorState.CONFIGURING_PROXY)

        await ensure_custom_user(self.config)

        # Baseline taken before rendering so an edit made meanwhile is picked up
        self._watcher = TemplateWatcher(
            self.config.nginx_template,
            self.renderer,
            self.proxy,
            interval=self.config.watch_interval,
        )
        await self.renderer.update(force_validate=True)

    async def _supervise(self) -> int:
        self._transition(SupervisorState.RUNNING)

        await self.proxy.start()
        self.handles.spawn("nginx", self.proxy.wait(), on_stop=self.proxy.stop)

        if not self.config.is_local:
            renewal = RenewalLoop(self.config, self.certificates)
            self.handles.spawn("renewal", renewal.run())

        self.handles.spawn("watcher", self._watcher.run())

        logger.info("Setup completed. Waiting for processes to finish...")
        self._add_signal_handlers()
        try:
            first = await self.handles.wait_first(self._stop)
        finally:
            self._remove_signal_handlers()

        self._transition(SupervisorState.TERMINATING)
        exit_code = 0
        if first is not None:
            logger.error(f"{first.name} exited unexpectedly; shutting down")
            exit_code = 1

        await self.handles.shutdown(self.config.shutdown_grace)
        return exit_code

    def _add_signal_handlers(self) -> None:
        if not self._install_signal_handlers:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)

    def _remove_signal_handlers(self) -> None:
        if not self._install_signal_handlers:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
