"""
Reverse proxy (nginx) process control.

Starts nginx in the foreground as a child process, validates and reloads its
configuration through nginx's own command line, and shuts it down
gracefully. A proxy that is already running (started outside this process)
is adopted instead of started twice.
"""

import asyncio
import logging
import signal
from enum import Enum
from pathlib import Path

import psutil

from .commands import run_command
from .config import Config
from .errors import ProxyvisorError

logger = logging.getLogger(__name__)


class StartResult(Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


class ProxyController:
    """Manages the nginx process."""

    def __init__(self, config: Config):
        self.config = config
        self._process: asyncio.subprocess.Process | None = None
        self._adopted: list[psutil.Process] = []

    @property
    def process_name(self) -> str:
        return Path(self.config.nginx_bin).name

    @property
    def pid(self) -> int | None:
        if self._process is not None and self._process.returncode is None:
            return self._process.pid
        return None

    def find_running(self) -> list[psutil.Process]:
        """Find processes whose executable name matches the proxy's."""
        found = []
        for proc in psutil.process_iter(["name"]):
            if proc.info["name"] == self.process_name:
                found.append(proc)
        return found

    def is_running(self) -> bool:
        if self.pid is not None:
            return True
        return bool(self.find_running())

    async def start(self) -> StartResult:
        """
        Start nginx in the foreground.

        Returns ALREADY_RUNNING without doing anything when an nginx process
        is already active.
        """
        if self.pid is not None:
            logger.info("Nginx is already running.")
            return StartResult.ALREADY_RUNNING

        running = self.find_running()
        if running:
            logger.info(f"Nginx is already running (PID {running[0].pid}).")
            self._adopted = running
            return StartResult.ALREADY_RUNNING

        logger.info("Starting Nginx...")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.nginx_bin,
                "-g",
                "daemon off;",
                start_new_session=True,
            )
        except OSError as e:
            raise ProxyvisorError(f"Failed to start Nginx: {e}") from e

        logger.info(f"Nginx started with PID {self._process.pid}")
        return StartResult.STARTED

    async def wait(self) -> int:
        """Block until the proxy exits and return its exit code."""
        if self._process is not None:
            return await self._process.wait()

        alive = list(self._adopted)
        gone = []
        while alive:
            gone, alive = await asyncio.to_thread(psutil.wait_procs, alive, timeout=1)
        codes = [proc.returncode for proc in gone if getattr(proc, "returncode", None) is not None]
        return codes[0] if codes else 0

    async def validate(self) -> tuple[bool, str]:
        """
        Run nginx's configuration check.

        Returns:
            Tuple of (valid, nginx output)
        """
        logger.info("Checking Nginx configuration...")
        ok, output = await run_command(
            [self.config.nginx_bin, "-t"], self.config.proxy_command_timeout
        )
        if ok:
            logger.info("Nginx configuration is valid.")
        else:
            logger.error(f"Invalid Nginx configuration: {output}")
        return ok, output

    async def reload(self) -> tuple[bool, str]:
        """
        Ask nginx to reload its configuration gracefully.

        A rejected reload leaves the running process on its previous
        configuration; the failure is only reported.

        Returns:
            Tuple of (success, message)
        """
        logger.info("Reloading Nginx...")
        ok, output = await run_command(
            [self.config.nginx_bin, "-s", "reload"], self.config.proxy_command_timeout
        )
        if ok:
            logger.info("Nginx reloaded successfully.")
            return True, "Nginx reloaded"

        logger.error(f"Failed to reload Nginx. Error: {output}")
        return False, output or "nginx -s reload failed"

    async def stop(self, timeout: float = None) -> None:
        """
        Shut nginx down gracefully (SIGQUIT), force-killing it after timeout.

        Adopted processes that this supervisor did not start are left alone.
        """
        if timeout is None:
            timeout = self.config.shutdown_grace

        process = self._process
        if process is None or process.returncode is not None:
            if self._adopted:
                logger.info("Leaving externally started Nginx running")
            return

        logger.info("Stopping Nginx...")
        try:
            process.send_signal(signal.SIGQUIT)
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Nginx did not stop gracefully, forcing kill")
            self._kill(process)
            await process.wait()
        except asyncio.CancelledError:
            # Never leave nginx behind in its own session
            logger.warning("Nginx stop interrupted, forcing kill")
            self._kill(process)
            raise

        logger.info(f"Nginx stopped with exit code {process.returncode}")

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
