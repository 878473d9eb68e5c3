"""
Template change watcher.

Polls the template file and, when it changes, re-renders the proxy
configuration and reloads the proxy. A reload only happens when the rendered
output actually differs from the active file, so touching the template or
editing a comment never causes a reload.
"""

import asyncio
import logging
import os
from pathlib import Path

from .errors import ConfigurationError, InvalidConfig
from .render import ApplyResult, ConfigRenderer

logger = logging.getLogger(__name__)


async def reconfigure(renderer: ConfigRenderer, proxy) -> tuple[ApplyResult, bool]:
    """
    Render, apply and validate the configuration; reload the proxy on a real change.

    Returns:
        Tuple of (apply result, reload success). Reload success is True when
        no reload was needed.

    Raises:
        ConfigurationError: the template is missing.
        InvalidConfig: the proxy rejected the new configuration (already rolled back).
    """
    result = await renderer.update()
    if result is ApplyResult.UNCHANGED:
        logger.info("Nginx configuration unchanged. Not reloading.")
        return result, True

    logger.info("Nginx configuration updated successfully. Reloading...")
    ok, _ = await proxy.reload()
    return result, ok


def _signature(path: Path) -> tuple[int, int] | None:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return st.st_mtime_ns, st.st_size


class TemplateWatcher:
    """Watches the template file and reconfigures the proxy on change."""

    def __init__(self, template_path: Path, renderer: ConfigRenderer, proxy, interval: float = 2.0):
        self.template_path = Path(template_path)
        self.renderer = renderer
        self.proxy = proxy
        self.interval = interval
        self.reloads = 0
        self._last = _signature(self.template_path)

    async def poll_once(self) -> bool:
        """
        Check the template once and reconfigure if it changed.

        Returns:
            True if the template changed since the previous poll.
        """
        current = _signature(self.template_path)
        if current == self._last:
            return False
        self._last = current

        if current is None:
            logger.warning(f"Template {self.template_path} disappeared; keeping current configuration")
            return True

        logger.info(f"Template {self.template_path} changed")
        try:
            result, ok = await reconfigure(self.renderer, self.proxy)
        except (ConfigurationError, InvalidConfig, OSError) as e:
            logger.error(f"Failed to update Nginx configuration. Not reloading. {e}")
            return True

        if result is ApplyResult.APPLIED and ok:
            self.reloads += 1
        return True

    async def run(self) -> None:
        """Main watch loop. Never returns; cancelled at shutdown."""
        logger.info(f"Watching {self.template_path} for changes")
        while True:
            await asyncio.sleep(self.interval)
            await self.poll_once()
