"""
Proxy configuration rendering.

Generates the nginx configuration from a template by substituting a fixed
allow-list of variables (FQDN, SERVICE_NAME, SERVICE_PORT), the way envsubst
does with an explicit shell-format. Any other `$variable` in the template is
an nginx variable and is left untouched.

The target file is only rewritten when the rendered bytes differ from what
is already on disk, and a rewritten file is checked with `nginx -t` before it
is allowed to stay. A rejected file is rolled back to the previous contents.
"""

import logging
import os
import re
import tempfile
from enum import Enum
from pathlib import Path
from typing import Mapping

from .config import Config
from .errors import ConfigurationError, InvalidConfig

logger = logging.getLogger(__name__)

# ${NAME} or $NAME, with NAME matched greedily like a shell identifier
_VARIABLE_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_COMMENT_LINE_RE = re.compile(r"^[ \t]*#")


class ApplyResult(Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"


def substitute(text: str, variables: Mapping[str, str]) -> str:
    """Replace allow-listed variables in text, passing every other token through."""

    def replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        if name in variables:
            return variables[name]
        return match.group(0)

    return _VARIABLE_RE.sub(replace, text)


def strip_comment_lines(text: str) -> str:
    """Drop lines that only hold a `#` comment."""
    return "".join(
        line for line in text.splitlines(keepends=True) if not _COMMENT_LINE_RE.match(line)
    )


def render(template_path: Path, variables: Mapping[str, str]) -> bytes:
    """
    Render a template with the given variables.

    Comment-only lines are dropped so that editing a comment in the template
    never produces a different configuration.

    Raises:
        ConfigurationError: if the template does not exist or cannot be read.
    """
    template_path = Path(template_path)
    try:
        template = template_path.read_text()
    except FileNotFoundError:
        raise ConfigurationError(
            f"Nginx configuration template not found at: {template_path}",
            suggestion="ensure the template file exists and is accessible",
        ) from None
    except OSError as e:
        raise ConfigurationError(f"Could not read template {template_path}: {e}") from e

    return substitute(strip_comment_lines(template), variables).encode()


def read_current(target_path: Path) -> bytes | None:
    """Return the current contents of target_path, or None if it does not exist."""
    try:
        return Path(target_path).read_bytes()
    except FileNotFoundError:
        return None


def write_atomic(target_path: Path, data: bytes) -> None:
    """Write data to target_path through a temporary file and rename."""
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=target_path.parent, prefix=f".{target_path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        if target_path.exists():
            os.chmod(tmp_path, target_path.stat().st_mode & 0o777)
        else:
            os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, target_path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def apply(rendered: bytes, target_path: Path) -> ApplyResult:
    """Write rendered bytes to target_path unless the file already holds exactly them."""
    if read_current(target_path) == rendered:
        return ApplyResult.UNCHANGED

    write_atomic(target_path, rendered)
    logger.info(f"Wrote Nginx configuration to {target_path}")
    return ApplyResult.APPLIED


class ConfigRenderer:
    """Renders, applies and validates the proxy configuration."""

    def __init__(self, config: Config, proxy):
        self.config = config
        self.proxy = proxy

    def render(self) -> bytes:
        return render(self.config.nginx_template, self.config.template_variables)

    def apply(self, rendered: bytes) -> ApplyResult:
        return apply(rendered, self.config.nginx_conf)

    async def validate(self) -> tuple[bool, str]:
        return await self.proxy.validate()

    async def update(self, force_validate: bool = False) -> ApplyResult:
        """
        Render the template, apply it, and validate the result.

        When validation fails the previous configuration is restored, so the
        proxy never picks up a file it rejected.

        Args:
            force_validate: Validate even when nothing changed (used at
                startup, before the proxy has ever loaded the file)

        Returns:
            ApplyResult.APPLIED if a new configuration was written and
            accepted, ApplyResult.UNCHANGED if the rendered output matched.

        Raises:
            ConfigurationError: the template is missing.
            InvalidConfig: the proxy rejected the rendered configuration.
        """
        logger.info("Generating Nginx configuration...")
        rendered = self.render()
        previous = read_current(self.config.nginx_conf)

        result = self.apply(rendered)
        if result is ApplyResult.UNCHANGED:
            logger.info("Nginx configuration unchanged.")
            if not force_validate:
                return result

        valid, output = await self.validate()
        if valid:
            return result

        if result is ApplyResult.APPLIED:
            self._restore(previous)
        raise InvalidConfig(
            f"Invalid Nginx configuration: {output}",
            suggestion=f"check {self.config.nginx_template} and the environment settings",
        )

    def _restore(self, previous: bytes | None) -> None:
        target = self.config.nginx_conf
        if previous is None:
            target.unlink(missing_ok=True)
            logger.warning(f"Removed rejected configuration {target}")
        else:
            write_atomic(target, previous)
            logger.warning(f"Restored previous configuration at {target}")
