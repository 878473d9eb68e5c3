"""
Optional OS user provisioning.

When CUSTOM_USER is enabled, makes sure a user with the configured name and
UID exists so files written by the proxy can be owned by it.
"""

import logging
import pwd

from .commands import run_command
from .config import Config
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def user_exists(username: str) -> bool:
    try:
        pwd.getpwnam(username)
    except KeyError:
        return False
    return True


async def ensure_custom_user(config: Config) -> bool:
    """
    Create the custom user if requested and missing.

    Returns:
        True if a user was created.

    Raises:
        ConfigurationError: CUSTOM_USER is set without a name or UID, or
            useradd failed.
    """
    if not config.custom_user:
        logger.info("CUSTOM_USER is not set to 'true', skipping custom user creation")
        return False

    if not config.custom_username or not config.custom_uid:
        raise ConfigurationError("CUSTOM_USERNAME and CUSTOM_UID must be set when CUSTOM_USER is true")
    if not config.custom_uid.isdigit():
        raise ConfigurationError(f"CUSTOM_UID must be numeric, got {config.custom_uid!r}")

    if user_exists(config.custom_username):
        logger.info(f"User {config.custom_username} already exists, skipping creation")
        return False

    ok, output = await run_command(
        ["useradd", "-u", config.custom_uid, "-U", config.custom_username], timeout=30
    )
    if not ok:
        raise ConfigurationError(f"Could not create user {config.custom_username}: {output}")

    logger.info(f"Custom user {config.custom_username} created with UID {config.custom_uid}")
    return True
