"""
Bounded execution of external programs (nginx, certbot, useradd).
"""

import asyncio
import logging
import shlex
import subprocess

logger = logging.getLogger(__name__)


async def run_command(cmd: list[str], timeout: float) -> tuple[bool, str]:
    """
    Run a command in a worker thread with a hard timeout.

    Returns:
        Tuple of (success, combined stdout/stderr output or error message)
    """
    logger.debug(f"Running: {shlex.join(cmd)}")
    try:
        result = await asyncio.to_thread(
            subprocess.run,
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return False, f"{cmd[0]} timed out after {timeout:g} seconds"
    except FileNotFoundError:
        return False, f"{cmd[0]} not found"
    except OSError as e:
        return False, f"Could not run {cmd[0]}: {e}"

    output = "\n".join(part.strip() for part in (result.stdout, result.stderr) if part and part.strip())
    return result.returncode == 0, output
