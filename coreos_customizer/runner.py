"""External command execution.

Runs the squashfs-tools binaries with captured output and a timeout,
turning every failure mode into a CommandError.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from coreos_customizer.errors import CommandError

logger = logging.getLogger(__name__)

# Maximum stderr characters carried in error messages
STDERR_TAIL = 2000


def run_command(
    cmd: list[str],
    cwd: Path | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a command and return its completed process.

    Args:
        cmd: Command as list of strings.
        cwd: Optional working directory.
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        CompletedProcess with captured stdout/stderr.

    Raises:
        CommandError: If the command cannot be started, times out,
            or exits with a non-zero status.
    """
    cmd_str = shlex.join(cmd)
    logger.debug("Executing: %s", cmd_str)

    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(
            f"{cmd[0]} timed out after {timeout} seconds",
            exit_code=-1,
            code="timeout",
        ) from e
    except OSError as e:
        raise CommandError(
            f"Failed to execute {cmd[0]}: {e}",
            code="execution_error",
        ) from e

    if result.returncode != 0:
        stderr = result.stderr.strip()[-STDERR_TAIL:]
        logger.error("Command failed with exit code %d: %s", result.returncode, cmd_str)
        raise CommandError(
            f"{cmd[0]} failed with exit code {result.returncode}: {stderr}",
            exit_code=result.returncode,
            stderr=stderr,
        )

    return result


__all__ = ["run_command"]
