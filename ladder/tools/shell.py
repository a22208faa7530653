"""Shell command execution for verification commands.

Runs subprocesses with a timeout and captures stdout/stderr into a
structured result.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional

from ladder.core.exceptions import ShellTimeoutError, ToolError

logger = logging.getLogger("ladder.tools.shell")

DEFAULT_TIMEOUT = 120  # seconds
MAX_OUTPUT_BYTES = 1_048_576


@dataclass
class ShellResult:
    command: str
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.return_code == 0

    def tail(self, max_chars: int = 2000) -> str:
        """Last part of the combined output, for findings."""
        combined = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        return combined[-max_chars:]


def run_command(
    command: str | list[str],
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
    env: Optional[dict[str, str]] = None,
) -> ShellResult:
    """Execute a command with timeout and output capture.

    A string runs through the shell; a list runs directly.

    Raises:
        ShellTimeoutError: If the command exceeds ``timeout``.
        ToolError: If the command cannot be started.
    """
    cmd_str = command if isinstance(command, str) else " ".join(command)
    logger.debug("Running: %s (cwd=%s, timeout=%ss)", cmd_str, cwd, timeout)

    run_env = dict(os.environ)
    if env:
        run_env.update(env)

    try:
        result = subprocess.run(
            command,
            shell=isinstance(command, str),
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=run_env,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning("Command timed out after %ss: %s", timeout, cmd_str)
        raise ShellTimeoutError(f"Command timed out after {timeout}s: {cmd_str}") from e
    except FileNotFoundError as e:
        raise ToolError(f"Command not found: {e}") from e
    except OSError as e:
        raise ToolError(f"Failed to run command: {e}") from e

    stdout = _truncate_output(result.stdout)
    stderr = _truncate_output(result.stderr)
    logger.debug(
        "Command finished: rc=%d stdout=%d chars stderr=%d chars",
        result.returncode, len(stdout), len(stderr),
    )
    return ShellResult(command=cmd_str, return_code=result.returncode, stdout=stdout, stderr=stderr)


def _truncate_output(text: str) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_OUTPUT_BYTES:
        return text
    return encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore") + "\n... [output truncated]"
