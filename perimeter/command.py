"""Synchronous execution of external tool commands."""

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .models import CommandResult

logger = logging.getLogger(__name__)

# Common install locations that are often missing from a service's PATH
SBIN_DIRS = ("/usr/sbin", "/sbin", "/usr/local/sbin", "/usr/bin", "/usr/local/bin")


class CommandRunner:
    """Runs a command to completion and captures its output.

    Never raises: missing binaries, permission errors and timeouts are all
    reported through the returned CommandResult.
    """

    def __init__(self, default_timeout: Optional[float] = 60):
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: List[str],
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        timeout = timeout if timeout is not None else self.default_timeout
        result = CommandResult(command=list(cmd))

        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)

        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
                env=merged_env,
                input=input,
            )
            result.return_code = completed.returncode
            result.stdout = completed.stdout or ""
            result.stderr = completed.stderr or ""
        except subprocess.TimeoutExpired as e:
            # subprocess.run kills the child before re-raising
            result.timed_out = True
            result.error = f"{cmd[0]} timed out after {timeout}s"
            result.stdout = _decode(e.stdout)
            result.stderr = _decode(e.stderr)
            logger.warning(result.error)
        except (OSError, ValueError) as e:
            result.error = f"Failed to run {cmd[0]}: {e}"
            logger.debug(result.error)

        return result

    def which(self, name: str, extra_dirs: Iterable[str] = SBIN_DIRS) -> Optional[Path]:
        """Locate an executable on PATH, then in well-known sbin directories."""
        found = shutil.which(name)
        if found:
            return Path(found)
        for directory in extra_dirs:
            candidate = Path(directory) / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
        return None


def _decode(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
