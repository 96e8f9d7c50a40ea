"""CodeSecCli.py -- Thin wrapper around the external scanner CLI.

The scanner, its ``compare`` mode and its ``patch`` mode are a black box
to this project: we build argument lists, run the binary and hand back its
stdout.  Failures are surfaced, never retried.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from CodeSecErrors import ToolExecutionError

logger = logging.getLogger(__name__)


class CodeSecCli:
    """Run sub-commands of the scanner binary.

    Parameters
    ----------
    binary : str
        Executable name or path of the scanner CLI.
    cwd : str | Path | None
        Working directory for every invocation (defaults to the process cwd).
    timeout : int | None
        Seconds before an invocation is abandoned.  ``None`` waits forever.
    env : dict | None
        Environment for the child process (defaults to the inherited one).
    """

    def __init__(
        self,
        binary: str = "lacework",
        cwd: Optional[str | Path] = None,
        timeout: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.binary = binary
        self.cwd = str(cwd) if cwd else None
        self.timeout = timeout
        self.env = env

    def run(self, *args: str) -> str:
        """Execute ``<binary> <args...>`` and return its stdout."""
        command: List[str] = [self.binary, *args]
        logger.info("Running %s", " ".join(command))
        try:
            proc = subprocess.run(
                command,
                cwd=self.cwd,
                env=self.env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ToolExecutionError(
                command,
                None,
                stdout=_as_text(exc.stdout),
                stderr=f"timed out after {self.timeout}s",
            ) from exc
        except OSError as exc:
            raise ToolExecutionError(command, None, stderr=str(exc)) from exc

        if proc.stderr:
            logger.debug("%s stderr:\n%s", self.binary, proc.stderr.rstrip())
        if proc.returncode != 0:
            raise ToolExecutionError(command, proc.returncode, proc.stdout, proc.stderr)
        return proc.stdout


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
