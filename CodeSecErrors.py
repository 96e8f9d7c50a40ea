"""CodeSecErrors.py -- Exception taxonomy shared by every pipeline component.

Classes
-------
CodeSecError
    Base class; the runner catches this (and anything else) at top level.
ToolExecutionError
    The external scanner CLI exited non-zero or could not be spawned.
MalformedReportError
    A result or config file (SARIF, LW-JSON, patch summary, YAML) could not be parsed.
PatchSummaryFormatError
    The patch summary no longer matches the grammar PatchSummary.py expects.
MissingInputError
    A required input or environment variable is absent.
GitOperationError
    A branch, commit or push step failed.
ApiError
    The source-control host rejected a request.
"""

from __future__ import annotations

from typing import Optional


class CodeSecError(Exception):
    """Base class for all errors raised by the CodeSec action."""


class ToolExecutionError(CodeSecError):
    def __init__(
        self,
        command: list[str],
        exit_code: Optional[int],
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout or "").strip()
        status = "could not be started" if exit_code is None else f"exited with code {exit_code}"
        message = f"Command '{' '.join(command)}' {status}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class MalformedReportError(CodeSecError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed report {path}: {reason}")


class PatchSummaryFormatError(MalformedReportError):
    """The patch summary document shape changed."""


class MissingInputError(CodeSecError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Required input or environment variable '{name}' is not set")


class GitOperationError(CodeSecError):
    pass


class ApiError(CodeSecError):
    def __init__(self, action: str, status: Optional[int] = None, detail: str = "") -> None:
        self.action = action
        self.status = status
        self.detail = detail
        message = f"GitHub API call failed while trying to {action}"
        if status is not None:
            message += f" (HTTP {status})"
        if detail:
            message += f": {detail}"
        super().__init__(message)
