# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class MatrixError(Exception):
    """Base class for every error raised by relaymatrix."""


@dataclass(eq=False)
class InvalidSpec(MatrixError):
    """The matrix definition cannot be expanded. Aborts the run before any job."""
    message: str
    details: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [f"invalid matrix: {self.message}"]
        lines.extend(f"  {d}" for d in self.details)
        return "\n".join(lines)


@dataclass(eq=False)
class EnvironmentUnavailable(MatrixError):
    """An environment identifier could not be resolved. Fatal for one job only."""
    ref: str
    message: str
    package: Optional[str] = None

    def __str__(self) -> str:
        where = f" (package {self.package})" if self.package else ""
        return f"environment {self.ref} unavailable{where}: {self.message}"


@dataclass(eq=False)
class CaseTimeout(MatrixError):
    case: str
    timeout: float

    def __str__(self) -> str:
        return f"case '{self.case}' timed out after {self.timeout:g}s"


@dataclass(eq=False)
class CaseFailure(MatrixError):
    case: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        msg = f"case '{self.case}' failed (exit={self.exit_code})"
        if self.output:
            msg = f"{msg}\n{self.output}"
        return msg


@dataclass(eq=False)
class PrepareFailed(MatrixError):
    command: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"prepare step failed (exit={self.exit_code}): {self.command}"


class RunCancelled(MatrixError):
    """Raised inside workers once the run's cancellation token is set."""

    def __init__(self, reason: str = "run cancelled"):
        super().__init__(reason)
        self.reason = reason
