# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class MatrixCIError(Exception):
    """Base exception for matrixci."""


# ----------------------------------------------------------------------
# Build-time errors (pipeline never starts)
# ----------------------------------------------------------------------

class ConfigError(MatrixCIError):
    """Workflow definition is invalid. Fatal before any job is dispatched."""


class DuplicateJob(ConfigError):
    def __init__(self, names: List[str]):
        self.names = names
        super().__init__(f"Duplicate job names found: {names}")


class UnknownDependency(ConfigError):
    def __init__(self, job: str, needs: str, known: List[str], reason: str = "missing"):
        self.job = job
        self.needs = needs
        self.known = known
        if reason == "forward":
            msg = f"Job '{job}' needs '{needs}', which is declared after it"
        else:
            msg = f"Job '{job}' needs missing job '{needs}'. Known jobs: {known}"
        super().__init__(msg)


class CyclicDependency(ConfigError):
    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")


class MatrixError(ConfigError):
    """Malformed matrix (empty axis, non-list axis, bad include/exclude entry)."""


class UnknownAction(ConfigError):
    def __init__(self, ref: str, job: str, step: str):
        self.ref = ref
        self.job = job
        self.step = step
        super().__init__(f"[{job}] step '{step}' uses unknown action '{ref}'")


class WorkflowLoadError(ConfigError):
    """Workflow file could not be loaded or did not define any jobs."""


# ----------------------------------------------------------------------
# Run-time errors
# ----------------------------------------------------------------------

class ConditionError(MatrixCIError):
    """Malformed guard expression. Callers degrade it to false."""


@dataclass
class StepFailure(MatrixCIError):
    """
    Structured step failure with enough context for
    clean CLI output and debugging without full tracebacks.
    """
    job: str
    step: str
    message: str
    cmd: Optional[str] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"StepFailure: {self.message}", f"job={self.job}", f"step={self.step}"]
        if self.cmd:
            lines.append(f"cmd={self.cmd}")
        if self.exit_code is not None:
            lines.append(f"exit_code={self.exit_code}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class DependencyFailure(MatrixCIError):
    """Reason attached to instances skipped because an upstream instance did not succeed."""
    instance: str
    upstream: str
    upstream_status: str

    def __str__(self) -> str:
        return f"{self.instance} skipped: dependency {self.upstream} {self.upstream_status}"


class ExternalServiceError(MatrixCIError):
    """Artifact store, signing or coverage service failed. Always best-effort."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class StepCancelled(MatrixCIError):
    """Raised inside an instance when pipeline cancellation interrupts a step."""
