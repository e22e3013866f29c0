# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Step:
    """
    A single unit inside a CI job.

    Exactly one of `run` (inline shell command) or `uses` (action reference,
    "name@version") is set.
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    id: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)
    if_: Optional[str] = None
    continue_on_error: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} must set exactly one of run/uses")

    @property
    def action_ref(self) -> str:
        return self.uses if self.uses is not None else "run"


@dataclass
class Matrix:
    """Named axes plus include/exclude entries. Axis order is declaration order."""
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + optional matrix fan-out.

    `continue_on_error` marks every instance of the job best-effort: its
    terminal status never affects the aggregate pipeline status.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    matrix: Optional[Matrix] = None
    env: Dict[str, str] = field(default_factory=dict)
    permissions: Dict[str, str] = field(default_factory=dict)
    if_: Optional[str] = None
    fail_fast: bool = True
    max_parallel: Optional[int] = None
    continue_on_error: bool = False
    runs_on: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class TriggerFilter:
    """paths / paths-ignore filters declared by the workflow."""
    events: List[str] = field(default_factory=lambda: ["push", "pull_request"])
    paths: Optional[List[str]] = None
    paths_ignore: Optional[List[str]] = None


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    env: Dict[str, str] = field(default_factory=dict)
    on: TriggerFilter = field(default_factory=TriggerFilter)


@dataclass(frozen=True)
class Trigger:
    """The event that started a pipeline."""
    event_name: str
    changed_paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RunContext:
    """
    Process-wide state for one pipeline execution.

    Mappings are wrapped read-only at construction; nothing may change
    once the pipeline starts.
    """
    event_name: str = "push"
    ref: str = "refs/heads/main"
    repository: str = ""
    sha: str = ""
    actor: str = ""
    secrets: Mapping[str, str] = field(default_factory=dict)
    vars: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("secrets", "vars", "env"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    def github_scope(self) -> Dict[str, Any]:
        return {
            "event_name": self.event_name,
            "ref": self.ref,
            "ref_name": self.ref_name,
            "repository": self.repository,
            "sha": self.sha,
            "actor": self.actor,
        }


class InstanceStatus(str, Enum):
    PENDING = "pending"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({
    InstanceStatus.SUCCEEDED,
    InstanceStatus.FAILED,
    InstanceStatus.SKIPPED,
    InstanceStatus.CANCELLED,
})

_ALLOWED = {
    InstanceStatus.PENDING: {InstanceStatus.RUNNABLE, InstanceStatus.SKIPPED, InstanceStatus.CANCELLED},
    InstanceStatus.RUNNABLE: {InstanceStatus.RUNNING, InstanceStatus.SKIPPED, InstanceStatus.CANCELLED},
    InstanceStatus.RUNNING: {InstanceStatus.SUCCEEDED, InstanceStatus.FAILED, InstanceStatus.CANCELLED},
}


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class JobInstance:
    """
    A Job bound to one concrete matrix assignment.

    `id` is "job (v1, v2)". When two assignments of the same job would
    render the same id, expansion switches both to the qualified
    "job (k1='v1', k2=2)" form through `qualified`.
    """
    job: Job
    matrix: Dict[str, Any] = field(default_factory=dict)
    status: InstanceStatus = InstanceStatus.PENDING
    reason: Optional[str] = None
    qualified: bool = False

    @property
    def key(self) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        return self.job.name, tuple(sorted((k, repr(v)) for k, v in self.matrix.items()))

    def _suffix(self) -> str:
        if self.qualified:
            return ", ".join(f"{k}={v!r}" for k, v in self.matrix.items())
        return ", ".join(str(v) for v in self.matrix.values())

    @property
    def id(self) -> str:
        if not self.matrix:
            return self.job.name
        return f"{self.job.name} ({self._suffix()})"

    @property
    def title(self) -> str:
        """Human-facing name: the job's display name when it has one."""
        if not self.job.display_name:
            return self.id
        if not self.matrix:
            return self.job.display_name
        return f"{self.job.display_name} ({self._suffix()})"

    @property
    def best_effort(self) -> bool:
        return self.job.continue_on_error

    def transition(self, new: InstanceStatus, reason: Optional[str] = None) -> None:
        if new not in _ALLOWED.get(self.status, set()):
            raise ValueError(f"{self.id}: illegal transition {self.status.value} -> {new.value}")
        self.status = new
        if reason is not None:
            self.reason = reason


@dataclass
class StepResult:
    name: str
    status: StepStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration: float = 0.0


@dataclass
class InstanceResult:
    instance_id: str
    status: InstanceStatus
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None
