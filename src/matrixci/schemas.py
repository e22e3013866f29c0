# schemas.py
"""
Pydantic models for workflows supplied as plain mappings (e.g. JSON).

Field names follow the usual workflow spelling (`runs-on`,
`continue-on-error`, `with`, `if`, ...). Keys the engine does not use are
ignored. `WorkflowSpec.to_workflow()` produces the engine's dataclasses.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .model import Job, Matrix, Step, TriggerFilter, Workflow


class _Spec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _stringify(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


class StepSpec(_Spec):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    env: Dict[str, Any] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")

    @model_validator(mode="after")
    def _one_of_run_uses(self) -> "StepSpec":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step must set exactly one of 'run' or 'uses'")
        return self

    def to_step(self) -> Step:
        return Step(
            name=self.name or self.run or self.uses or "step",
            run=self.run,
            uses=self.uses,
            id=self.id,
            with_=dict(self.with_),
            if_=_stringify(self.if_),
            continue_on_error=self.continue_on_error,
            env={k: _stringify(v) for k, v in self.env.items()},
            cwd=self.working_directory,
        )


class StrategySpec(_Spec):
    matrix: Optional[Dict[str, Any]] = None
    fail_fast: bool = Field(default=True, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)

    def to_matrix(self) -> Optional[Matrix]:
        if self.matrix is None:
            return None
        raw = dict(self.matrix)
        include = raw.pop("include", []) or []
        exclude = raw.pop("exclude", []) or []
        return Matrix(axes=raw, include=list(include), exclude=list(exclude))


class JobSpec(_Spec):
    name: Optional[str] = None
    runs_on: Optional[str] = Field(default=None, alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    steps: List[StepSpec] = Field(min_length=1)
    env: Dict[str, Any] = Field(default_factory=dict)
    permissions: Dict[str, str] = Field(default_factory=dict)
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    strategy: Optional[StrategySpec] = None
    continue_on_error: bool = Field(default=False, alias="continue-on-error")

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v

    @field_validator("permissions", mode="before")
    @classmethod
    def _permissions_map(cls, v: Any) -> Any:
        # "read-all" / "write-all" shorthand
        if isinstance(v, str):
            return {"*": v}
        return v

    def to_job(self, job_id: str) -> Job:
        strategy = self.strategy or StrategySpec()
        return Job(
            name=job_id,
            display_name=self.name,
            steps=[s.to_step() for s in self.steps],
            needs=list(self.needs),
            matrix=strategy.to_matrix(),
            env={k: _stringify(v) for k, v in self.env.items()},
            permissions=dict(self.permissions),
            if_=_stringify(self.if_),
            fail_fast=strategy.fail_fast,
            max_parallel=strategy.max_parallel,
            continue_on_error=self.continue_on_error,
            runs_on=self.runs_on,
        )


class EventFilterSpec(_Spec):
    paths: Optional[List[str]] = None
    paths_ignore: Optional[List[str]] = Field(default=None, alias="paths-ignore")


class WorkflowSpec(_Spec):
    name: str = "workflow"
    on: Union[str, List[str], Dict[str, Optional[EventFilterSpec]]] = Field(
        default_factory=lambda: ["push", "pull_request"]
    )
    env: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec] = Field(min_length=1)

    def trigger_filter(self) -> TriggerFilter:
        if isinstance(self.on, str):
            return TriggerFilter(events=[self.on])
        if isinstance(self.on, list):
            return TriggerFilter(events=list(self.on))

        paths: Optional[List[str]] = None
        ignore: Optional[List[str]] = None
        for spec in self.on.values():
            if spec is None:
                continue
            if spec.paths is not None:
                paths = (paths or []) + [p for p in spec.paths if p not in (paths or [])]
            if spec.paths_ignore is not None:
                ignore = (ignore or []) + [p for p in spec.paths_ignore if p not in (ignore or [])]
        return TriggerFilter(events=list(self.on), paths=paths, paths_ignore=ignore)

    def to_workflow(self) -> Workflow:
        return Workflow(
            name=self.name,
            jobs=[spec.to_job(job_id) for job_id, spec in self.jobs.items()],
            env={k: _stringify(v) for k, v in self.env.items()},
            on=self.trigger_filter(),
        )
