# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional

from .model import Job, Matrix, Step, TriggerFilter, Workflow
from .triggers import DEFAULT_PATHS_IGNORE


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: Optional[str] = None,
    cwd: str | None = None,
    if_: Optional[str] = None,
    continue_on_error: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        cwd=cwd,
        if_=if_,
        continue_on_error=continue_on_error,
        env=env or {},
    )


def uses(
    name: str,
    ref: str,
    *,
    id: Optional[str] = None,
    with_: Optional[Dict[str, Any]] = None,
    if_: Optional[str] = None,
    continue_on_error: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a step that invokes a registered action ("name@version")."""
    return Step(
        name=name,
        uses=ref,
        id=id,
        with_=with_ or {},
        if_=if_,
        continue_on_error=continue_on_error,
        env=env or {},
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    **axes: List[Any],
) -> Matrix:
    """
    Example:
        matrix(os=["ubuntu-latest", "windows-latest"], rust=["stable", "nightly"],
               include=[{"os": "windows-latest", "rustflags": "-C target-feature=+crt-static"}])
    """
    return Matrix(axes={k: list(v) for k, v in axes.items()}, include=list(include or []), exclude=list(exclude or []))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Optional[Matrix] = None,
    env: Optional[Dict[str, str]] = None,
    permissions: Optional[Dict[str, str]] = None,
    if_: Optional[str] = None,
    fail_fast: bool = True,
    max_parallel: Optional[int] = None,
    continue_on_error: bool = False,
    runs_on: Optional[str] = None,
    display_name: Optional[str] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")
    if max_parallel is not None and max_parallel < 1:
        raise ValueError(f"job({name!r}): max_parallel must be >= 1")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        matrix=matrix,
        env=dict(env or {}),
        permissions=dict(permissions or {}),
        if_=if_,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        continue_on_error=continue_on_error,
        runs_on=runs_on,
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._permissions: dict[str, str] = {}
        self._matrix: Optional[Matrix] = None
        self._if: Optional[str] = None
        self._fail_fast: bool = True
        self._max_parallel: Optional[int] = None
        self._continue_on_error: bool = False
        self._runs_on: Optional[str] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kw):
        self._steps.append(sh(name, run, cwd=cwd, **kw))
        return self

    def use_action(self, name: str, ref: str, **kw):
        self._steps.append(uses(name, ref, **kw))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_permissions(self, **perms: str):
        self._permissions.update(perms)
        return self

    def with_matrix(self, m: Matrix, *, fail_fast: bool = True, max_parallel: Optional[int] = None):
        self._matrix = m
        self._fail_fast = fail_fast
        self._max_parallel = max_parallel
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def best_effort(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            matrix=self._matrix,
            env=self._env,
            permissions=self._permissions,
            if_=self._if,
            fail_fast=self._fail_fast,
            max_parallel=self._max_parallel,
            continue_on_error=self._continue_on_error,
            runs_on=self._runs_on,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------

def on(
    *events: str,
    paths: Optional[List[str]] = None,
    paths_ignore: Optional[List[str]] = None,
) -> TriggerFilter:
    return TriggerFilter(
        events=list(events or ("push", "pull_request")),
        paths=paths,
        paths_ignore=paths_ignore,
    )


def wf(
    *jobs: Job,
    name: str = "workflow",
    env: Optional[Dict[str, str]] = None,
    on: Optional[TriggerFilter] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Without an explicit trigger filter, pushes and pull requests touching
    only docs/** or markdown files do not start the pipeline.
    """
    trigger = on if on is not None else TriggerFilter(paths_ignore=list(DEFAULT_PATHS_IGNORE))
    return Workflow(name=name, jobs=list(jobs), env=dict(env or {}), on=trigger)


workflow = wf  # backward-compat alias (avoid naming your function workflow if you use it)
