# executor.py
from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .actions import Action, ActionContext, step_inputs
from .conditions import evaluate_condition, interpolate
from .errors import ConditionError, ExternalServiceError, StepCancelled, StepFailure
from .model import InstanceResult, InstanceStatus, JobInstance, RunContext, Step, StepResult, StepStatus
from .ui.console import get_console

logger = logging.getLogger(__name__)

_RUNNER_OS = (("windows", "Windows"), ("macos", "macOS"), ("ubuntu", "Linux"), ("linux", "Linux"))


def runner_os(label: Any) -> str:
    text = str(label or "").lower()
    for needle, name in _RUNNER_OS:
        if needle in text:
            return name
    return ""


def base_scope(instance: JobInstance, run_ctx: RunContext) -> Dict[str, Any]:
    """Expression scope shared by job-level guards and steps."""
    scope: Dict[str, Any] = {
        "github": run_ctx.github_scope(),
        "matrix": dict(instance.matrix),
        "secrets": run_ctx.secrets,
        "vars": run_ctx.vars,
        "env": dict(run_ctx.env),
        "steps": {},
    }
    runs_on = instance.job.runs_on
    if runs_on is not None:
        try:
            runs_on = interpolate(runs_on, scope)
        except ConditionError:
            runs_on = None
    scope["runner"] = {"os": runner_os(runs_on), "label": runs_on or ""}
    return scope


def _interpolate_env(env: Mapping[str, str], scope: Mapping[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in env.items():
        value = interpolate(v, scope)
        out[k] = "" if value is None else str(value)
    return out


class StepExecutor:
    """
    Runs one instance's steps strictly in declared order.

    - failing step, no continue_on_error -> instance FAILED, rest SKIPPED
    - failing step with continue_on_error -> recorded, execution continues
    - ExternalServiceError is always best-effort
    - step outputs are visible to later steps of the same instance only
    """

    def __init__(
        self,
        actions: Mapping[Tuple[str, int], Action],
        run_ctx: RunContext,
        *,
        workdir: str | Path = ".",
        cancel_event: Optional[threading.Event] = None,
        inherit_env: bool = True,
    ):
        self.actions = actions
        self.run_ctx = run_ctx
        self.workdir = Path(workdir).resolve()
        self.cancel_event = cancel_event or threading.Event()
        self.inherit_env = inherit_env

    def run(self, instance: JobInstance) -> InstanceResult:
        console = get_console()
        job = instance.job
        console.print_instance_start(instance.id, instance.title)

        scope = base_scope(instance, self.run_ctx)
        try:
            job_env = _interpolate_env(job.env, scope)
        except ConditionError as e:
            return InstanceResult(instance.id, InstanceStatus.FAILED, error=f"job env: {e}")
        scope["env"].update(job_env)

        results = []
        failed: Optional[str] = None
        cancelled = False

        for idx, step in enumerate(job.steps):
            if failed is not None or cancelled:
                results.append(StepResult(step.name, StepStatus.SKIPPED))
                continue
            if self.cancel_event.is_set():
                cancelled = True
                results.append(StepResult(step.name, StepStatus.CANCELLED))
                continue

            if not evaluate_condition(step.if_, scope):
                console.print_step_skipped(instance.id, step.name, "condition false")
                results.append(StepResult(step.name, StepStatus.SKIPPED))
                self._record(scope, step, "skipped", {})
                continue

            console.print_step(instance.id, step.name)
            result, external = self._run_step(instance, idx, step, scope)
            results.append(result)

            if result.status is StepStatus.CANCELLED:
                cancelled = True
            elif result.status is StepStatus.FAILED:
                if step.continue_on_error or external:
                    console.print_step_tolerated(instance.id, step.name, result.error or "")
                    self._record(scope, step, "failure", {}, conclusion="success")
                else:
                    console.print_failure(step.name, result.error or "", is_job=False)
                    failed = f"step '{step.name}' failed"
                    self._record(scope, step, "failure", {})
            else:
                self._record(scope, step, "success", result.outputs)

        if cancelled:
            status = InstanceStatus.CANCELLED
        elif failed is not None:
            status = InstanceStatus.FAILED
        else:
            status = InstanceStatus.SUCCEEDED
        return InstanceResult(instance.id, status, steps=results, error=failed)

    @staticmethod
    def _record(scope, step: Step, outcome: str, outputs: Dict[str, Any], conclusion: Optional[str] = None) -> None:
        if step.id:
            scope["steps"][step.id] = {
                "outputs": dict(outputs),
                "outcome": outcome,
                "conclusion": conclusion or outcome,
            }

    def _step_env(self, step: Step, scope: Mapping[str, Any]) -> Dict[str, str]:
        env = dict(os.environ) if self.inherit_env else {}
        env.update(scope["env"])
        env.update(_interpolate_env(step.env, scope))
        return env

    def _run_step(
        self, instance: JobInstance, idx: int, step: Step, scope: Dict[str, Any]
    ) -> Tuple[StepResult, bool]:
        """Returns (result, failed_on_external_service)."""
        started = time.monotonic()
        action = self.actions[(instance.job.name, idx)]

        def done(status: StepStatus, error: Optional[str] = None, outputs=None) -> StepResult:
            return StepResult(step.name, status, outputs=dict(outputs or {}), error=error,
                              duration=time.monotonic() - started)

        try:
            inputs = {k: interpolate(v, scope) for k, v in step_inputs(step).items()}
            ctx = ActionContext(
                job=instance.job.name,
                instance=instance.id,
                step=step,
                workdir=self.workdir,
                env=self._step_env(step, scope),
                permissions=dict(instance.job.permissions),
                cancel_event=self.cancel_event,
            )
            outputs = action.execute(inputs, ctx) or {}
        except StepCancelled as e:
            logger.info("%s", e)
            return done(StepStatus.CANCELLED, str(e)), False
        except ExternalServiceError as e:
            logger.warning("[%s] %s: external service failure ignored: %s", instance.id, step.name, e)
            return done(StepStatus.FAILED, f"ExternalServiceError: {e}"), True
        except ConditionError as e:
            return done(StepStatus.FAILED, f"bad expression: {e}"), False
        except StepFailure as e:
            return done(StepStatus.FAILED, str(e)), False
        except Exception as e:
            logger.debug("[%s] %s raised", instance.id, step.name, exc_info=True)
            return done(StepStatus.FAILED, f"{type(e).__name__}: {e}"), False

        return done(StepStatus.SUCCEEDED, outputs=outputs), False
