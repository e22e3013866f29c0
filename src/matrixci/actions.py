# actions.py
from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from .errors import StepCancelled, StepFailure, UnknownAction
from .model import Job, Step

logger = logging.getLogger(__name__)

OUTPUT_ENV = "MATRIXCI_OUTPUT"
OUTPUT_TAIL = 4000


@dataclass(frozen=True)
class ActionContext:
    """What a running step may see. Everything here is read-only for actions."""
    job: str
    instance: str
    step: Step
    workdir: Path
    env: Mapping[str, str]
    permissions: Mapping[str, str] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)


class Action(Protocol):
    """Capability interface for anything a step can invoke."""

    def execute(self, inputs: Mapping[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        ...


class FunctionAction:
    """Adapt a plain callable (inputs, ctx) -> outputs into an Action."""

    def __init__(self, fn: Callable[[Mapping[str, Any], ActionContext], Optional[Dict[str, Any]]]):
        self.fn = fn

    def execute(self, inputs: Mapping[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        return dict(self.fn(inputs, ctx) or {})


def _read_outputs(path: Path) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    if not path.exists():
        return outputs
    for line in path.read_text(encoding="utf-8").splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            outputs[key.strip()] = value
    return outputs


class ShellAction:
    """
    Run an inline command through the shell.

    Inputs: `run` (command). Outputs: `key=value` lines the command wrote
    to the file named by $MATRIXCI_OUTPUT.
    """

    def __init__(self, poll_interval: float = 0.2):
        self.poll_interval = poll_interval

    def execute(self, inputs: Mapping[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        cmd = str(inputs["run"])
        cwd = (ctx.workdir / (ctx.step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepFailure(job=ctx.job, step=ctx.step.name, message=f"cwd not found: {cwd}", cmd=cmd)

        fd, out_name = tempfile.mkstemp(prefix="matrixci-output-")
        os.close(fd)
        out_path = Path(out_name)
        env = dict(ctx.env)
        env[OUTPUT_ENV] = str(out_path)

        try:
            proc = subprocess.Popen(
                cmd,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
            while True:
                try:
                    stdout, stderr = proc.communicate(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if ctx.cancel_event.is_set():
                        proc.kill()
                        proc.communicate()
                        raise StepCancelled(f"[{ctx.instance}] step '{ctx.step.name}' cancelled")

            if proc.returncode != 0:
                raise StepFailure(
                    job=ctx.instance,
                    step=ctx.step.name,
                    message="command exited non-zero",
                    cmd=cmd,
                    exit_code=proc.returncode,
                    stdout=stdout[-OUTPUT_TAIL:],
                    stderr=stderr[-OUTPUT_TAIL:],
                )
            if stdout:
                logger.debug("[%s] %s stdout:\n%s", ctx.instance, ctx.step.name, stdout[-OUTPUT_TAIL:])
            return _read_outputs(out_path)
        finally:
            out_path.unlink(missing_ok=True)


def parse_ref(ref: str) -> Tuple[str, Optional[str]]:
    """'name@version' -> (name, version); a bare name has no version."""
    name, sep, version = ref.partition("@")
    return name, (version if sep else None)


class ActionRegistry:
    """
    name@version -> Action implementation.

    Steps are bound to implementations once, before the pipeline starts,
    so an unknown reference is a configuration error rather than a
    run-time surprise.
    """

    def __init__(self) -> None:
        self._actions: Dict[Tuple[str, str], Action] = {}
        self._latest: Dict[str, str] = {}

    def register(self, name: str, version: str, action: Action) -> None:
        self._actions[(name, version)] = action
        self._latest[name] = version

    def names(self) -> List[str]:
        return sorted(f"{n}@{v}" for n, v in self._actions)

    def resolve(self, ref: str) -> Optional[Action]:
        name, version = parse_ref(ref)
        if version is None:
            version = self._latest.get(name)
        return self._actions.get((name, version)) if version is not None else None

    def bind(self, jobs: List[Job]) -> Dict[Tuple[str, int], Action]:
        """Resolve every step of every job. Raises UnknownAction."""
        bound: Dict[Tuple[str, int], Action] = {}
        for job in jobs:
            for idx, step in enumerate(job.steps):
                action = self.resolve(step.action_ref)
                if action is None:
                    raise UnknownAction(step.action_ref, job.name, step.name)
                bound[(job.name, idx)] = action
        return bound


def step_inputs(step: Step) -> Dict[str, Any]:
    """Raw (uninterpolated) inputs for a step."""
    if step.run is not None:
        return {"run": step.run}
    return dict(step.with_)
