# pipeline.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .actions import ActionContext, ActionRegistry, ShellAction
from .config import Settings
from .dag import JobGraph, build_dag
from .errors import ExternalServiceError
from .executor import StepExecutor
from .matrix import expand_jobs
from .model import InstanceResult, InstanceStatus, JobInstance, RunContext, Trigger, Workflow
from .relay import (
    CoverageService,
    DownloadArtifactAction,
    HTTPCoverageService,
    HTTPSigningService,
    LocalArtifactStore,
    SignArtifactAction,
    SigningRelay,
    SigningService,
    UploadArtifactAction,
    UploadCoverageAction,
    ArtifactStore,
)
from .scheduler import BENIGN_SKIP, Scheduler
from .triggers import should_run
from .ui.console import get_console

logger = logging.getLogger(__name__)


class PipelineStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PipelineResult:
    status: PipelineStatus
    instances: List[JobInstance] = field(default_factory=list)
    results: Dict[str, InstanceResult] = field(default_factory=dict)
    suppressed: bool = False
    cancelled: bool = False
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status is PipelineStatus.SUCCEEDED

    def statuses(self) -> Dict[str, str]:
        return {inst.id: inst.status.value for inst in self.instances}

    def instance(self, instance_id: str) -> JobInstance:
        for inst in self.instances:
            if inst.id == instance_id:
                return inst
        raise KeyError(instance_id)


class _Unconfigured:
    """Stand-in for a service nobody configured; fails best-effort."""

    def __init__(self, service: str):
        self.service = service

    def execute(self, inputs: Mapping[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        raise ExternalServiceError(self.service, "service not configured")


def default_registry(
    store: ArtifactStore,
    signing: Optional[SigningService] = None,
    coverage: Optional[CoverageService] = None,
    *,
    poll_interval: float = 5.0,
    timeout: float = 600.0,
) -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("run", "v1", ShellAction())
    registry.register("upload-artifact", "v1", UploadArtifactAction(store))
    registry.register("download-artifact", "v1", DownloadArtifactAction(store))
    if signing is not None:
        relay = SigningRelay(store, signing, poll_interval=poll_interval, timeout=timeout)
        registry.register("sign-artifact", "v1", SignArtifactAction(relay))
    else:
        registry.register("sign-artifact", "v1", _Unconfigured("signing"))
    if coverage is not None:
        registry.register("upload-coverage", "v1", UploadCoverageAction(coverage))
    else:
        registry.register("upload-coverage", "v1", _Unconfigured("coverage"))
    return registry


def registry_from_settings(settings: Settings, workdir: str | Path = ".") -> ActionRegistry:
    store = LocalArtifactStore(Path(workdir) / settings.artifact_dir)
    signing = None
    if settings.signing_api_url:
        signing = HTTPSigningService(
            settings.signing_api_url,
            settings.signing_api_token,
            organization=settings.signing_organization,
            project=settings.signing_project,
        )
    coverage = HTTPCoverageService(settings.coverage_url) if settings.coverage_url else None
    return default_registry(
        store,
        signing,
        coverage,
        poll_interval=settings.signing_poll_interval,
        timeout=settings.signing_timeout,
    )


def aggregate(instances: List[JobInstance], skip_kind: Mapping[str, str]) -> PipelineStatus:
    """AND over non-best-effort instances; condition skips count as success."""
    for inst in instances:
        if inst.best_effort:
            continue
        if inst.status is InstanceStatus.SUCCEEDED:
            continue
        if inst.status is InstanceStatus.SKIPPED and skip_kind.get(inst.id) == BENIGN_SKIP:
            continue
        return PipelineStatus.FAILED
    return PipelineStatus.SUCCEEDED


class Pipeline:
    """
    Builder -> Expander -> action binding -> Scheduler -> Executor.

    Construction does nothing; prepare() raises ConfigError for any
    definition problem before a single instance is dispatched.
    """

    def __init__(
        self,
        workflow: Workflow,
        run_ctx: Optional[RunContext] = None,
        *,
        registry: Optional[ActionRegistry] = None,
        workdir: str | Path = ".",
        max_workers: Optional[int] = None,
        halt_on_failure: bool = False,
        strict_order: bool = False,
    ):
        self.workflow = workflow
        self.workdir = Path(workdir)
        self.run_ctx = run_ctx or RunContext()
        if workflow.env:
            # workflow-level env is part of the run context, fixed at start
            self.run_ctx = RunContext(
                event_name=self.run_ctx.event_name,
                ref=self.run_ctx.ref,
                repository=self.run_ctx.repository,
                sha=self.run_ctx.sha,
                actor=self.run_ctx.actor,
                secrets=self.run_ctx.secrets,
                vars=self.run_ctx.vars,
                env={**workflow.env, **self.run_ctx.env},
            )
        self.registry = registry or default_registry(LocalArtifactStore(self.workdir / Settings.artifact_dir))
        self.max_workers = max_workers
        self.halt_on_failure = halt_on_failure
        self.strict_order = strict_order
        self.cancel_event = threading.Event()

    def prepare(self) -> Tuple[JobGraph, Dict[str, List[JobInstance]], Dict]:
        graph = build_dag(self.workflow.jobs, strict_order=self.strict_order)
        instances = expand_jobs(self.workflow.jobs)
        bound = self.registry.bind(self.workflow.jobs)
        return graph, instances, bound

    def plan(self) -> Tuple[List[List[str]], Dict[str, List[str]]]:
        """Stages plus, per job, instance ids (with display titles where set)."""
        graph, instances, _ = self.prepare()
        listing = {
            name: [i.id if i.title == i.id else f"{i.id} [{i.title}]" for i in insts]
            for name, insts in instances.items()
        }
        return graph.levels(), listing

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self, trigger: Optional[Trigger] = None) -> PipelineResult:
        graph, instances, bound = self.prepare()

        trigger = trigger or Trigger(event_name=self.run_ctx.event_name)
        go, reason = should_run(trigger, self.workflow.on)
        if not go:
            get_console().print_suppressed(reason)
            logger.info("pipeline suppressed: %s", reason)
            return PipelineResult(PipelineStatus.SUCCEEDED, suppressed=True, reason=reason)

        executor = StepExecutor(bound, self.run_ctx, workdir=self.workdir, cancel_event=self.cancel_event)
        scheduler = Scheduler(
            graph,
            instances,
            executor.run,
            self.run_ctx,
            max_workers=self.max_workers,
            halt_on_failure=self.halt_on_failure,
            cancel_event=self.cancel_event,
        )
        results = scheduler.run()

        status = aggregate(scheduler.instances, scheduler.skip_kind)
        cancelled = self.cancel_event.is_set()
        if cancelled:
            status = PipelineStatus.FAILED
        return PipelineResult(
            status=status,
            instances=scheduler.instances,
            results=results,
            cancelled=cancelled,
            reason="cancelled" if cancelled else "",
        )


def run_workflow(
    workflow: Workflow,
    run_ctx: Optional[RunContext] = None,
    trigger: Optional[Trigger] = None,
    **kw,
) -> PipelineResult:
    return Pipeline(workflow, run_ctx, **kw).run(trigger)
