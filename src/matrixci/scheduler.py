# scheduler.py
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from .conditions import evaluate_condition
from .dag import JobGraph
from .errors import DependencyFailure
from .executor import base_scope
from .model import InstanceResult, InstanceStatus, JobInstance, RunContext
from .ui.console import get_console

logger = logging.getLogger(__name__)

RunFn = Callable[[JobInstance], InstanceResult]

# skip reasons that do not count against the aggregate status
BENIGN_SKIP = "condition"


class Scheduler:
    """
    Walks the instance graph with bounded parallelism.

    Instance of job J is Runnable once every instance of every job J needs
    has Succeeded. Anything else upstream (Failed, Skipped, Cancelled)
    cascades Skipped to all transitive dependents in one traversal.

    Scheduler state is only touched from the thread calling run(); workers
    return InstanceResults and never mutate shared state.
    """

    def __init__(
        self,
        graph: JobGraph,
        instances: Dict[str, List[JobInstance]],
        run_fn: RunFn,
        run_ctx: RunContext,
        *,
        max_workers: Optional[int] = None,
        halt_on_failure: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.graph = graph
        self.by_job = instances
        self.run_fn = run_fn
        self.run_ctx = run_ctx
        self.halt_on_failure = halt_on_failure
        self.cancel_event = cancel_event or threading.Event()

        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers

        self.instances: List[JobInstance] = [
            inst for name in graph.topological_order() for inst in instances[name]
        ]
        self.results: Dict[str, InstanceResult] = {}
        self.skip_kind: Dict[str, str] = {}
        self._ready: List[JobInstance] = []
        self._running: Dict[str, int] = {name: 0 for name in instances}
        self._halted = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Pipeline-level cancellation: reaches every non-terminal instance."""
        self.cancel_event.set()

    def run(self) -> Dict[str, InstanceResult]:
        for name in self.graph.order:
            if not self.graph.deps[name]:
                for inst in self.by_job[name]:
                    self._make_runnable(inst)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            try:
                self._loop(pool)
            except KeyboardInterrupt:
                # workers must see the cancellation before the pool joins them
                self.cancel()
                raise

        # nothing left can run; anything still waiting was starved by a non-success
        for inst in self.instances:
            if not inst.status.terminal:
                self._skip(inst, "dependencies never satisfied", "dependency")
        return self.results

    def _loop(self, pool: ThreadPoolExecutor) -> None:
        in_flight: Dict[Future, JobInstance] = {}

        while True:
            if self.cancel_event.is_set() or self._halted:
                self._cancel_waiting()

            # schedule whatever is ready, up to the free slots
            deferred: List[JobInstance] = []
            while self._ready and len(in_flight) < self.max_workers:
                inst = self._ready.pop(0)
                if inst.status.terminal:
                    continue
                cap = inst.job.max_parallel
                if cap is not None and self._running[inst.job.name] >= max(1, cap):
                    deferred.append(inst)
                    continue
                if not evaluate_condition(inst.job.if_, base_scope(inst, self.run_ctx)):
                    self._skip(inst, "condition false", BENIGN_SKIP)
                    continue
                inst.transition(InstanceStatus.RUNNING)
                self._running[inst.job.name] += 1
                in_flight[pool.submit(self.run_fn, inst)] = inst
            self._ready = deferred + self._ready

            if not in_flight:
                if self._ready:
                    continue
                return

            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                inst = in_flight.pop(fut)
                self._running[inst.job.name] -= 1
                try:
                    result = fut.result()
                except Exception as e:
                    logger.exception("instance %s crashed", inst.id)
                    result = InstanceResult(inst.id, InstanceStatus.FAILED, error=f"{type(e).__name__}: {e}")
                self._complete(inst, result)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _make_runnable(self, inst: JobInstance) -> None:
        inst.transition(InstanceStatus.RUNNABLE)
        self._ready.append(inst)

    def _skip(self, inst: JobInstance, reason: str, kind: str) -> None:
        inst.transition(InstanceStatus.SKIPPED, reason)
        self.skip_kind[inst.id] = kind
        self.results[inst.id] = InstanceResult(inst.id, InstanceStatus.SKIPPED, error=reason)
        get_console().print_instance_skipped(inst.id, reason)
        self._cascade(inst, benign=(kind == BENIGN_SKIP))

    def _cancel(self, inst: JobInstance, reason: str) -> None:
        inst.transition(InstanceStatus.CANCELLED, reason)
        self.results[inst.id] = InstanceResult(inst.id, InstanceStatus.CANCELLED, error=reason)
        get_console().print_instance_skipped(inst.id, reason)

    def _cancel_waiting(self) -> None:
        reason = "pipeline cancelled" if self.cancel_event.is_set() else "halted after failure"
        for inst in self.instances:
            if inst.status in (InstanceStatus.PENDING, InstanceStatus.RUNNABLE):
                self._cancel(inst, reason)
        self._ready.clear()

    def _complete(self, inst: JobInstance, result: InstanceResult) -> None:
        inst.transition(result.status, result.error)
        self.results[inst.id] = result
        get_console().print_instance_done(inst.id, result.status.value)

        if result.status is InstanceStatus.SUCCEEDED:
            self._unlock_dependents(inst.job.name)
            return

        if result.status is InstanceStatus.FAILED:
            if inst.job.fail_fast:
                for sibling in self.by_job[inst.job.name]:
                    if sibling.status in (InstanceStatus.PENDING, InstanceStatus.RUNNABLE):
                        self._cancel(sibling, f"fail-fast: {inst.id} failed")
            if self.halt_on_failure and not inst.best_effort:
                self._halted = True

        self._cascade(inst, benign=False)

    def _cascade(self, root: JobInstance, *, benign: bool) -> None:
        """Skip every non-terminal instance reachable from root's job."""
        kind = BENIGN_SKIP if benign else "dependency"
        for name in self.graph.descendants([root.job.name]):
            for inst in self.by_job[name]:
                if inst.status.terminal:
                    continue
                reason = str(DependencyFailure(inst.id, root.id, root.status.value))
                inst.transition(InstanceStatus.SKIPPED, reason)
                self.skip_kind[inst.id] = kind
                self.results[inst.id] = InstanceResult(inst.id, InstanceStatus.SKIPPED, error=reason)
                get_console().print_instance_skipped(inst.id, reason)

    def _unlock_dependents(self, job_name: str) -> None:
        for child in self.graph.adj[job_name]:
            upstream = [i for dep in self.graph.deps[child] for i in self.by_job[dep]]
            if not all(i.status is InstanceStatus.SUCCEEDED for i in upstream):
                continue
            for inst in self.by_job[child]:
                if inst.status is InstanceStatus.PENDING:
                    self._make_runnable(inst)
