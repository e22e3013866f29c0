# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Set

from .errors import CyclicDependency, DuplicateJob, UnknownDependency
from .model import Job


@dataclass
class JobGraph:
    """
    DAG of jobs keyed by name.

      - adj[n]: jobs that need n (edge n -> dependent)
      - deps[n]: jobs n needs
      - order: declaration order, used to break ties deterministically
    """
    jobs: Dict[str, Job]
    adj: Dict[str, Set[str]]
    deps: Dict[str, Set[str]]
    order: List[str]

    def _rank(self, name: str) -> int:
        return self.order.index(name)

    def topological_order(self) -> List[str]:
        return [n for level in self.levels() for n in level]

    def levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        indeg = {n: len(self.deps[n]) for n in self.order}
        q = deque(n for n in self.order if indeg[n] == 0)

        levels: List[List[str]] = []
        while q:
            level_size = len(q)
            level: List[str] = []

            for _ in range(level_size):
                node = q.popleft()
                level.append(node)

                for child in sorted(self.adj[node], key=self._rank):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)

            levels.append(level)

        return levels

    def descendants(self, roots: Iterable[str]) -> Set[str]:
        """Every job transitively depending on any of `roots` (roots excluded)."""
        seen: Set[str] = set()
        stack = list(roots)
        while stack:
            node = stack.pop()
            for child in self.adj.get(node, ()):
                if child not in seen:
                    seen.add(child)
                    stack.append(child)
        return seen


def build_dag(jobs: List[Job], *, strict_order: bool = False) -> JobGraph:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must run BEFORE this job

    With strict_order, a job may only need jobs declared before it.
    Raises DuplicateJob, UnknownDependency or CyclicDependency.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        raise DuplicateJob(sorted({n for n in names if names.count(n) > 1}))

    by_name = {j.name: j for j in jobs}
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    deps: Dict[str, Set[str]] = {n: set() for n in names}

    for idx, job in enumerate(jobs):
        for needed in job.needs:
            if needed not in by_name:
                raise UnknownDependency(job.name, needed, sorted(names))
            if strict_order and names.index(needed) >= idx:
                raise UnknownDependency(job.name, needed, sorted(names), reason="forward")
            adj[needed].add(job.name)
            deps[job.name].add(needed)

    _check_cycles(names, deps)
    return JobGraph(jobs=by_name, adj=adj, deps=deps, order=names)


def _check_cycles(names: List[str], deps: Dict[str, Set[str]]) -> None:
    # Iterative DFS: a node revisited while still on the current path closes a cycle.
    done: Set[str] = set()

    for root in names:
        if root in done:
            continue
        path: List[str] = [root]
        on_path: Set[str] = {root}
        stack = [iter(sorted(deps[root], key=names.index))]

        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                node = path.pop()
                on_path.discard(node)
                done.add(node)
                continue
            if child in on_path:
                start = path.index(child)
                # path runs job -> dependency; report it in execution order
                raise CyclicDependency(list(reversed(path[start:] + [child])))
            if child in done:
                continue
            path.append(child)
            on_path.add(child)
            stack.append(iter(sorted(deps[child], key=names.index)))
