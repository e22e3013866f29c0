"""
Matrix expansion.

Expansion runs in explicit passes over a tagged union of entries:

    cross product -> exclude -> include merge -> JobInstance list

`CrossProductEntry` values come from the axes and are never overwritten.
`IncludeOverrideEntry` values either merge into every cross-product entry
they match (on the keys they share with the axes), or stand alone when
they match nothing.
"""
from __future__ import annotations

import itertools
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from .errors import MatrixError
from .model import Job, JobInstance, Matrix


@dataclass
class CrossProductEntry:
    values: Dict[str, Any]
    extras: Dict[str, Any] = field(default_factory=dict)

    def assignment(self) -> Dict[str, Any]:
        return {**self.values, **self.extras}


@dataclass
class IncludeOverrideEntry:
    values: Dict[str, Any]
    index: int

    def assignment(self) -> Dict[str, Any]:
        return dict(self.values)


Entry = Union[CrossProductEntry, IncludeOverrideEntry]


def _validate(job_name: str, matrix: Matrix) -> None:
    for axis, values in matrix.axes.items():
        if not isinstance(values, (list, tuple)):
            raise MatrixError(f"Job '{job_name}': matrix axis '{axis}' must be a list, got {type(values).__name__}")
        if not values:
            raise MatrixError(f"Job '{job_name}': matrix axis '{axis}' is empty")
    for kind, entries in (("include", matrix.include), ("exclude", matrix.exclude)):
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict) or not entry:
                raise MatrixError(f"Job '{job_name}': matrix {kind}[{i}] must be a non-empty mapping")
    for i, entry in enumerate(matrix.exclude):
        unknown = sorted(set(entry) - set(matrix.axes))
        if unknown:
            raise MatrixError(f"Job '{job_name}': matrix exclude[{i}] names unknown axes {unknown}")
    if not matrix.axes and not matrix.include:
        raise MatrixError(f"Job '{job_name}': matrix has no axes and no include entries")


def cross_product(matrix: Matrix) -> List[CrossProductEntry]:
    """Full cross product: axis declaration order, values in declared order."""
    if not matrix.axes:
        return []
    keys = list(matrix.axes)
    return [
        CrossProductEntry(values=dict(zip(keys, combo)))
        for combo in itertools.product(*(matrix.axes[k] for k in keys))
    ]


def _matches(entry: Dict[str, Any], values: Dict[str, Any]) -> bool:
    return all(values.get(k) == v for k, v in entry.items() if k in values)


def apply_excludes(entries: List[CrossProductEntry], excludes: List[Dict[str, Any]]) -> List[CrossProductEntry]:
    return [
        e for e in entries
        if not any(all(e.values.get(k) == v for k, v in ex.items()) for ex in excludes)
    ]


def merge_includes(entries: List[CrossProductEntry], includes: List[Dict[str, Any]]) -> List[Entry]:
    """
    Fold include entries into the cross product.

    An include matches a cross-product entry when every key it shares with
    the axes has an equal value. Its remaining keys are merged into every
    match (later includes win). An include with no match is appended.
    """
    result: List[Entry] = list(entries)
    for index, inc in enumerate(includes):
        matched = False
        for entry in entries:
            if _matches(inc, entry.values):
                matched = True
                entry.extras.update({k: v for k, v in inc.items() if k not in entry.values})
        if not matched:
            result.append(IncludeOverrideEntry(values=dict(inc), index=index))
    return result


def expand_job(job: Job) -> List[JobInstance]:
    """Expand one job into its concrete instances (exactly one without a matrix)."""
    if job.matrix is None:
        return [JobInstance(job=job)]

    _validate(job.name, job.matrix)
    entries = apply_excludes(cross_product(job.matrix), job.matrix.exclude)
    merged = merge_includes(entries, job.matrix.include)

    if not merged:
        raise MatrixError(f"Job '{job.name}': matrix excludes every combination")

    instances = [JobInstance(job=job, matrix=e.assignment()) for e in merged]
    seen = set()
    for inst in instances:
        if inst.key in seen:
            raise MatrixError(f"Job '{job.name}': duplicate matrix combination {inst.matrix}")
        seen.add(inst.key)

    # distinct assignments that print alike (1 vs '1', different keys) get qualified ids
    ids = Counter(inst.id for inst in instances)
    for inst in instances:
        if ids[inst.id] > 1:
            inst.qualified = True
    return instances


def expand_jobs(jobs: List[Job]) -> Dict[str, List[JobInstance]]:
    """Expand every job; result keyed by job name, in declaration order."""
    return {job.name: expand_job(job) for job in jobs}
