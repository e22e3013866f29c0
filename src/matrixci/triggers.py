# triggers.py
from __future__ import annotations

from fnmatch import fnmatch
from typing import Iterable, List, Optional, Tuple

from .git_facts.git import local_changes
from .model import Trigger, TriggerFilter

DEFAULT_PATHS_IGNORE = ["docs/**", "**.md"]


def _matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


def should_run(trigger: Trigger, filt: TriggerFilter) -> Tuple[bool, str]:
    """
    Decide whether an event starts the pipeline at all.

      - event not listed           -> suppressed
      - no changed-path info       -> runs
      - every path in paths_ignore -> suppressed
      - paths given, none match    -> suppressed
    """
    if filt.events and trigger.event_name not in filt.events:
        return False, f"event '{trigger.event_name}' not in {filt.events}"

    changed = list(trigger.changed_paths)
    if not changed:
        return True, "no changed-path information"

    if filt.paths_ignore and all(_matches_any(p, filt.paths_ignore) for p in changed):
        return False, f"all {len(changed)} changed path(s) match paths-ignore {filt.paths_ignore}"

    if filt.paths is not None and not any(_matches_any(p, filt.paths) for p in changed):
        return False, f"no changed path matches {filt.paths}"

    return True, f"{len(changed)} changed path(s)"


def local_trigger(event_name: str = "push", *, compare_ref: str = "origin/main", changed: Optional[List[str]] = None) -> Trigger:
    """Trigger for a local run; changed paths come from git unless given."""
    paths = changed if changed is not None else local_changes(compare_ref)
    return Trigger(event_name=event_name, changed_paths=tuple(paths))
