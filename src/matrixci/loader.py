# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Mapping

from pydantic import ValidationError

from .dsl import wf
from .errors import WorkflowLoadError
from .model import Job, Workflow
from .schemas import WorkflowSpec


def workflow_from_mapping(data: Mapping[str, Any]) -> Workflow:
    """Validate an already-parsed workflow mapping."""
    try:
        return WorkflowSpec.model_validate(dict(data)).to_workflow()
    except ValidationError as e:
        raise WorkflowLoadError(f"Invalid workflow definition:\n{e}") from e


def _coerce(value: Any, name: str) -> Workflow:
    if isinstance(value, Workflow):
        return value
    if isinstance(value, list) and value and all(isinstance(j, Job) for j in value):
        return wf(*value, name=name)
    if isinstance(value, Mapping):
        return workflow_from_mapping(value)
    raise WorkflowLoadError(
        "Workflow must return/define a Workflow, a non-empty List[Job] or a mapping. "
        "Define workflow() -> Workflow, WORKFLOW = wf(...) or JOBS = [Job, ...]."
    )


def _load_python(wf_path: Path) -> Workflow:
    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]) and globals_dict["workflow"] is not wf:
        try:
            value = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowLoadError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from matrixci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        value = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        value = globals_dict["JOBS"]
    else:
        value = None
    return _coerce(value, wf_path.stem)


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a .py or .json file.

    A .py file must define one of:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = wf(...)
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".py":
        return _load_python(wf_path)
    if wf_path.suffix == ".json":
        try:
            data = json.loads(wf_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise WorkflowLoadError(f"{wf_path.name} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise WorkflowLoadError(f"{wf_path.name}: top level must be an object")
        return workflow_from_mapping(data)
    raise WorkflowLoadError(f"Workflow must be a .py or .json file, got: {wf_path.name}")
