from .dsl import job, sh, uses, matrix, on, wf, workflow, JobBuilder, build
from .model import Job, Step, Matrix, Workflow, RunContext, Trigger, InstanceStatus
from .pipeline import Pipeline, PipelineResult, PipelineStatus, run_workflow, default_registry
from .loader import load_workflow

__all__ = [
    "job", "sh", "uses", "matrix", "on", "wf", "workflow", "JobBuilder", "build",
    "Job", "Step", "Matrix", "Workflow", "RunContext", "Trigger", "InstanceStatus",
    "Pipeline", "PipelineResult", "PipelineStatus", "run_workflow", "default_registry",
    "load_workflow",
]
