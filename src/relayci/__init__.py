from .dsl import (
    JobBuilder,
    build,
    choice,
    environment,
    job,
    matrix,
    on_dispatch,
    on_pull_request,
    on_push,
    on_schedule,
    sh,
    uses,
    wf,
    workflow,
)
from .engine import Engine
from .loader import build as load_workflow
from .model import JobState, RunStatus, WorkflowDefinition
from .settings import Settings
from .triggers import TriggerEvent

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "workflow", "JobBuilder", "build",
    "on_push", "on_pull_request", "on_dispatch", "on_schedule", "choice", "environment",
    "Engine", "Settings", "TriggerEvent", "load_workflow",
    "JobState", "RunStatus", "WorkflowDefinition",
]
