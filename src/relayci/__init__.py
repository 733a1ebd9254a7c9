from .dsl import (
    concurrency,
    deploy_docs,
    docker_build,
    input_,
    job,
    matrix,
    noop,
    on_dispatch,
    on_pull_request,
    on_push,
    on_schedule,
    sh,
    stub,
    wf,
    workflow,
)
from .errors import CIError, ConfigurationError, StepFailure
from .model import EventKind, Job, RunResult, Status, Step, TriggerEvent, Workflow
from .runner import Orchestrator, load_workflow, run_workflow, validate_workflow

__all__ = [
    "concurrency", "deploy_docs", "docker_build", "input_", "job", "matrix", "noop",
    "on_dispatch", "on_pull_request", "on_push", "on_schedule", "sh", "stub", "wf", "workflow",
    "CIError", "ConfigurationError", "StepFailure",
    "EventKind", "Job", "RunResult", "Status", "Step", "TriggerEvent", "Workflow",
    "Orchestrator", "load_workflow", "run_workflow", "validate_workflow",
]
