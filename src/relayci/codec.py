# codec.py
# Plain-dict (JSON-ready) forms of workflows and run snapshots, used by
# `relayci submit`, the HTTP control plane and the terminal webhook.
from __future__ import annotations

from typing import Any, Dict

from .errors import ConfigurationError
from .model import Concurrency, EventKind, Job, Step, Trigger, Workflow, WorkflowInput
from .status import RunSnapshot


def step_to_dict(step: Step) -> dict:
    step_dict: Dict[str, Any] = {"name": step.name, "kind": step.kind}
    if step.run is not None:
        step_dict["run"] = step.run
    if step.inputs:
        step_dict["inputs"] = dict(step.inputs)
    if step.condition is not None:
        step_dict["if"] = step.condition
    if step.id is not None:
        step_dict["id"] = step.id
    if step.cwd is not None:
        step_dict["cwd"] = step.cwd
    if step.env:
        step_dict["env"] = dict(step.env)
    if step.continue_on_error:
        step_dict["continue_on_error"] = True
    return step_dict


def step_from_dict(step_dict: dict) -> Step:
    return Step(
        name=step_dict["name"],
        kind=step_dict.get("kind", "shell"),
        run=step_dict.get("run"),
        inputs=dict(step_dict.get("inputs", {})),
        condition=step_dict.get("if"),
        id=step_dict.get("id"),
        cwd=step_dict.get("cwd"),
        env=dict(step_dict.get("env", {})),
        continue_on_error=bool(step_dict.get("continue_on_error", False)),
    )


def job_to_dict(job: Job) -> dict:
    """
    Convert a Job model to a dictionary for API submission.
    This is the reverse of job_from_dict().
    """
    job_dict: Dict[str, Any] = {
        "name": job.name,
        "steps": [step_to_dict(s) for s in job.steps],
        "needs": list(job.needs),
        "env": dict(job.env),
    }

    # optional fields only when set
    if job.condition is not None:
        job_dict["if"] = job.condition
    if job.cache_keys:
        job_dict["cache_keys"] = list(job.cache_keys)
    if job.cache_to is not None:
        job_dict["cache_to"] = job.cache_to
    if job.cache_paths:
        job_dict["cache_paths"] = list(job.cache_paths)
    if job.outputs:
        job_dict["outputs"] = dict(job.outputs)
    if job.timeout is not None:
        job_dict["timeout"] = job.timeout
    if job.continue_on_error:
        job_dict["continue_on_error"] = True
    if job.disabled:
        job_dict["disabled"] = True

    return job_dict


def job_from_dict(job_dict: dict) -> Job:
    """Convert a job dictionary from the API to a Job model."""
    return Job(
        name=job_dict["name"],
        steps=[step_from_dict(s) for s in job_dict.get("steps", [])],
        needs=list(job_dict.get("needs", [])),
        condition=job_dict.get("if"),
        env=dict(job_dict.get("env", {})),
        cache_keys=list(job_dict.get("cache_keys", [])),
        cache_to=job_dict.get("cache_to"),
        cache_paths=list(job_dict.get("cache_paths", [])),
        outputs=dict(job_dict.get("outputs", {})),
        timeout=job_dict.get("timeout"),
        continue_on_error=bool(job_dict.get("continue_on_error", False)),
        disabled=bool(job_dict.get("disabled", False)),
    )


def _opt_tuple(values):
    return tuple(values) if values is not None else None


def trigger_to_dict(trigger: Trigger) -> dict:
    out: Dict[str, Any] = {"event": trigger.event.value}
    for key in ("branches", "paths", "paths_ignore"):
        value = getattr(trigger, key)
        if value is not None:
            out[key] = list(value)
    if trigger.cron is not None:
        out["cron"] = trigger.cron
    return out


def _event_kind(value: str) -> EventKind:
    try:
        return EventKind(value)
    except ValueError:
        kinds = [k.value for k in EventKind]
        raise ConfigurationError(message=f"unknown event kind {value!r}, expected one of {kinds}") from None


def trigger_from_dict(d: dict) -> Trigger:
    return Trigger(
        event=_event_kind(d["event"]),
        branches=_opt_tuple(d.get("branches")),
        paths=_opt_tuple(d.get("paths")),
        paths_ignore=_opt_tuple(d.get("paths_ignore")),
        cron=d.get("cron"),
    )


def workflow_to_dict(workflow: Workflow) -> dict:
    out: Dict[str, Any] = {
        "name": workflow.name,
        "jobs": [job_to_dict(j) for j in workflow.jobs],
        "on": [trigger_to_dict(t) for t in workflow.triggers],
        "env": dict(workflow.env),
        "inputs": [
            {"name": i.name, "default": i.default, "required": i.required}
            for i in workflow.inputs
        ],
    }
    if workflow.concurrency is not None:
        out["concurrency"] = {
            "group": workflow.concurrency.group,
            "cancel_in_progress": workflow.concurrency.cancel_in_progress,
        }
    if workflow.trigger_priority:
        out["trigger_priority"] = [k.value for k in workflow.trigger_priority]
    return out


def workflow_from_dict(d: dict) -> Workflow:
    """Reverse of workflow_to_dict(). Malformed documents raise ConfigurationError."""
    try:
        conc = d.get("concurrency")
        return Workflow(
            name=d["name"],
            jobs=[job_from_dict(j) for j in d.get("jobs", [])],
            triggers=[trigger_from_dict(t) for t in d.get("on", [])],
            concurrency=Concurrency(conc["group"], bool(conc.get("cancel_in_progress", False))) if conc else None,
            env=dict(d.get("env", {})),
            inputs=[
                WorkflowInput(i["name"], i.get("default"), bool(i.get("required", False)))
                for i in d.get("inputs", [])
            ],
            trigger_priority=tuple(_event_kind(k) for k in d.get("trigger_priority", [])),
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise ConfigurationError(message=f"malformed workflow document: {type(e).__name__}: {e}") from e


def snapshot_to_dict(snapshot: RunSnapshot) -> dict:
    return {
        "run_id": snapshot.run_id,
        "status": snapshot.status.value,
        "terminal": snapshot.terminal,
        "taken_at": snapshot.taken_at,
        "jobs": {name: status.value for name, status in snapshot.jobs.items()},
        "errors": dict(snapshot.errors),
        "outputs": {name: dict(values) for name, values in snapshot.outputs.items()},
    }
