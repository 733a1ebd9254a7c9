# runner.py
from __future__ import annotations

import runpy
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .backends import Backends
from .cache import CacheResolver, hash_files
from .dag import JobGraph, build_graph
from .errors import ConfigurationError
from .executor import CancellationToken, JobExecutor
from .expr import parse, render, validate_template, validate_value
from .git_facts import git
from .model import STEP_KINDS, EventKind, Job, RunResult, Trigger, TriggerEvent, Workflow
from .scheduler import Scheduler
from .status import RunSnapshot, StatusReporter
from .triggers import match_trigger, validate_trigger
from .ui.console import get_console

# local dev ---> commit ---> trigger ---> graph ---> jobs ---> status


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define one of:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(message=f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"relayci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            loaded = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise ConfigurationError(
                    message="Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from relayci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, Workflow):
        return loaded
    if isinstance(loaded, list) and all(isinstance(j, Job) for j in loaded):
        return Workflow(name=wf_path.stem, jobs=loaded)

    raise ConfigurationError(
        message="Workflow must return/define a Workflow or a List[Job]. "
        "Define workflow() -> Workflow, WORKFLOW = wf(...), or JOBS = [Job, ...]."
    )


def _tag(e: ConfigurationError, job: Optional[str] = None, step: Optional[str] = None) -> ConfigurationError:
    e.job = e.job or job
    e.step = e.step or step
    return e


def validate_workflow(workflow: Workflow) -> JobGraph:
    """
    Check everything that can be checked before a run: trigger globs, the job
    graph, every expression and template, step kinds. Any problem is a
    ConfigurationError and nothing runs.
    """
    for trigger in workflow.triggers:
        validate_trigger(trigger)

    for kind in workflow.trigger_priority:
        if not isinstance(kind, EventKind):
            raise ConfigurationError(message=f"trigger_priority entries must be EventKind, got {kind!r}")

    names = [i.name for i in workflow.inputs]
    if len(set(names)) != len(names):
        raise ConfigurationError(message=f"Duplicate workflow inputs: {sorted(names)}")

    if workflow.concurrency is not None:
        validate_template(workflow.concurrency.group)
    for value in workflow.env.values():
        validate_template(str(value))

    graph = build_graph(workflow.jobs)

    for job in workflow.jobs:
        try:
            if job.condition:
                parse(job.condition)
            for template in [*job.env.values(), *job.cache_keys, *job.outputs.values(), job.cache_to or ""]:
                validate_template(str(template))
            if job.cache_to and not job.cache_paths:
                raise ConfigurationError(message="cache_to needs cache_paths to archive")
            if job.timeout is not None and job.timeout <= 0:
                raise ConfigurationError(message=f"timeout must be positive, got {job.timeout}")
        except ConfigurationError as e:
            raise _tag(e, job.name)

        step_ids = set()
        for step in job.steps:
            try:
                if step.kind not in STEP_KINDS:
                    raise ConfigurationError(message=f"unknown step kind {step.kind!r}, expected one of {STEP_KINDS}")
                if step.kind == "shell" and not step.run:
                    raise ConfigurationError(message="shell step needs a command")
                if step.id:
                    if step.id in step_ids:
                        raise ConfigurationError(message=f"duplicate step id {step.id!r}")
                    step_ids.add(step.id)
                if step.condition:
                    parse(step.condition)
                validate_template(step.run or "")
                validate_value(step.inputs)
                validate_value(step.env)
            except ConfigurationError as e:
                raise _tag(e, job.name, step.name)

    return graph


def resolve_inputs(workflow: Workflow, event: TriggerEvent) -> Dict[str, Any]:
    """
    Input values for a run. Only manual dispatches carry inputs; every other
    event gets the declared defaults.
    """
    declared = {i.name: i for i in workflow.inputs}
    if event.kind is not EventKind.MANUAL:
        return {name: inp.default for name, inp in declared.items()}

    unknown = sorted(set(event.inputs) - set(declared))
    if unknown:
        raise ConfigurationError(message=f"Unexpected workflow inputs: {unknown}")

    values: Dict[str, Any] = {}
    for name, inp in declared.items():
        if name in event.inputs:
            values[name] = event.inputs[name]
        elif inp.required and inp.default is None:
            raise ConfigurationError(message=f"Missing required workflow input {name!r}")
        else:
            values[name] = inp.default
    return values


# ----------------------------------------------------------------------
# Git: changed files for local runs
# ----------------------------------------------------------------------

def collect_changed_files(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Changed file paths relative to the repo root:
      - dirty tree: staged + unstaged + untracked
      - clean tree: HEAD against its merge-base with compare_ref
        (falls back to HEAD~1, then to every tracked file on a first commit)
    """
    if git.is_dirty(cwd):
        return git.working_tree_changes(cwd)

    try:
        base = git.merge_base(compare_ref, cwd)
    except subprocess.CalledProcessError:
        # e.g. no remote configured
        base = "HEAD~1"

    try:
        return git.changed_files(base, "HEAD", cwd)
    except subprocess.CalledProcessError:
        return git.tracked_files(cwd)


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------

class WorkflowRun:
    """One execution of a workflow, created when a trigger matches."""

    def __init__(
        self,
        workflow: Workflow,
        event: TriggerEvent,
        trigger: Trigger,
        graph: JobGraph,
        inputs: Mapping[str, Any],
        run_id: Optional[str] = None,
    ):
        self.id = run_id or uuid.uuid4().hex[:12]
        self.workflow = workflow
        self.event = event
        self.trigger = trigger
        self.graph = graph
        self.inputs = dict(inputs)
        self.created_at = time.time()
        self.concurrency_group: Optional[str] = None
        self.cancel_in_progress = False
        self.token = CancellationToken()
        self.reporter = StatusReporter(self.id, graph.jobs)
        self._scheduler: Optional[Scheduler] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)
        scheduler = self._scheduler
        if scheduler is not None:
            scheduler.cancel(reason)

    def snapshot(self) -> RunSnapshot:
        return self.reporter.snapshot()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.reporter.wait(timeout)

    @property
    def done(self) -> bool:
        return self.reporter.final is not None

    def result(self) -> RunResult:
        return self.reporter.result()


def context_functions(workspace: Path) -> Dict[str, Callable[..., Any]]:
    return {"hashFiles": lambda *patterns: hash_files(workspace, [str(p) for p in patterns])}


def build_context(
    run: WorkflowRun,
    workspace: Path,
    variables: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Expression context shared by every job in a run."""
    ev = run.event
    ctx: Dict[str, Any] = {
        "run": {
            "id": run.id,
            "workflow": run.workflow.name,
            "event": ev.kind.value,
            "trigger": run.trigger.event.value,
            "ref": ev.ref,
            "ref_name": ev.ref_name,
            "ref_slug": ev.ref_slug,
            "base_ref": ev.base_ref or "",
            "sha": ev.sha,
            "sha_short": ev.sha[:7],
            "actor": ev.actor,
            "repository": ev.repository,
            "repository_owner": ev.repository_owner,
            "changed_files": sorted(ev.changed_files),
            "payload": dict(ev.payload),
        },
        "inputs": dict(run.inputs),
        "vars": dict(variables or {}),
        "env": {},
    }
    fns = context_functions(workspace)
    env: Dict[str, str] = {}
    for k, v in run.workflow.env.items():
        env[k] = render(str(v), {**ctx, "env": env}, fns)
    ctx["env"] = env
    return ctx


@dataclass
class _Group:
    active: Optional[WorkflowRun] = None
    queued: Optional[WorkflowRun] = None


TerminalCallback = Callable[[RunSnapshot], None]


class Orchestrator:
    """
    Trigger ingestion and run lifecycle for one workflow.

    Concurrency groups: one run at a time per group. A newer run always
    supersedes a queued one; with cancel_in_progress it also cancels the
    run in progress.
    """

    def __init__(
        self,
        workflow: Workflow,
        *,
        workspace: str | Path = ".",
        cache: Optional[CacheResolver] = None,
        backends: Optional[Backends] = None,
        max_workers: Optional[int] = None,
        variables: Optional[Mapping[str, Any]] = None,
        on_complete: Optional[List[TerminalCallback]] = None,
    ):
        self.workflow = workflow
        self.graph = validate_workflow(workflow)
        self.workspace = Path(workspace).resolve()
        self.executor = JobExecutor(self.workspace, cache=cache, backends=backends)
        self.max_workers = max_workers
        self.variables = dict(variables or {})
        self.callbacks: List[TerminalCallback] = list(on_complete or [])

        self._runs: Dict[str, WorkflowRun] = {}
        self._groups: Dict[str, _Group] = {}
        self._cond = threading.Condition()

    # ---- ingestion ----

    def trigger(self, event: TriggerEvent) -> Optional[WorkflowRun]:
        """Create a run if a trigger admits the event, else None (suppressed)."""
        console = get_console()
        trigger = match_trigger(self.workflow, event)
        if trigger is None:
            console.print_run_suppressed(self.workflow.name, event.kind.value)
            return None

        inputs = resolve_inputs(self.workflow, event)
        run = WorkflowRun(self.workflow, event, trigger, self.graph, inputs)

        if self.workflow.concurrency is not None:
            ctx = build_context(run, self.workspace, self.variables)
            fns = context_functions(self.workspace)
            run.concurrency_group = render(self.workflow.concurrency.group, ctx, fns) or None
            run.cancel_in_progress = self.workflow.concurrency.cancel_in_progress

        for cb in self.callbacks:
            run.reporter.on_complete(cb)

        with self._cond:
            self._runs[run.id] = run
        return run

    def start(self, run: WorkflowRun, *, background: bool = True) -> WorkflowRun:
        self._admit(run)
        if not background:
            self._execute(run)
            return run
        threading.Thread(target=self._execute, args=(run,), name=f"relayci-run-{run.id}", daemon=True).start()
        return run

    def run(self, event: TriggerEvent) -> Optional[RunResult]:
        """Trigger and execute synchronously. None when the run is suppressed."""
        run = self.trigger(event)
        if run is None:
            return None
        self.start(run, background=False)
        return run.result()

    # ---- queries / control ----

    def get(self, run_id: str) -> Optional[WorkflowRun]:
        with self._cond:
            return self._runs.get(run_id)

    def runs(self) -> List[WorkflowRun]:
        with self._cond:
            return sorted(self._runs.values(), key=lambda r: r.created_at)

    def cancel(self, run_id: str, reason: str = "cancelled by request") -> bool:
        run = self.get(run_id)
        if run is None or run.done:
            return False
        run.cancel(reason)
        with self._cond:
            self._cond.notify_all()
        return True

    # ---- concurrency groups ----

    def _admit(self, run: WorkflowRun) -> None:
        if not run.concurrency_group:
            return
        console = get_console()
        with self._cond:
            group = self._groups.setdefault(run.concurrency_group, _Group())
            if group.queued is not None:
                console.print_run_superseded(group.queued.id, run.id)
                group.queued.cancel(f"superseded by run {run.id}")
            if run.cancel_in_progress and group.active is not None:
                console.print_run_superseded(group.active.id, run.id)
                group.active.cancel(f"superseded by run {run.id}")
            group.queued = run
            self._cond.notify_all()

    def _acquire(self, run: WorkflowRun) -> bool:
        """Wait for our turn in the group. False when superseded meanwhile."""
        if not run.concurrency_group:
            return True
        with self._cond:
            group = self._groups[run.concurrency_group]
            while group.queued is run and group.active is not None and not run.token.cancelled:
                self._cond.wait()
            if group.queued is not run or run.token.cancelled:
                if group.queued is run:
                    group.queued = None
                return False
            group.queued = None
            group.active = run
            return True

    def _release(self, run: WorkflowRun) -> None:
        if not run.concurrency_group:
            return
        with self._cond:
            group = self._groups.get(run.concurrency_group)
            if group is not None and group.active is run:
                group.active = None
            self._cond.notify_all()

    # ---- execution ----

    def _execute(self, run: WorkflowRun) -> None:
        console = get_console()
        if not self._acquire(run):
            run.reporter.cancel_pending(run.token.reason or "superseded")
            run.reporter.finalize()
            return

        try:
            console.print_run_started(run.id, self.workflow.name, run.trigger.event.value, len(run.graph))
            scheduler = Scheduler(
                run.graph,
                self.executor,
                run.reporter,
                concurrency_limit=self.max_workers,
                cancel_token=run.token,
            )
            run._scheduler = scheduler
            scheduler.run(build_context(run, self.workspace, self.variables))
        except Exception as e:
            console.print_exception(e)
            if run.reporter.final is None:
                run.reporter.abort(f"internal error: {type(e).__name__}: {e}")
        finally:
            self._release(run)


def run_workflow(
    workflow: Workflow,
    event: TriggerEvent,
    *,
    workspace: str | Path = ".",
    cache: Optional[CacheResolver] = None,
    backends: Optional[Backends] = None,
    max_workers: Optional[int] = None,
    on_complete: Optional[List[TerminalCallback]] = None,
) -> Tuple[Optional[RunResult], Optional[WorkflowRun]]:
    """One-shot helper: validate, trigger and run synchronously."""
    orch = Orchestrator(
        workflow,
        workspace=workspace,
        cache=cache,
        backends=backends,
        max_workers=max_workers,
        on_complete=on_complete,
    )
    run = orch.trigger(event)
    if run is None:
        return None, None
    orch.start(run, background=False)
    return run.result(), run
