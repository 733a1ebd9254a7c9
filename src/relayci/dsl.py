# src/relayci/dsl.py
from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .model import Concurrency, EventKind, Job, Step, Trigger, Workflow, WorkflowInput


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    id: str | None = None,
    if_: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        id=id,
        condition=if_,
        env=env or {},
        continue_on_error=continue_on_error,
    )


def docker_build(
    name: str,
    *,
    tags: Sequence[str],
    context: str = ".",
    dockerfile: str = "Dockerfile",
    target: str | None = None,
    build_args: Optional[Mapping[str, str]] = None,
    cache_from: Sequence[str] = (),
    cache_to: str | None = None,
    push: bool = True,
    no_cache: bool = False,
    id: str | None = None,
    if_: str | None = None,
) -> Step:
    """
    Build (and by default push) a container image through the build backend.

    Outputs: `digest` and `tags` (comma separated).
    """
    inputs: Dict[str, Any] = {
        "context": context,
        "file": dockerfile,
        "tags": list(tags),
        "build_args": dict(build_args or {}),
        "cache_from": list(cache_from),
        "push": push,
        "no_cache": no_cache,
    }
    if cache_to is not None:
        inputs["cache_to"] = cache_to
    if target is not None:
        inputs["target"] = target
    return Step(name=name, kind="docker_build", inputs=inputs, id=id, condition=if_)


def deploy_docs(
    name: str,
    *,
    path: str,
    channel: str = "live",
    target: str | None = None,
    id: str | None = None,
    if_: str | None = None,
) -> Step:
    """Publish a built directory through the deploy target. Outputs: `url`, `channel`."""
    inputs: Dict[str, Any] = {"path": path, "channel": channel}
    if target is not None:
        inputs["target"] = target
    return Step(name=name, kind="deploy", inputs=inputs, id=id, condition=if_)


def noop(name: str) -> Step:
    return Step(name=name, kind="noop")


# ---------------------------------------------------------------------
# Job helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    if_: str | None = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    cache_keys: Optional[List[str]] = None,
    cache_to: str | None = None,
    cache_paths: Optional[List[str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    timeout_minutes: float | None = None,
    continue_on_error: bool = False,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step (use stub() for an empty job)")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=if_,
        env={k: str(v) for k, v in (env or {}).items()},
        cache_keys=list(cache_keys or []),
        cache_to=cache_to,
        cache_paths=list(cache_paths or []),
        outputs=dict(outputs or {}),
        timeout=timeout_minutes * 60 if timeout_minutes is not None else None,
        continue_on_error=continue_on_error,
    )


def stub(name: str, *, needs: Optional[List[str]] = None) -> Job:
    """A job that always succeeds without running anything."""
    return Job(name=name, needs=list(needs or []), disabled=True)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Cartesian matrix expander.

    Example:
        matrix(os=["ubuntu", "macos"], py=["3.11", "3.12"]).jobs(
            lambda v: job(f"test-{v['os']}-py{v['py']}", sh(...))
        )
    """
    def __init__(self, axes: Mapping[str, Iterable[Any]], exclude: Sequence[Mapping[str, Any]] = ()):
        self.axes = {k: list(v) for k, v in axes.items()}
        self.exclude = [dict(e) for e in exclude]

    def combinations(self) -> List[Dict[str, Any]]:
        keys = list(self.axes)
        out = []
        for values in itertools.product(*(self.axes[k] for k in keys)):
            combo = dict(zip(keys, values))
            if any(all(combo.get(k) == v for k, v in ex.items()) for ex in self.exclude):
                continue
            out.append(combo)
        return out

    def jobs(self, builder: Callable[[Dict[str, Any]], Job]) -> List[Job]:
        return [builder(combo) for combo in self.combinations()]


def matrix(*, exclude: Sequence[Mapping[str, Any]] = (), **axes: Iterable[Any]) -> Matrix:
    return Matrix(axes, exclude)


# ---------------------------------------------------------------------
# Triggers / workflow settings
# ---------------------------------------------------------------------

def _tuple(values: Optional[Iterable[str]]) -> Optional[tuple]:
    return tuple(values) if values is not None else None


def on_push(
    *,
    branches: Optional[Iterable[str]] = None,
    paths: Optional[Iterable[str]] = None,
    paths_ignore: Optional[Iterable[str]] = None,
) -> Trigger:
    return Trigger(EventKind.PUSH, _tuple(branches), _tuple(paths), _tuple(paths_ignore))


def on_pull_request(
    *,
    branches: Optional[Iterable[str]] = None,
    paths: Optional[Iterable[str]] = None,
    paths_ignore: Optional[Iterable[str]] = None,
) -> Trigger:
    """`branches` filters the pull request's target branch."""
    return Trigger(EventKind.PULL_REQUEST, _tuple(branches), _tuple(paths), _tuple(paths_ignore))


def on_schedule(cron: str) -> Trigger:
    return Trigger(EventKind.SCHEDULE, cron=cron)


def on_dispatch() -> Trigger:
    return Trigger(EventKind.MANUAL)


def concurrency(group: str, *, cancel_in_progress: bool = False) -> Concurrency:
    return Concurrency(group=group, cancel_in_progress=cancel_in_progress)


def input_(name: str, *, default: Any = None, required: bool = False) -> WorkflowInput:
    return WorkflowInput(name=name, default=default, required=required)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job | List[Job],
    name: str = "workflow",
    on: Optional[Iterable[Trigger]] = None,
    concurrency: Concurrency | None = None,
    env: Optional[Dict[str, str]] = None,
    inputs: Optional[Iterable[WorkflowInput]] = None,
    trigger_priority: Iterable[EventKind] = (),
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from relayci import wf, job, sh, on_push

        def workflow():
            return wf(
                job(...),
                matrix(...).jobs(...),   # lists are flattened
                name="build",
                on=[on_push(branches=["main"])],
            )
    """
    flat: List[Job] = []
    for item in jobs:
        if isinstance(item, list):
            flat.extend(item)
        else:
            flat.append(item)
    return Workflow(
        name=name,
        jobs=flat,
        triggers=list(on or []),
        concurrency=concurrency,
        env={k: str(v) for k, v in (env or {}).items()},
        inputs=list(inputs or []),
        trigger_priority=tuple(trigger_priority),
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
