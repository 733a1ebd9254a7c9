# executor.py
from __future__ import annotations

import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .backends import Backends
from .cache import CacheEntry, CacheResolver, archive_paths, extract_payload, hash_files
from .errors import CancellationError, CIError, ExpressionError, StepFailure, StepTimeout
from .expr import check, render, render_value, uses_status_function
from .model import Job, JobResult, Status, Step, StepResult
from .step_workflows import deploy, docker, shell
from .ui.console import Console, get_console


class CancellationToken:
    """Cooperative cancel flag. Executors look at it between steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


StepHandler = Callable[["StepContext"], Dict[str, str]]

STEP_HANDLERS: Dict[str, StepHandler] = {
    "shell": shell.run_step,
    "docker_build": docker.run_step,
    "deploy": deploy.run_step,
    "noop": lambda ctx: {},
}


@dataclass
class StepContext:
    """Everything a step handler gets to see. Templates are already rendered."""
    job_name: str
    step: Step
    workspace: Path
    env: Dict[str, str]
    inputs: Dict[str, Any]
    run: Optional[str]
    backends: Backends
    console: Console
    deadline: Optional[float] = None  # time.monotonic() based
    job_timeout: Optional[float] = None
    token: Optional[CancellationToken] = None
    exported_env: Dict[str, str] = field(default_factory=dict)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.001, self.deadline - time.monotonic())

    def timeout_budget(self) -> Optional[float]:
        return self.job_timeout

    def cancelled(self) -> bool:
        return self.token is not None and self.token.cancelled

    def log_output(self, stdout: str, stderr: str) -> None:
        for line in (stdout or "").splitlines():
            self.console.print_debug(f"[{self.job_name}/{self.step.name}] {line}")
        for line in (stderr or "").splitlines():
            self.console.print_debug(f"[{self.job_name}/{self.step.name}] ! {line}")


class JobExecutor:
    """
    Runs one job's steps strictly in order and reports a JobResult.

    Never raises for job-level problems: failures, timeouts and
    cancellation all end up in the returned result.
    """

    def __init__(
        self,
        workspace: str | Path = ".",
        *,
        cache: Optional[CacheResolver] = None,
        backends: Optional[Backends] = None,
        console: Optional[Console] = None,
    ):
        self.workspace = Path(workspace).resolve()
        self.cache = cache
        self.backends = backends or Backends()
        self._console = console

    @property
    def console(self) -> Console:
        return self._console or get_console()

    # ---- context helpers ----

    def _functions(self, state: "_JobState", token: CancellationToken) -> Dict[str, Callable[..., Any]]:
        return {
            "success": lambda: not state.failed and not token.cancelled,
            "failure": lambda: state.failed,
            "always": lambda: True,
            "cancelled": lambda: token.cancelled,
            "hashFiles": lambda *patterns: hash_files(self.workspace, [str(p) for p in patterns]),
        }

    def _render_env(self, env: Mapping[str, str], ctx: Mapping[str, Any], fns: Mapping[str, Callable[..., Any]]) -> Dict[str, str]:
        return {k: render(str(v), ctx, fns) for k, v in env.items()}

    # ---- cache ----

    def _restore_cache(self, job: Job, ctx: Dict[str, Any], fns: Mapping[str, Callable[..., Any]], scope: str) -> Optional[CacheEntry]:
        if self.cache is None or not job.cache_keys:
            return None
        keys = [render(k, ctx, fns) for k in job.cache_keys]
        entry = self.cache.resolve(keys, scopes=[scope])
        if entry is None:
            self.console.print_cache_miss(job.name, keys)
            return None
        if job.cache_paths:
            try:
                extract_payload(entry, self.workspace)
            except Exception as e:
                self.console.print_warning(f"[{job.name}] cache restore failed, continuing without it: {e}")
                return None
        self.console.print_cache_hit(job.name, entry.key)
        return entry

    def _save_cache(self, job: Job, ctx: Dict[str, Any], fns: Mapping[str, Callable[..., Any]], scope: str, hit: Optional[CacheEntry]) -> None:
        if self.cache is None or not job.cache_to:
            return
        try:
            key = render(job.cache_to, ctx, fns)
            if hit is not None and hit.key == key and hit.scope == scope:
                # entries are immutable; an exact hit is already stored
                return
            with tempfile.TemporaryDirectory(prefix="relayci-cache-") as tmp:
                payload = archive_paths(
                    self.workspace,
                    job.cache_paths,
                    Path(tmp) / "payload.tar.gz",
                    manifest={"job": job.name, "key": key, "scope": scope},
                )
                self.cache.store(key, str(payload), scope)
            self.console.print_cache_saved(job.name, key)
        except Exception as e:
            # cache entries are advisory; never fail the job over them
            self.console.print_warning(f"[{job.name}] cache save failed: {e}")

    # ---- main entry ----

    def execute(
        self,
        job: Job,
        context: Optional[Mapping[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> JobResult:
        token = cancel_token or CancellationToken()
        started = time.time()

        if job.disabled:
            return JobResult(name=job.name, status=Status.SUCCESS, started_at=started, finished_at=time.time())

        if token.cancelled:
            return JobResult.cancelled(job.name, token.reason or "run cancelled")

        state = _JobState()
        fns = self._functions(state, token)
        ctx: Dict[str, Any] = dict(context or {})
        ctx["job"] = {"name": job.name, "status": "running"}
        ctx["steps"] = {}
        ctx["cache"] = {"hit": False, "key": ""}
        scope = str((ctx.get("run") or {}).get("ref_slug") or "")

        results: List[StepResult] = []
        result = JobResult(name=job.name, status=Status.RUNNING, started_at=started)
        deadline = time.monotonic() + job.timeout if job.timeout else None

        try:
            env = dict(ctx.get("env") or {})
            env.update(self._render_env(job.env, {**ctx, "env": env}, fns))
        except CIError as e:
            return self._finish(result, job, Status.FAILURE, f"job env: {e}")
        ctx["env"] = env

        hit = self._restore_cache(job, ctx, fns, scope)
        if hit is not None:
            result.cache_hit = hit.key
            ctx["cache"] = {"hit": True, "key": hit.key}

        for idx, step in enumerate(job.steps):
            if token.cancelled:
                for rest in job.steps[idx:]:
                    results.append(StepResult(name=rest.name, status=Status.CANCELLED, error=token.reason))
                result.steps = results
                return self._finish(result, job, Status.CANCELLED, token.reason or "run cancelled")

            if deadline is not None and not state.timed_out and time.monotonic() >= deadline:
                state.fail(f"job timed out after {job.timeout}s", timed_out=True)

            step_result = self._run_step(job, step, ctx, fns, state, deadline, token)
            results.append(step_result)
            if step.id:
                ctx["steps"][step.id] = {
                    "outcome": step_result.status.value,
                    "conclusion": Status.SUCCESS.value if step_result.continued else step_result.status.value,
                    "outputs": dict(step_result.outputs),
                }

        result.steps = results
        if token.cancelled:
            return self._finish(result, job, Status.CANCELLED, token.reason or "run cancelled")

        if state.failed:
            if job.continue_on_error:
                self.console.print_warning(f"[{job.name}] failed but continue_on_error is set: {state.error}")
                return self._finish(result, job, Status.SUCCESS, state.error)
            return self._finish(result, job, Status.FAILURE, state.error)

        try:
            result.outputs = {k: render(str(v), ctx, fns) for k, v in job.outputs.items()}
        except CIError as e:
            return self._finish(result, job, Status.FAILURE, f"job outputs: {e}")

        self._save_cache(job, ctx, fns, scope, hit)
        return self._finish(result, job, Status.SUCCESS, None)

    def _finish(self, result: JobResult, job: Job, status: Status, error: Optional[str]) -> JobResult:
        result.status = status
        result.error = error
        result.finished_at = time.time()
        if status is Status.FAILURE:
            self.console.print_failure(job.name, error or "", is_job=True)
        return result

    def _run_step(
        self,
        job: Job,
        step: Step,
        ctx: Dict[str, Any],
        fns: Mapping[str, Callable[..., Any]],
        state: "_JobState",
        deadline: Optional[float],
        token: CancellationToken,
    ) -> StepResult:
        if state.timed_out:
            self.console.print_step_skipped(job.name, step.name, "job timed out")
            return StepResult(name=step.name, status=Status.SKIPPED, error="job timed out")

        if state.failed and not uses_status_function(step.condition):
            self.console.print_step_skipped(job.name, step.name, "previous step failed")
            return StepResult(name=step.name, status=Status.SKIPPED, error="previous step failed")

        start = time.monotonic()
        try:
            if not check(step.condition, ctx, fns):
                self.console.print_step_skipped(job.name, step.name, "condition is false")
                return StepResult(name=step.name, status=Status.SKIPPED, error="condition is false")

            step_env = dict(ctx["env"])
            step_env.update(self._render_env(step.env, ctx, fns))
            step_ctx = StepContext(
                job_name=job.name,
                step=step,
                workspace=self.workspace,
                env=step_env,
                inputs=render_value(dict(step.inputs), ctx, fns),
                run=render(step.run, ctx, fns) if step.run else None,
                backends=self.backends,
                console=self.console,
                deadline=deadline,
                job_timeout=job.timeout,
                token=token,
            )
            handler = STEP_HANDLERS.get(step.kind)
            if handler is None:
                raise StepFailure(message=f"unknown step kind {step.kind!r}", job=job.name, step=step.name)

            self.console.print_step(job.name, step.name)
            outputs = handler(step_ctx)
            if deadline is not None and time.monotonic() > deadline:
                raise StepTimeout(message=f"job timed out after {job.timeout}s", job=job.name, step=step.name)
        except CancellationError as e:
            self.console.print_step_skipped(job.name, step.name, e.message)
            return StepResult(name=step.name, status=Status.CANCELLED, error=e.message, duration=time.monotonic() - start)
        except StepFailure as e:
            return self._step_failed(job, step, state, e.message, start, exit_code=e.exit_code,
                                     timed_out=isinstance(e, StepTimeout), details=e.details)
        except ExpressionError as e:
            return self._step_failed(job, step, state, str(e), start)
        except Exception as e:
            return self._step_failed(job, step, state, f"{type(e).__name__}: {e}", start)

        ctx["env"].update(step_ctx.exported_env)
        return StepResult(
            name=step.name,
            status=Status.SUCCESS,
            outputs=dict(outputs or {}),
            duration=time.monotonic() - start,
        )

    def _step_failed(
        self,
        job: Job,
        step: Step,
        state: "_JobState",
        message: str,
        start: float,
        *,
        exit_code: Optional[int] = None,
        timed_out: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        output = (details or {}).get("output")
        self.console.print_failure(
            step.name,
            f"{message}\n{output}" if output else message,
            exit_code=exit_code,
        )
        continued = step.continue_on_error and not timed_out
        if not continued:
            state.fail(f"step '{step.name}' failed: {message}", timed_out=timed_out)
        return StepResult(
            name=step.name,
            status=Status.FAILURE,
            error=message,
            duration=time.monotonic() - start,
            continued=continued,
        )


class _JobState:
    def __init__(self) -> None:
        self.failed = False
        self.timed_out = False
        self.error: Optional[str] = None

    def fail(self, error: str, *, timed_out: bool = False) -> None:
        if not self.failed:
            self.error = error
        self.failed = True
        self.timed_out = self.timed_out or timed_out
