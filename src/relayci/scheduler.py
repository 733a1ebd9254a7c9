# scheduler.py
from __future__ import annotations

import os
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Deque, Dict, Mapping, Optional, Tuple

from .dag import JobGraph
from .errors import CIError
from .executor import CancellationToken, JobExecutor
from .expr import check, uses_status_function
from .model import Job, JobResult, RunResult, Status
from .status import StatusReporter
from .ui.console import get_console

_WAKE = object()


def default_concurrency() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Walks a JobGraph, dispatching ready jobs to a thread pool.

    One coordinator (the thread calling run()) owns the ready-set; every
    status transition goes through self._lock and the StatusReporter.
    Executors report back through a completion queue, so the coordinator
    never waits on a particular job.
    """

    def __init__(
        self,
        graph: JobGraph,
        executor: JobExecutor,
        reporter: StatusReporter,
        *,
        concurrency_limit: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.graph = graph
        self.executor = executor
        self.reporter = reporter
        self.limit = max(1, concurrency_limit or default_concurrency())
        self.token = cancel_token or CancellationToken()
        self._lock = threading.Lock()
        self._completions: "queue.Queue[Any]" = queue.Queue()

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop dispatching; in-flight jobs stop at their next step and running shell commands are killed."""
        self.token.cancel(reason)
        self._completions.put(_WAKE)

    # ---- gate ----

    def _needs_context(self, job: Job) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for need in job.needs:
            res = self.reporter.result_of(need)
            out[need] = {
                "result": self.reporter.status_of(need).value,
                "outputs": dict(res.outputs) if res else {},
            }
        return out

    def _gate(self, job: Job, context: Mapping[str, Any]) -> Tuple[bool, str]:
        """
        Decide whether a ready job runs. A job is skipped when a predecessor
        did not succeed, unless its condition calls a status function, in
        which case the condition alone decides. A condition that cannot be
        evaluated raises; the caller fails the job.
        """
        if job.disabled:
            return True, ""

        needs = sorted(self.graph.needs_of(job.name))
        need_statuses = [self.reporter.status_of(n) for n in needs]
        fns = {
            "success": lambda: all(s is Status.SUCCESS for s in need_statuses) and not self.token.cancelled,
            "failure": lambda: any(s is Status.FAILURE for s in need_statuses),
            "always": lambda: True,
            "cancelled": lambda: self.token.cancelled,
        }
        if not uses_status_function(job.condition):
            failed = [n for n, s in zip(needs, need_statuses) if s is not Status.SUCCESS]
            if failed:
                return False, f"needs not satisfied: {', '.join(failed)}"
        if not check(job.condition, context, fns):
            return False, "condition is false"
        return True, ""

    # ---- main loop ----

    def run(self, context: Optional[Mapping[str, Any]] = None) -> RunResult:
        console = get_console()
        base: Dict[str, Any] = dict(context or {})

        remaining = self.graph.indegree()
        ready: Deque[str] = deque(self.graph.roots())
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.limit, thread_name_prefix="relayci-job") as pool:
            while True:
                with self._lock:
                    if self.token.cancelled:
                        for name in self.reporter.cancel_pending(self.token.reason or "run cancelled"):
                            console.print_job_cancelled(name)
                        ready.clear()

                    while ready and len(in_flight) < self.limit:
                        name = ready.popleft()
                        job = self.graph.jobs[name]
                        job_ctx = dict(base)
                        job_ctx["needs"] = self._needs_context(job)

                        try:
                            should_run, reason = self._gate(job, job_ctx)
                        except CIError as e:
                            error = f"condition error: {e}"
                            console.print_failure(name, error, is_job=True)
                            now = time.time()
                            self.reporter.job_finished(
                                JobResult(name=name, status=Status.FAILURE, error=error, started_at=now, finished_at=now)
                            )
                            self._release(name, remaining, ready)
                            continue
                        if not should_run:
                            console.print_job_skipped(name, reason)
                            self.reporter.job_skipped(name, reason)
                            self._release(name, remaining, ready)
                            continue

                        console.print_job_start(name)
                        self.reporter.job_started(name)
                        fut = pool.submit(self.executor.execute, job, job_ctx, self.token)
                        in_flight[fut] = name
                        fut.add_done_callback(self._completions.put)

                if not in_flight and not ready:
                    break

                if not in_flight:
                    continue

                item = self._completions.get()
                if item is _WAKE:
                    continue

                with self._lock:
                    name = in_flight.pop(item)
                    result = self._collect(item, name)
                    self.reporter.job_finished(result)
                    console.print_job_finished(name, result.status.value, result.duration)
                    self._release(name, remaining, ready)

        # anything never reached (cancelled before readiness) ends cancelled
        self.reporter.cancel_pending(self.token.reason or "run cancelled")
        self.reporter.finalize()
        return self.reporter.result()

    def _collect(self, fut: Future, name: str) -> JobResult:
        try:
            return fut.result()
        except Exception as e:
            get_console().print_exception(e)
            return JobResult(name=name, status=Status.FAILURE, error=f"{type(e).__name__}: {e}")

    def _release(self, name: str, remaining: Dict[str, int], ready: Deque[str]) -> None:
        """A job reached a terminal status: unlock dependents whose needs are all terminal."""
        for dep in sorted(self.graph.dependents[name]):
            remaining[dep] -= 1
            if remaining[dep] == 0:
                ready.append(dep)
