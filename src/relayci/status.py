# status.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .model import JobResult, RunResult, Status
from .ui.console import get_console

# worst first
_SEVERITY = (Status.FAILURE, Status.CANCELLED)


def aggregate(statuses: Iterable[Status]) -> Status:
    """
    Worst-case aggregation of terminal job statuses:
    failure > cancelled > skipped (only if every job skipped) > success.
    A run without jobs is a success.
    """
    values = list(statuses)
    for bad in _SEVERITY:
        if bad in values:
            return bad
    if values and all(s is Status.SKIPPED for s in values):
        return Status.SKIPPED
    return Status.SUCCESS


@dataclass(frozen=True)
class RunSnapshot:
    run_id: str
    status: Status
    jobs: Mapping[str, Status]
    terminal: bool
    taken_at: float
    errors: Mapping[str, str] = field(default_factory=dict)
    outputs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)


TerminalCallback = Callable[[RunSnapshot], None]


class StatusReporter:
    """
    Thread-safe status table for one run.

    snapshot() can be called from anywhere at any time. Once finalize() has
    run, the same frozen snapshot is returned forever and the terminal
    callbacks have fired exactly once.
    """

    def __init__(self, run_id: str, job_names: Iterable[str]):
        self.run_id = run_id
        self._lock = threading.Lock()
        self._results: Dict[str, JobResult] = {}
        self._statuses: Dict[str, Status] = {name: Status.PENDING for name in job_names}
        self._callbacks: List[TerminalCallback] = []
        self._started = False
        self._final: Optional[RunSnapshot] = None
        self._done = threading.Event()

    # ---- transitions ----

    def _set(self, name: str, status: Status) -> None:
        if self._final is not None:
            return
        current = self._statuses.get(name)
        if current is None:
            raise KeyError(f"unknown job {name!r}")
        # terminal statuses never change
        if current.terminal:
            return
        self._statuses[name] = status

    def job_started(self, name: str) -> None:
        with self._lock:
            self._started = True
            self._set(name, Status.RUNNING)

    def job_finished(self, result: JobResult) -> None:
        with self._lock:
            self._started = True
            if self._final is None and not self._statuses[result.name].terminal:
                self._results[result.name] = result
            self._set(result.name, result.status)

    def job_skipped(self, name: str, reason: str) -> None:
        self.job_finished(JobResult.skipped(name, reason))

    def job_cancelled(self, name: str, reason: str = "run cancelled") -> None:
        self.job_finished(JobResult.cancelled(name, reason))

    def cancel_pending(self, reason: str = "run cancelled") -> List[str]:
        """Mark every non-started job cancelled; returns their names."""
        with self._lock:
            names = [n for n, s in self._statuses.items() if s is Status.PENDING]
        for name in names:
            self.job_cancelled(name, reason)
        return names

    def abort(self, reason: str) -> RunSnapshot:
        """Fail whatever is not terminal yet and finalize (internal errors only)."""
        with self._lock:
            unfinished = [n for n, s in self._statuses.items() if not s.terminal]
        for name in unfinished:
            self.job_finished(JobResult(name=name, status=Status.FAILURE, error=reason))
        return self.finalize()

    # ---- queries ----

    def status_of(self, name: str) -> Status:
        with self._lock:
            return self._statuses[name]

    def result_of(self, name: str) -> Optional[JobResult]:
        with self._lock:
            return self._results.get(name)

    def _build_snapshot(self, terminal: bool) -> RunSnapshot:
        statuses = dict(self._statuses)
        if terminal:
            status = aggregate(statuses.values())
        else:
            status = Status.RUNNING if self._started else Status.PENDING
        return RunSnapshot(
            run_id=self.run_id,
            status=status,
            jobs=MappingProxyType(statuses),
            terminal=terminal,
            taken_at=time.time(),
            errors=MappingProxyType({n: r.error for n, r in self._results.items() if r.error}),
            outputs=MappingProxyType({n: MappingProxyType(dict(r.outputs)) for n, r in self._results.items() if r.outputs}),
        )

    def snapshot(self) -> RunSnapshot:
        with self._lock:
            if self._final is not None:
                return self._final
            return self._build_snapshot(terminal=False)

    # ---- terminal ----

    def on_complete(self, callback: TerminalCallback) -> None:
        """Register a callback fired once with the terminal snapshot."""
        fire_now = None
        with self._lock:
            if self._final is None:
                self._callbacks.append(callback)
            else:
                fire_now = self._final
        if fire_now is not None:
            self._fire(callback, fire_now)

    def finalize(self) -> RunSnapshot:
        """Freeze the run status. Every job must be terminal. Idempotent."""
        with self._lock:
            if self._final is not None:
                return self._final
            pending = sorted(n for n, s in self._statuses.items() if not s.terminal)
            if pending:
                raise RuntimeError(f"cannot finalize run {self.run_id}: jobs not terminal: {pending}")
            self._final = self._build_snapshot(terminal=True)
            callbacks, self._callbacks = self._callbacks, []
            final = self._final

        for cb in callbacks:
            self._fire(cb, final)
        self._done.set()
        return final

    def _fire(self, callback: TerminalCallback, snapshot: RunSnapshot) -> None:
        try:
            callback(snapshot)
        except Exception as e:
            get_console().print_warning(f"run {self.run_id}: terminal callback failed: {e}")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    @property
    def final(self) -> Optional[RunSnapshot]:
        return self._final

    def result(self) -> RunResult:
        """Per-job breakdown; available mid-run too (status reflects snapshot)."""
        snap = self.snapshot()
        with self._lock:
            jobs = {
                name: self._results.get(name) or JobResult(name=name, status=status)
                for name, status in self._statuses.items()
            }
        return RunResult(run_id=self.run_id, status=snap.status, jobs=jobs)
