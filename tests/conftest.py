import threading
import time

import pytest

from relayci.backends import BuildResult
from relayci.model import JobResult, Status
from relayci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


class FakeBuildBackend:
    def __init__(self, digest="sha256:feedface"):
        self.digest = digest
        self.calls = []

    def build(self, context, dockerfile, target, build_args, tags, cache_from, cache_to,
              *, push=True, no_cache=False, timeout=None):
        self.calls.append({
            "context": context,
            "dockerfile": dockerfile,
            "target": target,
            "build_args": dict(build_args),
            "tags": list(tags),
            "cache_from": list(cache_from),
            "cache_to": cache_to,
            "push": push,
            "no_cache": no_cache,
        })
        return BuildResult(digest=self.digest, pushed_tags=list(tags) if push else [])


class FakeDeployTarget:
    def __init__(self):
        self.calls = []

    def deploy(self, path, channel, target, *, timeout=None):
        self.calls.append((path, channel, target))
        return f"https://{target}--{channel}.example.app"


class ScriptedExecutor:
    """Stands in for JobExecutor: returns a canned status per job name."""

    def __init__(self, outcomes=None, outputs=None, delay=0.0):
        self.outcomes = dict(outcomes or {})
        self.outputs = dict(outputs or {})
        self.delay = delay
        self.executed = []
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0

    def execute(self, job, context=None, cancel_token=None):
        with self._lock:
            self.executed.append(job.name)
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.delay:
                time.sleep(self.delay)
            outcome = self.outcomes.get(job.name, Status.SUCCESS)
            if isinstance(outcome, Exception):
                raise outcome
            return JobResult(
                name=job.name,
                status=outcome,
                outputs=dict(self.outputs.get(job.name, {})),
                error="scripted failure" if outcome is Status.FAILURE else None,
            )
        finally:
            with self._lock:
                self._active -= 1


class BlockingExecutor:
    """Blocks every job until released (or its run is cancelled)."""

    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Event()
        self.run_ids = []

    def execute(self, job, context=None, cancel_token=None):
        self.run_ids.append(context["run"]["id"])
        self.started.set()
        while not self.release.is_set():
            if cancel_token is not None and cancel_token.cancelled:
                return JobResult.cancelled(job.name, cancel_token.reason)
            time.sleep(0.01)
        return JobResult(name=job.name, status=Status.SUCCESS)


@pytest.fixture
def fake_build():
    return FakeBuildBackend()


@pytest.fixture
def fake_deploy():
    return FakeDeployTarget()
