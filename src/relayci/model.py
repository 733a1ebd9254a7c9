# model.py
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Tuple


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (Status.PENDING, Status.RUNNING)


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    MANUAL = "manual"


STEP_KINDS = ("shell", "docker_build", "deploy", "noop")


@dataclass(frozen=True)
class Step:
    """A single unit of work inside a CI job."""
    name: str
    kind: str = "shell"
    run: str | None = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    condition: str | None = None
    id: str | None = None
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + run condition + cache wiring.

    `disabled` turns the job into a stub that always reports success with
    zero steps (replaces "swap every step for an echo" workflow copies).
    """
    name: str
    steps: List[Step] = field(default_factory=list)
    needs: List[str] = field(default_factory=list)
    condition: str | None = None
    env: Dict[str, str] = field(default_factory=dict)

    # first matching key wins on restore; cache_to is written on success
    cache_keys: List[str] = field(default_factory=list)
    cache_to: str | None = None
    cache_paths: List[str] = field(default_factory=list)

    outputs: Dict[str, str] = field(default_factory=dict)
    timeout: float | None = None  # seconds
    continue_on_error: bool = False
    disabled: bool = False


@dataclass(frozen=True)
class Trigger:
    event: EventKind
    branches: Tuple[str, ...] | None = None
    paths: Tuple[str, ...] | None = None
    paths_ignore: Tuple[str, ...] | None = None
    cron: str | None = None


@dataclass(frozen=True)
class Concurrency:
    group: str
    cancel_in_progress: bool = False


@dataclass(frozen=True)
class WorkflowInput:
    name: str
    default: Any = None
    required: bool = False


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    triggers: List[Trigger] = field(default_factory=list)
    concurrency: Concurrency | None = None
    env: Dict[str, str] = field(default_factory=dict)
    inputs: List[WorkflowInput] = field(default_factory=list)
    # explicit precedence between trigger kinds; empty means declaration order
    trigger_priority: Tuple[EventKind, ...] = ()


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify_ref(ref: str, max_len: int = 63) -> str:
    """URL/tag safe version of a ref name (lowercase, dashes, max 63 chars)."""
    name = ref
    for prefix in ("refs/heads/", "refs/tags/", "refs/pull/"):
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    slug = _SLUG_RE.sub("-", name.lower()).strip("-")
    return slug[:max_len].rstrip("-")


@dataclass(frozen=True)
class TriggerEvent:
    """The only way into the engine: one incoming event."""
    kind: EventKind
    changed_files: FrozenSet[str] = frozenset()
    ref: str = "refs/heads/main"
    sha: str = ""
    actor: str = ""
    repository: str = ""
    base_ref: str | None = None  # target branch of a pull request
    payload: Dict[str, Any] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @property
    def ref_slug(self) -> str:
        return slugify_ref(self.ref)

    @property
    def repository_owner(self) -> str:
        return self.repository.split("/", 1)[0] if "/" in self.repository else ""


@dataclass
class StepResult:
    name: str
    status: Status
    outputs: Dict[str, str] = field(default_factory=dict)
    error: str | None = None
    duration: float = 0.0
    # step failed but was marked continue_on_error
    continued: bool = False


@dataclass
class JobResult:
    name: str
    status: Status
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    error: str | None = None
    cache_hit: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @classmethod
    def skipped(cls, name: str, reason: str) -> JobResult:
        now = time.time()
        return cls(name=name, status=Status.SKIPPED, error=reason, started_at=now, finished_at=now)

    @classmethod
    def cancelled(cls, name: str, reason: str = "run cancelled") -> JobResult:
        now = time.time()
        return cls(name=name, status=Status.CANCELLED, error=reason, started_at=now, finished_at=now)

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass
class RunResult:
    run_id: str
    status: Status
    jobs: Dict[str, JobResult] = field(default_factory=dict)

    @property
    def statuses(self) -> Dict[str, Status]:
        return {name: r.status for name, r in self.jobs.items()}
