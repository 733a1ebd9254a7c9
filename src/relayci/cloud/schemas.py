from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from relayci.model import EventKind

# -------------------- Requests --------------------


class WorkflowDocument(BaseModel):
    """Serialized workflow, as produced by relayci.codec.workflow_to_dict."""
    name: str
    jobs: list[dict[str, Any]] = Field(default_factory=list)
    on: list[dict[str, Any]] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    inputs: list[dict[str, Any]] = Field(default_factory=list)
    concurrency: Optional[dict[str, Any]] = None
    trigger_priority: list[str] = Field(default_factory=list)


class CreateRunRequest(BaseModel):
    workflow: str
    event: EventKind
    ref: str = "refs/heads/main"
    sha: str = ""
    actor: str = ""
    repository: str = ""
    base_ref: Optional[str] = None
    changed_files: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, Any] = Field(default_factory=dict)


# -------------------- Responses --------------------


class WorkflowRegistered(BaseModel):
    name: str
    jobs: int
    stages: list[list[str]]


class CreateRunResponse(BaseModel):
    triggered: bool
    run_id: Optional[str] = None


class RunSummary(BaseModel):
    run_id: str
    workflow: str
    event: str
    ref: str
    status: str
    concurrency_group: Optional[str] = None


class RunSnapshotResponse(BaseModel):
    run_id: str
    status: str
    terminal: bool
    taken_at: float
    jobs: dict[str, str]
    errors: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, dict[str, str]] = Field(default_factory=dict)


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
