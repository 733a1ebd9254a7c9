from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException

from relayci import settings
from relayci.backends import Backends
from relayci.cache import CacheResolver, LocalCacheBackend
from relayci.codec import snapshot_to_dict, workflow_from_dict
from relayci.errors import CIError, ConfigurationError
from relayci.model import TriggerEvent
from relayci.runner import Orchestrator, WorkflowRun
from relayci.webhook import WebhookNotifier

from .schemas import (
    CancelResponse,
    CreateRunRequest,
    CreateRunResponse,
    RunSnapshotResponse,
    RunSummary,
    WorkflowDocument,
    WorkflowRegistered,
)


class Registry:
    """Registered workflows (one Orchestrator each) and run lookup across them."""

    def __init__(
        self,
        workspace: str | Path,
        cache: Optional[CacheResolver],
        backends: Optional[Backends],
        max_workers: Optional[int],
        webhook_url: Optional[str],
    ):
        self.workspace = workspace
        self.cache = cache
        self.backends = backends
        self.max_workers = max_workers
        self.webhook_url = webhook_url
        self._lock = threading.Lock()
        self._orchestrators: Dict[str, Orchestrator] = {}

    def register(self, doc: dict) -> Orchestrator:
        orch = Orchestrator(
            workflow_from_dict(doc),
            workspace=self.workspace,
            cache=self.cache,
            backends=self.backends,
            max_workers=self.max_workers,
            on_complete=[WebhookNotifier(self.webhook_url)] if self.webhook_url else [],
        )
        with self._lock:
            self._orchestrators[orch.workflow.name] = orch
        return orch

    def orchestrator(self, name: str) -> Optional[Orchestrator]:
        with self._lock:
            return self._orchestrators.get(name)

    def runs(self) -> list[WorkflowRun]:
        with self._lock:
            orchestrators = list(self._orchestrators.values())
        runs = [r for o in orchestrators for r in o.runs()]
        return sorted(runs, key=lambda r: r.created_at)

    def find(self, run_id: str) -> Optional[tuple[Orchestrator, WorkflowRun]]:
        with self._lock:
            orchestrators = list(self._orchestrators.values())
        for orch in orchestrators:
            run = orch.get(run_id)
            if run is not None:
                return orch, run
        return None


def create_app(
    workspace: str | Path = ".",
    *,
    cache: Optional[CacheResolver] = None,
    backends: Optional[Backends] = None,
    max_workers: Optional[int] = settings.MAX_WORKERS,
    webhook_url: Optional[str] = settings.WEBHOOK_URL,
) -> FastAPI:
    app = FastAPI(title="RelayCI Control Plane")
    registry = Registry(workspace, cache, backends, max_workers, webhook_url)
    app.state.registry = registry

    # -------------------- Endpoints --------------------

    @app.post("/workflows", response_model=WorkflowRegistered)
    async def register_workflow(doc: WorkflowDocument):
        try:
            orch = registry.register(doc.model_dump())
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return WorkflowRegistered(
            name=orch.workflow.name,
            jobs=len(orch.graph),
            stages=orch.graph.stages(),
        )

    @app.post("/runs", response_model=CreateRunResponse)
    async def create_run(req: CreateRunRequest):
        orch = registry.orchestrator(req.workflow)
        if orch is None:
            raise HTTPException(status_code=404, detail=f"Workflow {req.workflow!r} not registered")

        event = TriggerEvent(
            kind=req.event,
            changed_files=frozenset(req.changed_files),
            ref=req.ref,
            sha=req.sha,
            actor=req.actor,
            repository=req.repository,
            base_ref=req.base_ref,
            payload=req.payload,
            inputs=req.inputs,
        )
        try:
            run = orch.trigger(event)
        except CIError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if run is None:
            return CreateRunResponse(triggered=False)

        orch.start(run, background=True)
        return CreateRunResponse(triggered=True, run_id=run.id)

    @app.get("/runs", response_model=list[RunSummary])
    async def list_runs():
        return [
            RunSummary(
                run_id=r.id,
                workflow=r.workflow.name,
                event=r.event.kind.value,
                ref=r.event.ref,
                status=r.snapshot().status.value,
                concurrency_group=r.concurrency_group,
            )
            for r in registry.runs()
        ]

    @app.get("/runs/{run_id}", response_model=RunSnapshotResponse)
    async def get_run(run_id: str):
        found = registry.find(run_id)
        if found is None:
            raise HTTPException(status_code=404, detail="Run not found")
        _, run = found
        return RunSnapshotResponse(**snapshot_to_dict(run.snapshot()))

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    async def cancel_run(run_id: str):
        found = registry.find(run_id)
        if found is None:
            raise HTTPException(status_code=404, detail="Run not found")
        orch, run = found
        return CancelResponse(run_id=run.id, cancelled=orch.cancel(run.id))

    return app


app = create_app(
    cache=CacheResolver(LocalCacheBackend(settings.CACHE_DIR), default_scope=settings.DEFAULT_BRANCH),
)
