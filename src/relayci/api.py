# api.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from .archive import RunArchive
from .config import load_document_text, load_workflow
from .errors import ConfigError
from .reports import ReportCollector, export_junit
from .scheduler import Scheduler

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    # inline YAML document, or a pipeline file under the server's base dir
    document: Optional[str] = None
    path: Optional[str] = None
    workflow: Optional[str] = None


class CreateRunResponse(BaseModel):
    run_id: str
    workflow: str
    order: list[str]


class StepResponse(BaseModel):
    name: str
    index: int
    exit_code: Optional[int]
    output: str
    truncated: bool
    duration: float


class JobRunResponse(BaseModel):
    name: str
    state: str
    reason: str
    detail: str
    started_at: Optional[str]
    finished_at: Optional[str]
    steps: list[StepResponse] = Field(default_factory=list)
    failed_step: Optional[int]
    exit_code: Optional[int]
    warnings: list[str] = Field(default_factory=list)
    cache_hits: dict[str, str] = Field(default_factory=dict)
    artifacts: list[str] = Field(default_factory=list)


class RunResponse(BaseModel):
    id: str
    workflow: str
    status: str
    order: list[str]
    created_at: str
    finished_at: Optional[str]
    cancelled: bool
    jobs: dict[str, JobRunResponse]


class RunSummary(BaseModel):
    id: str
    workflow: str
    status: str


# -------------------- App --------------------

def create_app(
    scheduler: Scheduler,
    *,
    collector: Optional[ReportCollector] = None,
    archive: Optional[RunArchive] = None,
    base_dir: str | Path = ".",
) -> FastAPI:
    app = FastAPI(title="relayci control plane")
    base = Path(base_dir).resolve()
    if collector is None:
        collector = ReportCollector().attach(scheduler)

    def _snapshot(run_id: str):
        try:
            return scheduler.status(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Run not found") from None

    @app.post("/runs", response_model=CreateRunResponse)
    def create_run(req: CreateRunRequest):
        if bool(req.document) == bool(req.path):
            raise HTTPException(status_code=400, detail="exactly one of document or path is required")
        try:
            if req.document:
                wf = load_document_text(req.document, req.workflow)
            else:
                target = (base / req.path).resolve()
                if not target.is_relative_to(base):
                    raise HTTPException(status_code=400, detail="path must stay inside the base directory")
                wf = load_workflow(target, req.workflow)
            handle = scheduler.submit(wf)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        snapshot = scheduler.status(handle)
        return CreateRunResponse(run_id=handle.id, workflow=handle.workflow, order=snapshot.order)

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs():
        out = []
        for handle in scheduler.runs():
            snap = scheduler.status(handle)
            out.append(RunSummary(id=snap.id, workflow=snap.workflow, status=snap.status))
        return out

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str) -> Any:
        try:
            return scheduler.status(run_id).to_dict()
        except KeyError:
            pass
        if archive is not None:
            data = archive.get(run_id)
            if data is not None:
                return data
        raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs/{run_id}/cancel")
    def cancel_run(run_id: str):
        _snapshot(run_id)
        scheduler.cancel(run_id)
        return {"ok": True}

    @app.get("/runs/{run_id}/reports/{job}")
    def get_reports(run_id: str, job: str):
        snap = _snapshot(run_id)
        if job not in snap.jobs:
            raise HTTPException(status_code=404, detail="Job not found")
        return [r.to_dict() for r in collector.get(run_id, job)]

    @app.get("/runs/{run_id}/junit")
    def get_junit(run_id: str):
        snap = _snapshot(run_id)
        return Response(content=export_junit(snap, collector), media_type="application/xml")

    return app
