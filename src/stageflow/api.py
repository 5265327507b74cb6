# api.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .errors import ConfigError, UnknownGateError
from .executor import Executor, ShellExecutor
from .loader import parse_pipeline
from .model import PipelineSpec, TriggerContext
from .run import PipelineRun, create_run

logger = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    event: str = "push"
    branch: str
    default_branch: str = "main"
    variables: dict[str, str] = Field(default_factory=dict)
    changed_files: Optional[list[str]] = None
    # inline pipeline document; falls back to the server's workflow
    pipeline: Optional[dict[str, Any]] = None

class CreateRunResponse(BaseModel):
    created: bool
    run_id: Optional[str] = None
    jobs: list[str] = Field(default_factory=list)
    excluded: list[str] = Field(default_factory=list)

class GateRequest(BaseModel):
    actor: str = "api"
    reason: Optional[str] = None

class GateResponse(BaseModel):
    job: str
    state: str
    actor: Optional[str]
    reason: Optional[str]

class JobStatus(BaseModel):
    name: str
    stage: str
    state: str
    when: str
    suspension: Optional[str] = None
    attempts: int = 0
    reason: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    environment: Optional[dict[str, Optional[str]]] = None
    gate: Optional[str] = None
    artifacts: list[str] = Field(default_factory=list)
    exported: dict[str, str] = Field(default_factory=dict)

class RunStatusResponse(BaseModel):
    run_id: str
    status: str
    event: str
    branch: str
    jobs: dict[str, JobStatus]
    excluded: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)

# -------------------- Registry --------------------

class RunRegistry:
    """In-memory runs of this process, each driven on its own thread."""

    def __init__(self):
        self._runs: dict[str, PipelineRun] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def start(self, run: PipelineRun) -> None:
        t = threading.Thread(target=self._drive, args=(run,), name=f"stageflow-run-{run.id}", daemon=True)
        with self._lock:
            self._runs[run.id] = run
            self._threads[run.id] = t
        t.start()

    @staticmethod
    def _drive(run: PipelineRun) -> None:
        try:
            run.start(block_on_gates=True)
        except Exception:
            logger.exception("Run %s crashed", run.id)

    def get(self, run_id: str) -> Optional[PipelineRun]:
        with self._lock:
            return self._runs.get(run_id)

    def join(self, run_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for a run's thread; True if it finished."""
        with self._lock:
            t = self._threads.get(run_id)
        if t is None:
            return False
        t.join(timeout)
        return not t.is_alive()


def create_app(
    spec: Optional[PipelineSpec] = None,
    *,
    executor_factory: Optional[Callable[[], Executor]] = None,
    work_dir: Optional[str] = None,
    artifact_dir: Optional[str] = None,
    max_workers: Optional[int] = None,
    approval_timeout: Optional[float] = None,
    registry: Optional[RunRegistry] = None,
) -> FastAPI:
    app = FastAPI(title="stageflow")
    registry = registry or RunRegistry()
    app.state.registry = registry
    executor_factory = executor_factory or ShellExecutor

    def _run_or_404(run_id: str) -> PipelineRun:
        run = registry.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return run

    def _job_or_404(run: PipelineRun, job: str) -> None:
        if job not in run.graph.jobs:
            raise HTTPException(status_code=404, detail=f"Job '{job}' is not part of run {run.id}")

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=CreateRunResponse)
    def create(req: CreateRunRequest):
        try:
            run_spec = parse_pipeline(req.pipeline) if req.pipeline is not None else spec
        except ConfigError as e:
            raise HTTPException(status_code=422, detail=e.to_dict())
        if run_spec is None:
            raise HTTPException(status_code=400, detail="No pipeline given and the server has no default workflow")

        trigger = TriggerContext(
            event=req.event,
            branch=req.branch,
            default_branch=req.default_branch,
            variables=req.variables,
            changed_files=tuple(req.changed_files) if req.changed_files is not None else None,
        )
        try:
            run = create_run(
                run_spec,
                trigger,
                executor=executor_factory(),
                work_dir=work_dir,
                artifact_dir=artifact_dir,
                max_workers=max_workers,
                approval_timeout=approval_timeout,
            )
        except ConfigError as e:
            raise HTTPException(status_code=422, detail=e.to_dict())

        if run is None:
            return CreateRunResponse(created=False)

        registry.start(run)
        return CreateRunResponse(
            created=True,
            run_id=run.id,
            jobs=run.graph.order,
            excluded=run.evaluation.excluded,
        )

    @app.get("/runs/{run_id}", response_model=RunStatusResponse)
    def get_run(run_id: str):
        run = _run_or_404(run_id)
        return RunStatusResponse.model_validate(run.status().to_dict())

    @app.post("/runs/{run_id}/jobs/{job}/approve", response_model=GateResponse)
    def approve(run_id: str, job: str, req: Optional[GateRequest] = None):
        req = req or GateRequest()
        run = _run_or_404(run_id)
        _job_or_404(run, job)
        try:
            gate = run.approve(job, actor=req.actor)
        except UnknownGateError as e:
            raise HTTPException(status_code=409, detail=e.to_dict())
        return GateResponse(job=gate.job, state=gate.state.value, actor=gate.actor, reason=gate.reason)

    @app.post("/runs/{run_id}/jobs/{job}/reject", response_model=GateResponse)
    def reject(run_id: str, job: str, req: Optional[GateRequest] = None):
        req = req or GateRequest()
        run = _run_or_404(run_id)
        _job_or_404(run, job)
        try:
            gate = run.reject(job, actor=req.actor, reason=req.reason)
        except UnknownGateError as e:
            raise HTTPException(status_code=409, detail=e.to_dict())
        return GateResponse(job=gate.job, state=gate.state.value, actor=gate.actor, reason=gate.reason)

    @app.post("/runs/{run_id}/cancel", response_model=RunStatusResponse)
    def cancel(run_id: str):
        run = _run_or_404(run_id)
        run.cancel()
        registry.join(run_id, timeout=10)
        return RunStatusResponse.model_validate(run.status().to_dict())

    return app
