# run.py
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import settings
from .artifacts import ArtifactStore
from .dag import JobGraph, build_graph
from .executor import Executor, ShellExecutor
from .gates import Gate, GateController
from .model import PipelineSpec, RunStatus, TriggerContext
from .rules import Evaluation, TriggerEvaluator
from .runner import Scheduler, TransitionListener

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobSnapshot:
    name: str
    stage: str
    state: str
    when: str
    suspension: Optional[str] = None
    attempts: int = 0
    reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    environment: Optional[Dict[str, Optional[str]]] = None
    gate: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    exported: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RunSnapshot:
    run_id: str
    status: str
    event: str
    branch: str
    jobs: Dict[str, JobSnapshot]
    excluded: List[str] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PipelineRun:
    """
    One admitted pipeline run.

    Wraps the scheduler, gate controller and artifact store that belong to
    the run; everything here is safe to call from other threads while
    start() is executing.
    """

    def __init__(
        self,
        run_id: str,
        spec: PipelineSpec,
        evaluation: Evaluation,
        graph: JobGraph,
        scheduler: Scheduler,
        gates: GateController,
        store: ArtifactStore,
    ):
        self.id = run_id
        self.spec = spec
        self.trigger = evaluation.trigger
        self.evaluation = evaluation
        self.graph = graph
        self.scheduler = scheduler
        self.gates = gates
        self.store = store

    def start(self, *, block_on_gates: bool = True) -> RunStatus:
        logger.info("Starting run %s (%d jobs)", self.id, len(self.graph.jobs))
        return self.scheduler.run(block_on_gates=block_on_gates)

    def on_transition(self, listener: TransitionListener) -> None:
        self.scheduler.add_listener(listener)

    def on_gate(self, listener) -> None:
        self.gates.add_listener(listener)

    def approve(self, job: str, actor: str = "user") -> Gate:
        return self.gates.approve(job, actor)

    def reject(self, job: str, actor: str = "user", reason: Optional[str] = None) -> Gate:
        return self.gates.reject(job, actor, reason)

    def cancel(self) -> None:
        logger.info("Canceling run %s", self.id)
        self.scheduler.cancel()

    def logs(self, job: str) -> str:
        return self.scheduler.logs(job)

    @property
    def run_status(self) -> RunStatus:
        return self.scheduler.status

    def status(self) -> RunSnapshot:
        """Point-in-time view of the run, every job and every gate."""
        gates = self.gates.gates()
        bundles = self.store.bundles()
        jobs: Dict[str, JobSnapshot] = {}
        for name, data in self.scheduler.snapshot().items():
            gate = gates.get(name)
            bundle = bundles.get(name)
            jobs[name] = JobSnapshot(
                name=name,
                stage=data["stage"],
                state=data["state"],
                when=data["when"],
                suspension=data["suspension"],
                attempts=data["attempts"],
                reason=data["reason"],
                error=data["error"],
                environment=data["environment"],
                gate=gate.state.value if gate else None,
                artifacts=list(bundle.files) if bundle else [],
                exported=self.store.variables.exported_by(name),
            )
        return RunSnapshot(
            run_id=self.id,
            status=self.scheduler.status.value,
            event=self.trigger.event,
            branch=self.trigger.branch,
            jobs=jobs,
            excluded=self.evaluation.excluded,
            variables=self.store.variables.as_dict(),
        )


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def create_run(
    spec: PipelineSpec,
    trigger: TriggerContext,
    *,
    executor: Optional[Executor] = None,
    work_dir: str | Path | None = None,
    artifact_dir: str | Path | None = None,
    max_workers: Optional[int] = None,
    approval_timeout: Optional[float] = None,
    run_id: Optional[str] = None,
) -> Optional[PipelineRun]:
    """
    Admit a trigger and build its run.

    Returns None when the workflow rules (or every job's rules) leave nothing
    to run. Structural problems raise a ConfigError before any job starts.
    """
    spec.validate()
    evaluation = TriggerEvaluator(spec).evaluate(trigger)
    if evaluation is None:
        return None
    if not evaluation.included:
        logger.info("No jobs matched for event=%s branch=%s; no pipeline", trigger.event, trigger.branch)
        return None

    graph = build_graph(spec, evaluation.included)

    rid = run_id or new_run_id()
    store = ArtifactStore(artifact_dir or settings.ARTIFACT_DIR, rid)
    gates = GateController(
        approval_timeout=approval_timeout if approval_timeout is not None else settings.APPROVAL_TIMEOUT,
    )
    scheduler = Scheduler(
        graph,
        executor or ShellExecutor(),
        run_id=rid,
        store=store,
        gates=gates,
        decisions=evaluation.decisions,
        variables=evaluation.variables,
        work_dir=work_dir or settings.WORK_DIR,
        max_workers=max_workers or settings.MAX_WORKERS,
    )
    return PipelineRun(rid, spec, evaluation, graph, scheduler, gates, store)
