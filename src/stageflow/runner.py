# runner.py
from __future__ import annotations

import logging
import os
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .artifacts import ArtifactStore, expand_variables
from .dag import JobGraph
from .errors import (
    ApprovalTimeoutError,
    ExecutorError,
    StageflowError,
    StateTransitionError,
    VariableConflictError,
)
from .executor import Executor, JobResult
from .gates import Gate, GateController
from .model import GateState, JobSpec, JobState, RunStatus, Suspension, When
from .rules import JobDecision

logger = logging.getLogger(__name__)

S = JobState

# The only legal JobState changes. Anything else is an engine bug.
TRANSITIONS: Dict[JobState, Set[JobState]] = {
    S.PENDING: {S.BLOCKED, S.RUNNABLE, S.MANUAL_WAIT, S.SKIPPED, S.CANCELED},
    S.BLOCKED: {S.RUNNABLE, S.MANUAL_WAIT, S.SKIPPED, S.CANCELED},
    S.MANUAL_WAIT: {S.RUNNABLE, S.CANCELED},
    S.RUNNABLE: {S.RUNNING, S.FAILED, S.CANCELED},
    S.RUNNING: {S.SUCCEEDED, S.FAILED, S.RUNNABLE, S.CANCELED},
}

_BAD = (S.FAILED, S.CANCELED, S.SKIPPED)


@dataclass
class Attempt:
    number: int
    started_at: float
    finished_at: Optional[float] = None
    status: Optional[JobState] = None
    error: Optional[str] = None


@dataclass
class JobRun:
    """Runtime record of one job in one run. Written only by the Scheduler."""
    name: str
    stage: str
    when: When
    state: JobState = S.PENDING
    suspension: Optional[Suspension] = None
    reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    attempts: List[Attempt] = field(default_factory=list)
    environment_name: Optional[str] = None
    environment_url: Optional[str] = None
    environment_action: Optional[str] = None
    logs: str = ""
    history: List[Tuple[str, float]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stage": self.stage,
            "when": self.when.value,
            "state": self.state.value,
            "suspension": self.suspension.value if self.suspension else None,
            "reason": self.reason,
            "error": self.error,
            "attempts": len(self.attempts),
            "environment": (
                {"name": self.environment_name, "url": self.environment_url, "action": self.environment_action}
                if self.environment_name else None
            ),
        }


TransitionListener = Callable[[JobRun, JobState, JobState], None]


@dataclass(frozen=True)
class _Done:
    job: str
    attempt: int
    future: Future


@dataclass(frozen=True)
class _GateEvent:
    job: str


class _Wakeup:
    pass


def default_max_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Drives one run's job graph to completion.

    The dispatch loop is the single writer of JobState and of the artifact
    store: executor threads and gate callers only post events, which the
    loop applies one at a time.
    """

    def __init__(
        self,
        graph: JobGraph,
        executor: Executor,
        *,
        run_id: str,
        store: ArtifactStore,
        gates: GateController,
        decisions: Optional[Mapping[str, JobDecision]] = None,
        variables: Optional[Mapping[str, str]] = None,
        work_dir: str | Path = ".stageflow/work",
        max_workers: Optional[int] = None,
    ):
        self.graph = graph
        self.executor = executor
        self.run_id = run_id
        self.store = store
        self.gates = gates
        self.decisions = dict(decisions or {})
        self.variables = dict(variables or {})
        self.work_dir = Path(work_dir).resolve()
        self.max_workers = max_workers or default_max_workers()
        self.status = RunStatus.CREATED

        self.jobs: Dict[str, JobRun] = {}
        for name in graph.order:
            spec = graph.jobs[name]
            decision = self.decisions.get(name)
            when = decision.when if decision is not None else spec.when
            self.jobs[name] = JobRun(name=name, stage=spec.stage, when=When(when))

        self._rank = {name: i for i, name in enumerate(graph.order)}
        self._events: "queue.Queue[object]" = queue.Queue()
        self._cancel = threading.Event()
        self._lock = threading.RLock()
        self._running = False
        self._in_flight: Dict[str, Future] = {}
        self._held_groups: Dict[str, str] = {}
        self._envs: Dict[str, Dict[str, str]] = {}
        self._listeners: List[TransitionListener] = []
        gates.add_listener(self._on_gate)

    # ------------------------------------------------------------------
    # public API (thread-safe)
    # ------------------------------------------------------------------

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def cancel(self) -> None:
        """Cancel every non-terminal job and stop dispatching."""
        self._cancel.set()
        with self._lock:
            if not self._running:
                self._apply_cancel()
                self.status = self._rollup()
                return
        self._events.put(_Wakeup())

    @property
    def canceled(self) -> bool:
        return self._cancel.is_set()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: jr.to_dict() for name, jr in self.jobs.items()}

    def logs(self, job: str) -> str:
        with self._lock:
            return self.jobs[job].logs

    def run(self, *, block_on_gates: bool = True) -> RunStatus:
        """
        Run until every job is terminal.

        With block_on_gates=False, return RunStatus.MANUAL as soon as the
        only remaining work is waiting on approvals; call run() again after
        resolving the gates to continue.
        """
        with self._lock:
            if self.status.terminal:
                return self.status
            self._running = True
            self.status = RunStatus.RUNNING

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"stageflow-{self.run_id}")
        try:
            self._drain_events()
            while True:
                if self._cancel.is_set():
                    self._apply_cancel()
                else:
                    self._expire_gates()
                    self._settle(pool)

                if not self._in_flight and all(j.state.terminal for j in self.jobs.values()):
                    break
                if not self._in_flight and not self._cancel.is_set():
                    if not self._events.empty():
                        # a gate resolved while we were dispatching
                        self._drain_events()
                        continue
                    if not self.gates.open_gates():
                        stuck = [n for n, j in self.jobs.items() if not j.state.terminal]
                        raise StageflowError("Scheduler stalled with no runnable work", details={"jobs": stuck})
                    if not block_on_gates:
                        break

                parked = not self._in_flight and bool(self.gates.open_gates())
                if parked:
                    with self._lock:
                        self.status = RunStatus.MANUAL
                self._wait_for_event()
                if parked:
                    with self._lock:
                        self.status = RunStatus.RUNNING
        except BaseException:
            # stop in-flight executors before joining the pool
            self._cancel.set()
            raise
        finally:
            pool.shutdown(wait=True)
            self._drain_events()
            with self._lock:
                self._running = False
                self.status = self._rollup()

        logger.info("Run %s finished dispatching: %s", self.run_id, self.status.value)
        return self.status

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------

    def _on_gate(self, gate: Gate) -> None:
        if gate.resolved:
            self._events.put(_GateEvent(gate.job))

    def _wait_for_event(self) -> None:
        timeout = None if self._in_flight else self.gates.seconds_until_deadline()
        try:
            event = self._events.get(timeout=timeout)
        except queue.Empty:
            return
        self._handle(event)
        self._drain_events()

    def _drain_events(self) -> None:
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return
            self._handle(event)

    def _handle(self, event: object) -> None:
        if isinstance(event, _Done):
            self._complete(event)
        elif isinstance(event, _GateEvent):
            self._gate_resolved(event.job)

    # ------------------------------------------------------------------
    # state changes
    # ------------------------------------------------------------------

    def _transition(
        self,
        jr: JobRun,
        new: JobState,
        *,
        reason: Optional[str] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        old = jr.state
        if new not in TRANSITIONS.get(old, set()):
            raise StateTransitionError(
                f"Illegal transition {old.value} -> {new.value}",
                job=jr.name,
            )
        with self._lock:
            jr.state = new
            jr.reason = reason
            if error is not None:
                jr.error = error
            if new == S.BLOCKED:
                jr.suspension = Suspension.AWAITING_PREDECESSORS
            elif new == S.MANUAL_WAIT:
                jr.suspension = Suspension.AWAITING_APPROVAL
            else:
                jr.suspension = None
            jr.history.append((new.value, time.time()))
        logger.debug("job %s: %s -> %s (%s)", jr.name, old.value, new.value, reason or "")
        for listener in self._listeners:
            listener(jr, old, new)

    def _settle(self, pool: ThreadPoolExecutor) -> None:
        while True:
            changed = self._advance()
            changed = self._dispatch(pool) or changed
            if not changed:
                return

    def _upstream_failed(self, name: str) -> bool:
        return any(self.jobs[a].state in (S.FAILED, S.CANCELED) for a in self.graph.ancestors(name))

    def _advance(self) -> bool:
        """Move pending/blocked jobs forward based on predecessor states."""
        changed = False
        for name in self.graph.order:
            jr = self.jobs[name]
            if jr.state not in (S.PENDING, S.BLOCKED):
                continue
            preds = [self.jobs[p] for p in self.graph.predecessors[name]]
            all_terminal = all(p.state.terminal for p in preds)
            bad = [p.name for p in preds if p.state in _BAD]

            target: Optional[JobState] = None
            reason: Optional[str] = None
            if jr.when == When.ALWAYS:
                target = S.RUNNABLE if all_terminal else S.BLOCKED
            elif jr.when == When.ON_FAILURE:
                if not all_terminal:
                    target = S.BLOCKED
                elif self._upstream_failed(name):
                    target = S.RUNNABLE
                else:
                    target, reason = S.SKIPPED, "no upstream failure"
            elif bad:
                target, reason = S.SKIPPED, f"upstream did not succeed: {sorted(bad)}"
            elif all(p.state == S.SUCCEEDED for p in preds):
                target = S.MANUAL_WAIT if jr.when == When.MANUAL else S.RUNNABLE
            else:
                target = S.BLOCKED

            if target == jr.state:
                continue
            self._transition(jr, target, reason=reason)
            if target == S.MANUAL_WAIT:
                self.gates.request_approval(name)
            changed = True
        return changed

    def _dispatch(self, pool: ThreadPoolExecutor) -> bool:
        if self._cancel.is_set():
            return False
        changed = False
        runnable = sorted(
            (n for n, j in self.jobs.items() if j.state == S.RUNNABLE),
            key=self._rank.__getitem__,
        )
        for name in runnable:
            if len(self._in_flight) >= self.max_workers:
                break
            spec = self.graph.jobs[name]
            group = spec.resource_group
            if group is not None and group in self._held_groups:
                continue

            jr = self.jobs[name]
            try:
                env, workspace = self._prepare(spec)
            except StageflowError as e:
                logger.warning("Job %s cannot start: %s", name, e.message)
                self._transition(jr, S.FAILED, reason=e.message, error=e.to_dict())
                changed = True
                continue
            except OSError as e:
                err = ExecutorError(f"workspace setup failed: {e}", job=name)
                self._transition(jr, S.FAILED, reason=err.message, error=err.to_dict())
                changed = True
                continue

            attempt = len(jr.attempts) + 1
            with self._lock:
                jr.attempts.append(Attempt(number=attempt, started_at=time.monotonic()))
            if group is not None:
                self._held_groups[group] = name
            self._transition(jr, S.RUNNING, reason=f"attempt {attempt}")

            future = pool.submit(self._execute, spec, env, workspace)
            self._in_flight[name] = future
            future.add_done_callback(lambda f, n=name, a=attempt: self._events.put(_Done(n, a, f)))
            changed = True
        return changed

    # ------------------------------------------------------------------
    # dispatch-time resolution
    # ------------------------------------------------------------------

    def _workspace(self, name: str) -> Path:
        return self.work_dir / self.run_id / name

    def _resolve_env(self, spec: JobSpec) -> Dict[str, str]:
        jr = self.jobs[spec.name]
        ctx = dict(self.variables)
        ctx.update({
            "CI": "true",
            "CI_PIPELINE_ID": self.run_id,
            "CI_JOB_NAME": spec.name,
            "CI_JOB_STAGE": spec.stage,
            "CI_JOB_ATTEMPT": str(len(jr.attempts) + 1),
        })
        exports = self.store.variables.view_for(self.graph.artifact_sources[spec.name])
        lookup = {**ctx, **exports}

        job_vars = dict(spec.variables)
        decision = self.decisions.get(spec.name)
        if decision is not None:
            job_vars.update(decision.variables)
        job_vars = {k: expand_variables(v, lookup) for k, v in job_vars.items()}

        env = {**ctx, **job_vars, **exports}
        if spec.environment is not None:
            env_name = expand_variables(spec.environment.name, env)
            env["CI_ENVIRONMENT_NAME"] = env_name
            env["CI_ENVIRONMENT_ACTION"] = spec.environment.action
            with self._lock:
                jr.environment_name = env_name
                jr.environment_action = spec.environment.action
            # stop jobs publish no URL
            if spec.environment.url and spec.environment.action == "start":
                env_url = expand_variables(spec.environment.url, env)
                env["CI_ENVIRONMENT_URL"] = env_url
                with self._lock:
                    jr.environment_url = env_url
        return env

    def _prepare(self, spec: JobSpec) -> Tuple[Dict[str, str], Path]:
        sources = [self.graph.jobs[s] for s in self.graph.artifact_sources[spec.name]]
        if self.jobs[spec.name].when in (When.ALWAYS, When.ON_FAILURE):
            # these run after upstream failures; take whatever did succeed
            sources = [s for s in sources if self.jobs[s.name].state == S.SUCCEEDED]
        self.store.confirm(spec.name, sources)
        env = self._resolve_env(spec)

        workspace = self._workspace(spec.name)
        self.executor.prepare_workspace(spec, workspace)
        bundles = [b for b in (self.store.bundle(s.name) for s in sources) if b is not None]
        restored = self.store.restore(bundles, workspace)
        if restored:
            logger.debug("job %s: restored %d artifact files", spec.name, len(restored))
        self._envs[spec.name] = env
        return env, workspace

    def _execute(self, spec: JobSpec, env: Dict[str, str], workspace: Path) -> JobResult:
        """Runs on a pool thread. Never touches scheduler state."""
        try:
            return self.executor.run(spec, env, workspace=workspace, cancel=self._cancel)
        except Exception as e:  # executor contract broken: report, don't hang
            logger.exception("Executor raised for job %s", spec.name)
            return JobResult(status=S.FAILED, error=f"{type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # completion (single commit point per job)
    # ------------------------------------------------------------------

    def _complete(self, event: _Done) -> None:
        name = event.job
        self._in_flight.pop(name, None)
        spec = self.graph.jobs[name]
        if spec.resource_group is not None and self._held_groups.get(spec.resource_group) == name:
            del self._held_groups[spec.resource_group]

        jr = self.jobs[name]
        result: JobResult = event.future.result()
        with self._lock:
            attempt = jr.attempts[event.attempt - 1]
            attempt.finished_at = time.monotonic()
            attempt.status = result.status
            attempt.error = result.error
            jr.logs += result.logs

        if jr.state != S.RUNNING:
            logger.debug("Ignoring result for %s in state %s", name, jr.state.value)
            return

        workspace = self._workspace(name)
        if result.succeeded:
            try:
                pub = self.store.publish(
                    spec,
                    workspace,
                    succeeded=True,
                    bundle=result.artifacts,
                    exported=result.exported_variables,
                )
            except (VariableConflictError, ExecutorError) as e:
                self._transition(jr, S.FAILED, reason=e.message, error=e.to_dict())
                return
            except OSError as e:
                err = ExecutorError(f"could not publish artifacts: {e}", job=name)
                self._transition(jr, S.FAILED, reason=err.message, error=err.to_dict())
                return
            if jr.environment_url is not None and pub.variables:
                env = {**self._envs.get(name, {}), **pub.variables}
                with self._lock:
                    jr.environment_url = expand_variables(spec.environment.url, env)
            self._transition(jr, S.SUCCEEDED)
            return

        if event.attempt <= spec.retry and not self._cancel.is_set():
            self._transition(jr, S.RUNNABLE, reason=f"retrying after attempt {event.attempt}: {result.error}")
            return

        try:
            self.store.publish(spec, workspace, succeeded=False, bundle=result.artifacts)
        except OSError as e:
            logger.warning("Could not keep artifacts of failed job %s: %s", name, e)
        err = ExecutorError(result.error or "job failed", job=name, details={"exit_code": result.exit_code})
        self._transition(jr, S.FAILED, reason=err.message, error=err.to_dict())

    def _gate_resolved(self, name: str) -> None:
        gate = self.gates.get(name)
        jr = self.jobs.get(name)
        if gate is None or jr is None or jr.state != S.MANUAL_WAIT or not gate.resolved:
            return
        if gate.state == GateState.APPROVED:
            self._transition(jr, S.RUNNABLE, reason=f"approved by {gate.actor}")
        elif gate.timed_out:
            err = ApprovalTimeoutError("approval timed out", job=name)
            self._transition(jr, S.CANCELED, reason=err.message, error=err.to_dict())
        else:
            reason = f"rejected by {gate.actor}" + (f": {gate.reason}" if gate.reason else "")
            self._transition(jr, S.CANCELED, reason=reason)

    def _expire_gates(self) -> None:
        expired = self.gates.expire_overdue()
        for gate in expired:
            logger.warning("Approval for %s timed out", gate.job)
        if expired:
            self._drain_events()

    def _apply_cancel(self) -> None:
        for jr in self.jobs.values():
            if not jr.state.terminal:
                self._transition(jr, S.CANCELED, reason="pipeline canceled")

    def _rollup(self) -> RunStatus:
        if self._cancel.is_set():
            return RunStatus.CANCELED
        states = [j.state for j in self.jobs.values()]
        if any(not s.terminal for s in states):
            return RunStatus.MANUAL if S.MANUAL_WAIT in states else RunStatus.RUNNING
        if any(s in (S.FAILED, S.CANCELED) for s in states):
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED
