# gates.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from .errors import ApprovalTimeoutError, UnknownGateError
from .model import GateState

logger = logging.getLogger(__name__)

GateListener = Callable[["Gate"], None]


@dataclass(frozen=True)
class Gate:
    """Approval state of one manual job in one run."""
    job: str
    state: GateState = GateState.AWAITING_APPROVAL
    requested_at: float = 0.0
    deadline: Optional[float] = None
    resolved_at: Optional[float] = None
    actor: Optional[str] = None
    reason: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.state != GateState.AWAITING_APPROVAL

    @property
    def timed_out(self) -> bool:
        return self.reason == ApprovalTimeoutError.kind


class GateController:
    """
    Tracks one Gate per manual job.

    request_approval() opens a gate and notifies listeners; approve() and
    reject() are the only ways out of awaiting-approval and are no-ops once
    the gate is resolved. Listeners run outside the lock, on the caller's
    thread.
    """

    def __init__(
        self,
        *,
        approval_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.approval_timeout = approval_timeout
        self._clock = clock
        self._gates: Dict[str, Gate] = {}
        self._listeners: List[GateListener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: GateListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _notify(self, gate: Gate) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(gate)

    def request_approval(self, job: str) -> Gate:
        with self._lock:
            existing = self._gates.get(job)
            if existing is not None:
                return existing
            now = self._clock()
            deadline = now + self.approval_timeout if self.approval_timeout else None
            gate = Gate(job=job, requested_at=now, deadline=deadline)
            self._gates[job] = gate
        logger.info("Job %s is waiting for approval", job)
        self._notify(gate)
        return gate

    def _resolve(self, job: str, state: GateState, actor: str, reason: Optional[str]) -> Gate:
        with self._lock:
            gate = self._gates.get(job)
            if gate is None:
                raise UnknownGateError(f"No approval requested for job '{job}'", job=job)
            if gate.resolved:
                return gate
            gate = replace(gate, state=state, actor=actor, reason=reason, resolved_at=self._clock())
            self._gates[job] = gate
        logger.info("Job %s %s by %s", job, state.value, actor)
        self._notify(gate)
        return gate

    def approve(self, job: str, actor: str) -> Gate:
        return self._resolve(job, GateState.APPROVED, actor, None)

    def reject(self, job: str, actor: str, reason: Optional[str] = None) -> Gate:
        return self._resolve(job, GateState.REJECTED, actor, reason)

    def get(self, job: str) -> Optional[Gate]:
        with self._lock:
            return self._gates.get(job)

    def gates(self) -> Dict[str, Gate]:
        with self._lock:
            return dict(self._gates)

    def open_gates(self) -> List[Gate]:
        with self._lock:
            return [g for g in self._gates.values() if not g.resolved]

    def seconds_until_deadline(self) -> Optional[float]:
        """Time until the next open gate expires, or None if none can."""
        deadlines = [g.deadline for g in self.open_gates() if g.deadline is not None]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - self._clock())

    def expire_overdue(self) -> List[Gate]:
        """Reject every open gate past its deadline."""
        now = self._clock()
        expired = [g for g in self.open_gates() if g.deadline is not None and g.deadline <= now]
        return [
            self._resolve(g.job, GateState.REJECTED, "system", ApprovalTimeoutError.kind)
            for g in expired
        ]
