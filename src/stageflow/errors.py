# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class StageflowError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - API error payloads
      - per-job diagnosis without full tracebacks
    """
    message: str
    job: str | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    kind = "StageflowError"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "job": self.job,
            "details": dict(self.details),
        }


# ----------------------------------------------------------------------
# Structural errors: the declaration or graph cannot be trusted, no run
# ----------------------------------------------------------------------

class ConfigError(StageflowError):
    """Malformed PipelineSpec / JobSpec."""
    kind = "ConfigError"


class CycleError(ConfigError):
    kind = "CycleError"


class DanglingDependencyError(ConfigError):
    """A `needs` entry names a job that is not part of the run."""
    kind = "DanglingDependencyError"


class ArtifactDependencyError(ConfigError):
    """An artifact source is not guaranteed to finish before its consumer."""
    kind = "ArtifactDependencyError"


# ----------------------------------------------------------------------
# Runtime errors: contained to one job and its dependents
# ----------------------------------------------------------------------

class RuleEvaluationError(StageflowError):
    """Malformed rule predicate. Treated as "rule does not match"."""
    kind = "RuleEvaluationError"


class ExecutorError(StageflowError):
    kind = "ExecutorError"


class MissingArtifactError(StageflowError):
    kind = "MissingArtifactError"


class VariableConflictError(StageflowError):
    kind = "VariableConflictError"


class ApprovalTimeoutError(StageflowError):
    kind = "ApprovalTimeoutError"


class UnknownGateError(StageflowError):
    kind = "UnknownGateError"


class StateTransitionError(StageflowError):
    kind = "StateTransitionError"
