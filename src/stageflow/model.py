# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from .errors import ConfigError

PRE_STAGE = ".pre"
POST_STAGE = ".post"
RESERVED_STAGES = (PRE_STAGE, POST_STAGE)

MAX_RETRY = 2


class When(str, Enum):
    ON_SUCCESS = "on_success"
    MANUAL = "manual"
    ALWAYS = "always"
    ON_FAILURE = "on_failure"
    NEVER = "never"


class JobState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    MANUAL_WAIT = "manual-wait"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELED)


class Suspension(str, Enum):
    """Why a suspended job is not runnable yet."""
    AWAITING_PREDECESSORS = "awaiting-predecessors"
    AWAITING_APPROVAL = "awaiting-approval"


class GateState(str, Enum):
    AWAITING_APPROVAL = "awaiting-approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class RunStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    MANUAL = "manual"          # idle, waiting on an open gate
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED)


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class Rule:
    """
    One predicate -> decision pair.

    `condition` is a predicate expression (see rules.py); None always matches.
    `when` None means "keep the job's own when".
    """
    condition: str | None = None
    when: When | None = None
    changes: Tuple[str, ...] = ()
    variables: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Need:
    job: str
    artifacts: bool = True
    optional: bool = False


@dataclass(frozen=True)
class ArtifactSpec:
    paths: Tuple[str, ...]
    when: When = When.ON_SUCCESS  # ON_SUCCESS or ALWAYS
    exclude: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EnvironmentSpec:
    name: str                 # may contain $VARS, expanded at dispatch time
    url: str | None = None
    action: str = "start"     # start | stop


@dataclass(frozen=True)
class JobSpec:
    """
    Static declaration of one job.

    `needs` is None when the job follows stage ordering. An explicit tuple
    (even an empty one) bypasses stage ordering for this job.
    """
    name: str
    stage: str = "test"
    steps: Tuple[Step, ...] = ()
    rules: Tuple[Rule, ...] = ()
    needs: Optional[Tuple[Need, ...]] = None
    dependencies: Optional[Tuple[str, ...]] = None
    artifacts: Optional[ArtifactSpec] = None
    exports: str | None = None  # dotenv file written by the job
    when: When = When.ON_SUCCESS
    environment: Optional[EnvironmentSpec] = None
    resource_group: str | None = None
    retry: int = 0
    timeout: float | None = None
    variables: Dict[str, str] = field(default_factory=dict)
    override_exports: bool = False


@dataclass(frozen=True)
class PipelineSpec:
    stages: Tuple[str, ...]
    jobs: Tuple[JobSpec, ...]
    workflow: Tuple[Rule, ...] = ()
    variables: Dict[str, str] = field(default_factory=dict)

    @property
    def all_stages(self) -> Tuple[str, ...]:
        return (PRE_STAGE, *self.stages, POST_STAGE)

    def stage_index(self, stage: str) -> int:
        return self.all_stages.index(stage)

    def job(self, name: str) -> JobSpec:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def validate(self) -> "PipelineSpec":
        """Raise ConfigError if the declaration is malformed."""
        if len(set(self.stages)) != len(self.stages):
            dupes = sorted({s for s in self.stages if self.stages.count(s) > 1})
            raise ConfigError(f"Duplicate stage names: {dupes}")
        for s in self.stages:
            if not s or s in RESERVED_STAGES:
                raise ConfigError(f"Invalid stage name: {s!r}", details={"reserved": list(RESERVED_STAGES)})

        names = [j.name for j in self.jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigError(f"Duplicate job names found: {dupes}")

        by_name = {j.name: j for j in self.jobs}
        for j in self.jobs:
            if not j.name or not j.name.strip():
                raise ConfigError("job name must be a non-empty string")
            if j.stage not in self.all_stages:
                raise ConfigError(
                    f"Job '{j.name}' uses undeclared stage '{j.stage}'",
                    job=j.name,
                    details={"stages": list(self.stages)},
                )
            if not j.steps:
                raise ConfigError(f"Job '{j.name}' must have at least one step", job=j.name)
            if j.when not in (When.ON_SUCCESS, When.MANUAL, When.ALWAYS, When.ON_FAILURE, When.NEVER):
                raise ConfigError(f"Job '{j.name}' has invalid when: {j.when!r}", job=j.name)
            if not 0 <= j.retry <= MAX_RETRY:
                raise ConfigError(f"Job '{j.name}' retry must be between 0 and {MAX_RETRY}", job=j.name)
            if j.timeout is not None and j.timeout <= 0:
                raise ConfigError(f"Job '{j.name}' timeout must be positive", job=j.name)
            if j.artifacts is not None:
                if not j.artifacts.paths:
                    raise ConfigError(f"Job '{j.name}' declares artifacts without paths", job=j.name)
                if j.artifacts.when not in (When.ON_SUCCESS, When.ALWAYS):
                    raise ConfigError(f"Job '{j.name}' artifacts.when must be on_success or always", job=j.name)
            if j.environment is not None and j.environment.action not in ("start", "stop"):
                raise ConfigError(f"Job '{j.name}' environment action must be start or stop", job=j.name)

            seen: set[str] = set()
            for n in j.needs or ():
                if n.job in seen:
                    raise ConfigError(f"Job '{j.name}' lists '{n.job}' in needs twice", job=j.name)
                seen.add(n.job)
                if n.job == j.name:
                    raise ConfigError(f"Job '{j.name}' needs itself", job=j.name)
                needed = by_name.get(n.job)
                # unknown names are reported as dangling by the graph builder
                if needed is None or needed.stage == PRE_STAGE:
                    continue
                if self.stage_index(needed.stage) > self.stage_index(j.stage):
                    raise ConfigError(
                        f"Job '{j.name}' (stage {j.stage}) needs '{n.job}' from later stage {needed.stage}",
                        job=j.name,
                    )
        return self


@dataclass(frozen=True)
class TriggerContext:
    """What started the pipeline. Immutable for the run's lifetime."""
    event: str
    branch: str
    default_branch: str = "main"
    variables: Mapping[str, str] = field(default_factory=dict)
    changed_files: Optional[Tuple[str, ...]] = None  # None = unknown

    MERGE_REQUEST_EVENT = "merge_request_event"
    PUSH = "push"

    def predefined_variables(self) -> Dict[str, str]:
        out = {
            "CI_PIPELINE_SOURCE": self.event,
            "CI_COMMIT_REF_NAME": self.branch,
            "CI_DEFAULT_BRANCH": self.default_branch,
        }
        if self.event == self.MERGE_REQUEST_EVENT:
            out["CI_MERGE_REQUEST_SOURCE_BRANCH_NAME"] = self.branch
            target = self.variables.get("CI_MERGE_REQUEST_TARGET_BRANCH_NAME")
            out["CI_MERGE_REQUEST_TARGET_BRANCH_NAME"] = target or self.default_branch
        else:
            out["CI_COMMIT_BRANCH"] = self.branch
        return out

    def all_variables(self) -> Dict[str, str]:
        """Free-form variables overlaid with the predefined ones."""
        merged = {k: str(v) for k, v in self.variables.items()}
        merged.update(self.predefined_variables())
        return merged
