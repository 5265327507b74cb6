# src/stageflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import ConfigError
from .model import (
    ArtifactSpec,
    EnvironmentSpec,
    JobSpec,
    Need,
    PipelineSpec,
    Rule,
    Step,
    When,
)

DEFAULT_STAGES = ("build", "test", "deploy")

NeedLike = Union[str, Need]
WhenLike = Union[str, When]


def _when(value: WhenLike) -> When:
    try:
        return When(value)
    except ValueError:
        allowed = [w.value for w in When]
        raise ConfigError(f"Invalid when: {value!r}", details={"allowed": allowed}) from None


def _need(value: NeedLike) -> Need:
    return value if isinstance(value, Need) else Need(job=value)


# ---------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def need(job: str, *, artifacts: bool = True, optional: bool = False) -> Need:
    return Need(job=job, artifacts=artifacts, optional=optional)


def rule(
    condition: str | None = None,
    *,
    when: WhenLike | None = None,
    changes: Sequence[str] = (),
    variables: Optional[Mapping[str, Any]] = None,
) -> Rule:
    """
    rule('$CI_PIPELINE_SOURCE == "merge_request_event"')
    rule('$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH', when="manual")
    rule(when="never")   # catch-all
    """
    return Rule(
        condition=condition,
        when=_when(when) if when is not None else None,
        changes=tuple(changes),
        variables={k: str(v) for k, v in (variables or {}).items()},
    )


def artifacts(*paths: str, when: WhenLike = When.ON_SUCCESS, exclude: Sequence[str] = ()) -> ArtifactSpec:
    return ArtifactSpec(paths=tuple(paths), when=_when(when), exclude=tuple(exclude))


def environment(name: str, url: str | None = None, *, action: str = "start") -> EnvironmentSpec:
    return EnvironmentSpec(name=name, url=url, action=action)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    stage: str = "test",
    needs: Optional[Sequence[NeedLike]] = None,
    dependencies: Optional[Sequence[str]] = None,
    rules: Optional[Sequence[Rule]] = None,
    artifacts: Optional[ArtifactSpec] = None,
    exports: str | None = None,
    when: WhenLike = When.ON_SUCCESS,
    environment: Union[str, EnvironmentSpec, None] = None,
    resource_group: str | None = None,
    retry: int = 0,
    timeout: float | None = None,
    variables: Optional[Mapping[str, Any]] = None,
    override_exports: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobSpec:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ConfigError(f"job({name!r}) must have at least one step", job=name)

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    if isinstance(environment, str):
        environment = EnvironmentSpec(name=environment)

    return JobSpec(
        name=name,
        stage=stage,
        steps=tuple(steps_final),
        rules=tuple(rules or ()),
        needs=tuple(_need(n) for n in needs) if needs is not None else None,
        dependencies=tuple(dependencies) if dependencies is not None else None,
        artifacts=artifacts,
        exports=exports,
        when=_when(when),
        environment=environment,
        resource_group=resource_group,
        retry=retry,
        timeout=timeout,
        variables={k: str(v) for k, v in (variables or {}).items()},
        override_exports=override_exports,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._stage = "test"
        self._steps: list[Step] = []
        self._needs: Optional[list[Need]] = None
        self._dependencies: Optional[list[str]] = None
        self._rules: list[Rule] = []
        self._artifacts: Optional[ArtifactSpec] = None
        self._exports: str | None = None
        self._when: When = When.ON_SUCCESS
        self._environment: Optional[EnvironmentSpec] = None
        self._resource_group: str | None = None
        self._retry = 0
        self._timeout: float | None = None
        self._variables: dict[str, str] = {}
        self._override_exports = False

    def in_stage(self, stage: str):
        self._stage = stage
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def depends_on(self, *jobs: NeedLike):
        """Explicit needs; calling it with no arguments means "start immediately"."""
        if self._needs is None:
            self._needs = []
        self._needs.extend(_need(j) for j in jobs)
        return self

    def takes_artifacts_from(self, *jobs: str):
        self._dependencies = list(jobs)
        return self

    def with_rules(self, *rules: Rule):
        self._rules.extend(rules)
        return self

    def with_artifacts(self, *paths: str, when: WhenLike = When.ON_SUCCESS, exclude: Sequence[str] = ()):
        self._artifacts = artifacts(*paths, when=when, exclude=exclude)
        return self

    def exports_dotenv(self, path: str, *, override: bool = False):
        self._exports = path
        self._override_exports = override
        return self

    def when(self, when: WhenLike):
        self._when = _when(when)
        return self

    def manual(self):
        return self.when(When.MANUAL)

    def in_environment(self, name: str, url: str | None = None, *, action: str = "start"):
        self._environment = environment(name, url, action=action)
        return self

    def in_resource_group(self, group: str):
        self._resource_group = group
        return self

    def with_retry(self, attempts: int):
        self._retry = attempts
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def with_variables(self, **variables):
        # force values to str, they end up in the process environment
        self._variables.update({k: str(v) for k, v in variables.items()})
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ConfigError(f"Job '{self.name}' has no steps", job=self.name)
        return JobSpec(
            name=self.name,
            stage=self._stage,
            steps=tuple(self._steps),
            rules=tuple(self._rules),
            needs=tuple(self._needs) if self._needs is not None else None,
            dependencies=tuple(self._dependencies) if self._dependencies is not None else None,
            artifacts=self._artifacts,
            exports=self._exports,
            when=self._when,
            environment=self._environment,
            resource_group=self._resource_group,
            retry=self._retry,
            timeout=self._timeout,
            variables=dict(self._variables),
            override_exports=self._override_exports,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.10","3.11"]).jobs(
            lambda v: job(f"test-py{v}", sh(...), variables={"PYTHON": v})
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobSpec]) -> List[JobSpec]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    *jobs: Union[JobSpec, Iterable[JobSpec]],
    stages: Sequence[str] = DEFAULT_STAGES,
    workflow: Sequence[Rule] = (),
    variables: Optional[Mapping[str, Any]] = None,
) -> PipelineSpec:
    """
    Users can write:
        from stageflow import pipeline, job, sh, rule

        def workflow():
            return pipeline(
                job("build", sh("make", "make"), stage="build"),
                matrix("py", ["3.11", "3.12"]).jobs(lambda v: job(...)),
                workflow=[rule('$CI_PIPELINE_SOURCE == "push"')],
            )

    Or define PIPELINE = pipeline(...) directly.
    """
    flat: List[JobSpec] = []
    for j in jobs:
        if isinstance(j, JobSpec):
            flat.append(j)
        else:
            flat.extend(j)
    return PipelineSpec(
        stages=tuple(stages),
        jobs=tuple(flat),
        workflow=tuple(workflow),
        variables={k: str(v) for k, v in (variables or {}).items()},
    )
