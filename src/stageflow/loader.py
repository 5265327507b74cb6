# loader.py
"""
Load a PipelineSpec from disk.

Python workflow files use the DSL and define either

    def workflow() -> PipelineSpec
    PIPELINE = pipeline(...)

YAML/JSON documents use GitLab-style top-level job mappings:

    stages: [build, test, deploy]
    workflow:
      rules:
        - if: '$CI_PIPELINE_SOURCE == "merge_request_event"'
    build_website:
      stage: build
      script: ["make site"]
      artifacts: {paths: [public/]}
"""
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .dsl import DEFAULT_STAGES
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

Scalar = Union[str, int, float, bool]

TOP_LEVEL_KEYS = ("stages", "workflow", "variables")


def _scalar(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _scalars(values: Mapping[str, Scalar]) -> Dict[str, str]:
    return {k: _scalar(v) for k, v in values.items()}


# -------------------- Schemas --------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RuleDoc(_Doc):
    if_: Optional[str] = Field(default=None, alias="if")
    when: Optional[When] = None
    changes: List[str] = Field(default_factory=list)
    variables: Dict[str, Scalar] = Field(default_factory=dict)

    def to_rule(self) -> Rule:
        return Rule(
            condition=self.if_,
            when=self.when,
            changes=tuple(self.changes),
            variables=_scalars(self.variables),
        )


class NeedDoc(_Doc):
    job: str
    artifacts: bool = True
    optional: bool = False


class ReportsDoc(_Doc):
    dotenv: Optional[str] = None


class ArtifactsDoc(_Doc):
    paths: List[str] = Field(default_factory=list)
    when: When = When.ON_SUCCESS
    exclude: List[str] = Field(default_factory=list)
    reports: Optional[ReportsDoc] = None


class EnvironmentDoc(_Doc):
    name: str
    url: Optional[str] = None
    action: str = "start"


class JobDoc(_Doc):
    stage: str = "test"
    script: Union[str, List[str]]
    rules: List[RuleDoc] = Field(default_factory=list)
    needs: Optional[List[Union[str, NeedDoc]]] = None
    dependencies: Optional[List[str]] = None
    artifacts: Optional[ArtifactsDoc] = None
    when: When = When.ON_SUCCESS
    environment: Optional[Union[str, EnvironmentDoc]] = None
    resource_group: Optional[str] = None
    retry: int = 0
    timeout: Optional[float] = None
    variables: Dict[str, Scalar] = Field(default_factory=dict)
    override_exports: bool = False

    def to_job(self, name: str) -> JobSpec:
        lines = [self.script] if isinstance(self.script, str) else self.script
        steps = tuple(Step(name=f"script {i}", run=line) for i, line in enumerate(lines, start=1))

        needs = None
        if self.needs is not None:
            needs = tuple(
                Need(job=n) if isinstance(n, str) else Need(job=n.job, artifacts=n.artifacts, optional=n.optional)
                for n in self.needs
            )

        artifacts = None
        exports = None
        if self.artifacts is not None:
            if self.artifacts.paths:
                artifacts = ArtifactSpec(
                    paths=tuple(self.artifacts.paths),
                    when=self.artifacts.when,
                    exclude=tuple(self.artifacts.exclude),
                )
            if self.artifacts.reports is not None:
                exports = self.artifacts.reports.dotenv

        environment = None
        if isinstance(self.environment, str):
            environment = EnvironmentSpec(name=self.environment)
        elif self.environment is not None:
            environment = EnvironmentSpec(
                name=self.environment.name,
                url=self.environment.url,
                action=self.environment.action,
            )

        return JobSpec(
            name=name,
            stage=self.stage,
            steps=steps,
            rules=tuple(r.to_rule() for r in self.rules),
            needs=needs,
            dependencies=tuple(self.dependencies) if self.dependencies is not None else None,
            artifacts=artifacts,
            exports=exports,
            when=self.when,
            environment=environment,
            resource_group=self.resource_group,
            retry=self.retry,
            timeout=self.timeout,
            variables=_scalars(self.variables),
            override_exports=self.override_exports,
        )


class WorkflowDoc(_Doc):
    rules: List[RuleDoc] = Field(default_factory=list)


class PipelineDoc(_Doc):
    stages: List[str] = Field(default_factory=lambda: list(DEFAULT_STAGES))
    workflow: Optional[WorkflowDoc] = None
    variables: Dict[str, Scalar] = Field(default_factory=dict)


def _format_errors(err: ValidationError, prefix: str) -> List[str]:
    out = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"])
        out.append(f"{prefix}{loc}: {e['msg']}" if loc else f"{prefix}{e['msg']}")
    return out


def parse_pipeline(data: Mapping[str, Any]) -> PipelineSpec:
    """Build a PipelineSpec from an already-parsed YAML/JSON mapping."""
    if not isinstance(data, Mapping):
        raise ConfigError(f"Pipeline document must be a mapping, got {type(data).__name__}")

    head = {k: v for k, v in data.items() if k in TOP_LEVEL_KEYS}
    try:
        doc = PipelineDoc.model_validate(head)
    except ValidationError as e:
        raise ConfigError("Invalid pipeline document", details={"errors": _format_errors(e, "")}) from e

    jobs: List[JobSpec] = []
    for name, body in data.items():
        if name in TOP_LEVEL_KEYS or str(name).startswith("."):
            continue  # hidden jobs / anchors
        if not isinstance(body, Mapping):
            raise ConfigError(f"Job '{name}' must be a mapping", job=str(name))
        try:
            jobs.append(JobDoc.model_validate(body).to_job(str(name)))
        except ValidationError as e:
            raise ConfigError(
                f"Invalid job '{name}'",
                job=str(name),
                details={"errors": _format_errors(e, f"{name}.")},
            ) from e

    return PipelineSpec(
        stages=tuple(doc.stages),
        jobs=tuple(jobs),
        workflow=tuple(r.to_rule() for r in doc.workflow.rules) if doc.workflow else (),
        variables=_scalars(doc.variables),
    ).validate()


def _read_document(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text) or {}
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not parse {path.name}: {e}") from e


def load_workflow(path: str | Path) -> PipelineSpec:
    """
    Load a pipeline from a .py, .yml/.yaml or .json file.

    Raises:
      FileNotFoundError: the file does not exist
      ConfigError: the file does not describe a valid pipeline
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml", ".json"):
        return parse_pipeline(_read_document(wf_path))
    if wf_path.suffix != ".py":
        raise ConfigError(f"Unsupported workflow file type: {wf_path.name}")

    module_name = f"stageflow_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    spec = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        spec = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        spec = globals_dict["PIPELINE"]

    if not isinstance(spec, PipelineSpec):
        raise ConfigError(
            "Workflow must return/define a PipelineSpec. "
            "Define workflow() -> pipeline(...) or PIPELINE = pipeline(...)."
        )
    return spec.validate()
