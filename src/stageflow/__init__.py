from .dsl import job, sh, need, rule, artifacts, environment, matrix, pipeline, JobBuilder, build
from .executor import CallableExecutor, Executor, JobResult, ShellExecutor
from .loader import load_workflow
from .model import JobSpec, JobState, PipelineSpec, RunStatus, Step, TriggerContext, When
from .run import PipelineRun, create_run

__all__ = [
    "job", "sh", "need", "rule", "artifacts", "environment", "matrix", "pipeline", "JobBuilder", "build",
    "CallableExecutor", "Executor", "JobResult", "ShellExecutor",
    "load_workflow",
    "JobSpec", "JobState", "PipelineSpec", "RunStatus", "Step", "TriggerContext", "When",
    "PipelineRun", "create_run",
]
