# executor.py
from __future__ import annotations

import abc
import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .artifacts import ArtifactBundle
from .model import JobSpec, JobState, Step

logger = logging.getLogger(__name__)

# how often a running step checks for cancellation/timeout
POLL_INTERVAL = 0.05

WORKSPACE_IGNORE = (".git", ".stageflow", "__pycache__", ".venv")


@dataclass(frozen=True)
class JobResult:
    """What an executor reports for one attempt of one job."""
    status: JobState  # SUCCEEDED or FAILED
    artifacts: Optional[ArtifactBundle] = None
    exported_variables: Optional[Mapping[str, str]] = None
    logs: str = ""
    error: str | None = None
    exit_code: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobState.SUCCEEDED


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class Executor(abc.ABC):
    """
    Runs one job attempt in an isolated workspace.

    Contract:
      - return a JobResult, reporting FAILED rather than raising on script errors
      - stop promptly once `cancel` is set
      - never hang on a failing script
    """

    def prepare_workspace(self, job: JobSpec, workspace: Path) -> None:
        """Create the job's workspace before artifacts are restored into it."""
        workspace.mkdir(parents=True, exist_ok=True)

    @abc.abstractmethod
    def run(
        self,
        job: JobSpec,
        env: Mapping[str, str],
        *,
        workspace: Path,
        cancel: threading.Event,
    ) -> JobResult:
        ...


class ShellExecutor(Executor):
    """
    Runs each step with the system shell.

    When `source` is set, the project tree is copied into every job
    workspace first, so jobs only see upstream files through artifacts.
    """

    def __init__(
        self,
        source: str | Path | None = None,
        *,
        inherit_env: bool = True,
        ignore: Sequence[str] = WORKSPACE_IGNORE,
    ):
        self.source = Path(source).resolve() if source is not None else None
        self.inherit_env = inherit_env
        self.ignore = tuple(ignore)

    def prepare_workspace(self, job: JobSpec, workspace: Path) -> None:
        if self.source is None:
            workspace.mkdir(parents=True, exist_ok=True)
            return
        if workspace.exists():
            shutil.rmtree(workspace)
        shutil.copytree(
            self.source,
            workspace,
            ignore=shutil.ignore_patterns(*self.ignore),
            symlinks=True,
        )

    def _env(self, env: Mapping[str, str]) -> Dict[str, str]:
        out = os.environ.copy() if self.inherit_env else {}
        out.update({k: str(v) for k, v in env.items()})
        return out

    def _run_step(
        self,
        job: JobSpec,
        step: Step,
        env: Dict[str, str],
        workspace: Path,
        cancel: threading.Event,
        deadline: Optional[float],
        logs: List[str],
    ) -> None:
        cwd = (workspace / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{job.name}] step '{step.name}' cwd not found: {cwd}")

        logs.append(f"$ {step.run}\n")
        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        reader = threading.Thread(target=_drain, args=(proc, logs), daemon=True)
        reader.start()

        try:
            while proc.poll() is None:
                if cancel.is_set():
                    proc.terminate()
                    raise StepFailure(job.name, step.name, step.run, -1, "canceled")
                if deadline is not None and time.monotonic() > deadline:
                    proc.kill()
                    raise StepFailure(job.name, step.name, step.run, -1, f"timed out after {job.timeout}s")
                time.sleep(POLL_INTERVAL)
        finally:
            if proc.poll() is None:
                proc.wait()
            reader.join(timeout=5)

        if proc.returncode != 0:
            raise StepFailure(job.name, step.name, step.run, proc.returncode)

    def run(
        self,
        job: JobSpec,
        env: Mapping[str, str],
        *,
        workspace: Path,
        cancel: threading.Event,
    ) -> JobResult:
        logs: List[str] = []
        full_env = self._env(env)
        deadline = time.monotonic() + job.timeout if job.timeout else None

        for step in job.steps:
            logger.debug("[%s] ▶ %s", job.name, step.name)
            try:
                self._run_step(job, step, full_env, workspace, cancel, deadline, logs)
            except StepFailure as e:
                if e.output:
                    logs.append(f"{e.output}\n")
                return JobResult(
                    status=JobState.FAILED,
                    logs="".join(logs),
                    error=str(e),
                    exit_code=e.exit_code,
                )
            except OSError as e:
                return JobResult(status=JobState.FAILED, logs="".join(logs), error=str(e))

        return JobResult(status=JobState.SUCCEEDED, logs="".join(logs), exit_code=0)


def _drain(proc: subprocess.Popen, logs: List[str]) -> None:
    assert proc.stdout is not None
    for line in proc.stdout:
        logs.append(line)


@dataclass
class CallableExecutor(Executor):
    """
    Executor backed by plain Python callables, keyed by job name.

    Each callable receives (job, env, workspace) and may return a dict of
    exported variables. Raising marks the attempt as failed.
    """
    handlers: Dict[str, object] = field(default_factory=dict)

    def run(
        self,
        job: JobSpec,
        env: Mapping[str, str],
        *,
        workspace: Path,
        cancel: threading.Event,
    ) -> JobResult:
        handler = self.handlers.get(job.name)
        if handler is None:
            return JobResult(status=JobState.SUCCEEDED)
        try:
            exported = handler(job, env, workspace)  # type: ignore[operator]
        except Exception as e:
            return JobResult(status=JobState.FAILED, error=f"{type(e).__name__}: {e}")
        return JobResult(status=JobState.SUCCEEDED, exported_variables=exported or None)
