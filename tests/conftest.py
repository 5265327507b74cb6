# tests/conftest.py
"""Shared fixtures: a scripted in-memory executor and run builders.

Nothing here shells out; ShellExecutor has its own tests.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import pytest

from stageflow.dsl import artifacts, environment, job, need, pipeline, rule, sh
from stageflow.executor import Executor, JobResult
from stageflow.model import JobSpec, JobState, PipelineSpec, TriggerContext
from stageflow.run import PipelineRun, create_run


class FakeExecutor(Executor):
    """
    Records every attempt; behaviour is scripted per job name.

    fail:       jobs that always fail
    fail_times: job -> number of leading attempts that fail
    exports:    job -> variables reported through JobResult
    files:      job -> {relative path: content} written into the workspace
    delays:     job -> seconds to sleep
    hold:       job -> Event the job waits on (or until canceled)
    explode:    jobs whose run() raises instead of reporting
    """

    def __init__(
        self,
        *,
        fail: Iterable[str] = (),
        fail_times: Optional[Mapping[str, int]] = None,
        exports: Optional[Mapping[str, Mapping[str, str]]] = None,
        files: Optional[Mapping[str, Mapping[str, str]]] = None,
        delays: Optional[Mapping[str, float]] = None,
        hold: Optional[Mapping[str, threading.Event]] = None,
        explode: Iterable[str] = (),
    ):
        self.fail = set(fail)
        self.fail_times = dict(fail_times or {})
        self.exports = dict(exports or {})
        self.files = dict(files or {})
        self.delays = dict(delays or {})
        self.hold = dict(hold or {})
        self.explode = set(explode)

        self.calls: List[str] = []
        self.envs: Dict[str, Dict[str, str]] = {}
        self.seen_files: Dict[str, List[str]] = {}
        self.intervals: List[Tuple[str, float, float]] = []
        self.started: Dict[str, threading.Event] = {}
        self.max_active = 0
        self._active = 0
        self._lock = threading.Lock()

    def started_event(self, name: str) -> threading.Event:
        with self._lock:
            return self.started.setdefault(name, threading.Event())

    def attempts(self, name: str) -> int:
        with self._lock:
            return self.calls.count(name)

    def run(self, job: JobSpec, env, *, workspace: Path, cancel: threading.Event) -> JobResult:
        with self._lock:
            self.calls.append(job.name)
            attempt = self.calls.count(job.name)
            self.envs[job.name] = dict(env)
            self.seen_files[job.name] = sorted(
                str(p.relative_to(workspace)).replace("\\", "/") for p in workspace.rglob("*") if p.is_file()
            )
            self._active += 1
            self.max_active = max(self.max_active, self._active)
            start = time.monotonic()
        self.started_event(job.name).set()

        try:
            if job.name in self.explode:
                raise RuntimeError(f"executor blew up on {job.name}")

            held = self.hold.get(job.name)
            if held is not None:
                while not held.wait(0.01):
                    if cancel.is_set():
                        return JobResult(status=JobState.FAILED, error="canceled")

            if job.name in self.delays:
                time.sleep(self.delays[job.name])

            for rel, content in self.files.get(job.name, {}).items():
                p = workspace / rel
                p.parent.mkdir(parents=True, exist_ok=True)
                p.write_text(content, encoding="utf-8")

            if job.name in self.fail or attempt <= self.fail_times.get(job.name, 0):
                return JobResult(status=JobState.FAILED, error=f"{job.name} failed", exit_code=1, logs="boom\n")
            return JobResult(
                status=JobState.SUCCEEDED,
                exported_variables=self.exports.get(job.name),
                logs=f"{job.name} ok\n",
                exit_code=0,
            )
        finally:
            with self._lock:
                self._active -= 1
                self.intervals.append((job.name, start, time.monotonic()))


def push(branch: str = "main", **variables: str) -> TriggerContext:
    return TriggerContext(event="push", branch=branch, default_branch="main", variables=variables)


def merge_request(branch: str = "feature-x", **variables: str) -> TriggerContext:
    return TriggerContext(
        event=TriggerContext.MERGE_REQUEST_EVENT,
        branch=branch,
        default_branch="main",
        variables=variables,
    )


def noop(name: str, **kw) -> JobSpec:
    return job(name, sh("noop", "true"), **kw)


@pytest.fixture
def fake() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def make_run(tmp_path: Path):
    """Build a PipelineRun rooted in tmp_path."""

    def _make(
        spec: PipelineSpec,
        trigger: Optional[TriggerContext] = None,
        executor: Optional[Executor] = None,
        **kw,
    ) -> Optional[PipelineRun]:
        kw.setdefault("max_workers", 4)
        return create_run(
            spec,
            trigger or push(),
            executor=executor or FakeExecutor(),
            work_dir=tmp_path / "work",
            artifact_dir=tmp_path / "artifacts",
            **kw,
        )

    return _make


@pytest.fixture
def static_site() -> PipelineSpec:
    """build -> test -> (preview on MRs | manual prod deploy on main)."""
    on_mr = '$CI_PIPELINE_SOURCE == "merge_request_event"'
    on_default = "$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH"
    return pipeline(
        noop("build_website", stage="build", artifacts=artifacts("public/"), exports="build.env"),
        noop("unit_tests", stage="test"),
        noop(
            "deploy_preview",
            stage="deploy",
            needs=["build_website", "unit_tests"],
            rules=[rule(on_mr)],
            environment=environment("preview/$CI_COMMIT_REF_NAME", "https://$CI_COMMIT_REF_NAME.example.com"),
        ),
        noop(
            "deploy_prod",
            stage="deploy",
            needs=[need("build_website"), need("unit_tests", artifacts=False)],
            rules=[rule(on_default, when="manual")],
            environment=environment("production", "https://$SITE_HOST"),
            resource_group="production",
        ),
        stages=["build", "test", "deploy"],
        workflow=[rule(on_mr), rule(on_default)],
    )


@pytest.fixture
def site_executor() -> FakeExecutor:
    return FakeExecutor(
        files={
            "build_website": {
                "public/index.html": "<h1>site</h1>",
                "build.env": "SITE_VERSION=1.2.3\nSITE_HOST=www.example.com\n",
            }
        }
    )


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False
