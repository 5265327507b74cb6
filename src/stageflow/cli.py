# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional, Sequence

import click

from . import settings
from .dag import build_graph, plan_levels
from .errors import ConfigError, StageflowError
from .executor import ShellExecutor
from .gates import Gate
from .git_facts.git import default_branch, get_current_ref, get_remote_url, head_sha, working_changes
from .loader import load_workflow
from .model import JobState, PipelineSpec, RunStatus, TriggerContext
from .run import PipelineRun, create_run
from .rules import TriggerEvaluator
from .runner import JobRun
from .ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_FILES = ("stageflow_workflow.py", "stageflow.yml", "stageflow.yaml", ".stageflow.yml")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = {current_dir / name for name in DEFAULT_WORKFLOW_FILES if (current_dir / name).exists()}
    found.update(current_dir.glob("*_workflow.py"))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, STAGEFLOW_WORKFLOW or the defaults.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()
    workflow_arg = workflow_arg or settings.WORKFLOW

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  stageflow run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOW_FILES), "  *_workflow.py"],
            suggestion="Create a workflow file:\n  stageflow_workflow.py\n\nOr specify a workflow explicitly:\n  stageflow run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  stageflow run --workflow stageflow_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def parse_vars(pairs: Sequence[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        out[key] = value
    return out


def _git_or_none(fn, *args):
    try:
        return fn(*args)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def build_trigger(
    event: str,
    branch: Optional[str],
    default: Optional[str],
    variables: Dict[str, str],
    *,
    git_diff: bool = False,
    compare_ref: str = "origin/main",
) -> TriggerContext:
    """Fill in whatever the user left out from the local checkout."""
    console = get_console()
    branch = branch or _git_or_none(get_current_ref) or "main"
    default = default or _git_or_none(default_branch) or "main"

    variables = dict(variables)
    sha = _git_or_none(head_sha)
    if sha and "CI_COMMIT_SHA" not in variables:
        variables["CI_COMMIT_SHA"] = sha

    changed = None
    if git_diff:
        changed = _git_or_none(working_changes, compare_ref)
        if changed is None:
            console.print_info("Git diff unavailable; rules with `changes` will match everything")
        else:
            console.print_debug(f"{len(changed)} changed file(s) against {compare_ref}")

    return TriggerContext(
        event=event,
        branch=branch,
        default_branch=default,
        variables=variables,
        changed_files=tuple(changed) if changed is not None else None,
    )


def _repository_name() -> str:
    url = _git_or_none(get_remote_url, "origin")
    if url:
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    return Path(".").resolve().name


def attach_console(run: PipelineRun, console: Console) -> None:
    """Print job transitions as they happen."""

    def on_transition(jr: JobRun, old: JobState, new: JobState) -> None:
        if new == JobState.RUNNING:
            console.print_job_start(jr.name, len(jr.attempts))
        elif new == JobState.SUCCEEDED:
            console.print_logs(run.logs(jr.name))
            console.print_success(jr.name, jr.environment_url)
        elif new == JobState.FAILED:
            console.print_logs(run.logs(jr.name))
            exit_code = (jr.error or {}).get("details", {}).get("exit_code")
            console.print_failure(jr.name, jr.reason or "failed", exit_code=exit_code)
        elif new == JobState.RUNNABLE and old == JobState.RUNNING:
            console.print_info(f"RETRYING: {jr.name} ({jr.reason})")
        elif new == JobState.SKIPPED:
            console.print_job_skipped(jr.name, jr.reason or "skipped")
        elif new == JobState.CANCELED:
            console.print_job_canceled(jr.name, jr.reason or "canceled")
        elif new == JobState.MANUAL_WAIT:
            console.print_waiting_for_approval(jr.name)

    run.on_transition(on_transition)


def auto_resolve_gates(run: PipelineRun, approve: Sequence[str], reject: Sequence[str], approve_all: bool) -> None:
    """Resolve gates named on the command line as soon as they open."""
    approve_set, reject_set = set(approve), set(reject)

    def on_gate(gate: Gate) -> None:
        if gate.resolved:
            return
        if gate.job in reject_set:
            run.reject(gate.job, actor="cli", reason="rejected on the command line")
        elif approve_all or gate.job in approve_set:
            run.approve(gate.job, actor="cli")

    run.on_gate(on_gate)


def _load_spec(workflow: Optional[str]) -> tuple[Path, PipelineSpec]:
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except ConfigError as e:
        get_console().print_error(
            "Invalid workflow",
            f"Could not load workflow from {workflow_path}",
            details=[e.message, *e.details.get("errors", [])],
        )
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stageflow: stage-ordered CI/CD pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


def trigger_options(fn):
    fn = click.option("--event", default="push", show_default=True, help="Pipeline source (push, merge_request_event, schedule, web, api)")(fn)
    fn = click.option("--branch", default=None, help="Branch that triggered the run (defaults to the current git branch)")(fn)
    fn = click.option("--default-branch", "default_branch_", default=None, help="Default branch (defaults to origin/HEAD, then main)")(fn)
    fn = click.option("--var", "var", multiple=True, help="Trigger variable KEY=VALUE (repeatable)")(fn)
    fn = click.option("--git-diff/--no-git-diff", default=False, help="Feed changed files to `changes` rules")(fn)
    fn = click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")(fn)
    fn = click.option("--workflow", default=None, help="Workflow file (defaults to stageflow_workflow.py or stageflow.yml)")(fn)
    return fn


@cli.command()
@trigger_options
@click.option("--workers", default=None, type=int, help="Maximum concurrently running jobs")
@click.option("--work-dir", default=None, help="Job workspace root (STAGEFLOW_WORK_DIR)")
@click.option("--artifact-dir", default=None, help="Artifact store root (STAGEFLOW_ARTIFACT_DIR)")
@click.option("--approve", "approve", multiple=True, help="Approve this manual job when it becomes eligible (repeatable)")
@click.option("--reject", "reject", multiple=True, help="Reject this manual job when it becomes eligible (repeatable)")
@click.option("--auto-approve", is_flag=True, default=False, help="Approve every manual job")
@click.option("--approval-timeout", default=None, type=float, help="Seconds before an open gate is rejected")
@click.option("--wait/--no-wait", default=False, help="Block on open manual gates instead of stopping")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the job plan before running")
@click.pass_context
def run(ctx, event, branch, default_branch_, var, git_diff, compare_ref, workflow,
        workers, work_dir, artifact_dir, approve, reject, auto_approve, approval_timeout, wait, print_plan):
    """Run a pipeline locally."""
    console = get_console()
    workflow_path, spec = _load_spec(workflow)
    trigger = build_trigger(event, branch, default_branch_, parse_vars(var), git_diff=git_diff, compare_ref=compare_ref)

    pipeline_run: Optional[PipelineRun] = None
    try:
        pipeline_run = create_run(
            spec,
            trigger,
            executor=ShellExecutor(source="."),
            work_dir=work_dir,
            artifact_dir=artifact_dir,
            max_workers=workers,
            approval_timeout=approval_timeout,
        )
        if pipeline_run is None:
            console.print_no_run(trigger.event, trigger.branch)
            return

        console.print_run_started(
            run_id=pipeline_run.id,
            repository=_repository_name(),
            workflow=workflow_path.name,
            event=trigger.event,
            branch=trigger.branch,
            job_count=len(pipeline_run.graph.jobs),
        )
        if print_plan:
            console.print_plan(plan_levels(pipeline_run.graph), pipeline_run.evaluation.excluded)

        attach_console(pipeline_run, console)
        auto_resolve_gates(pipeline_run, approve, reject, auto_approve)
        status = pipeline_run.start(block_on_gates=wait)

        snapshot = pipeline_run.status()
        console.print_results(status.value, {n: j.state for n, j in snapshot.jobs.items()})
        if status == RunStatus.MANUAL:
            waiting = [g.job for g in pipeline_run.gates.open_gates()]
            console.print_info(f"\nRun paused at manual gate(s): {', '.join(waiting)}")
        if status in (RunStatus.FAILED, RunStatus.CANCELED):
            sys.exit(1)

    except KeyboardInterrupt:
        if pipeline_run is not None:
            pipeline_run.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except ConfigError as e:
        console.print_error("Invalid pipeline", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(1)
    except StageflowError as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@trigger_options
def plan(event, branch, default_branch_, var, git_diff, compare_ref, workflow):
    """Show which jobs a trigger would run, and in what order."""
    console = get_console()
    _, spec = _load_spec(workflow)
    trigger = build_trigger(event, branch, default_branch_, parse_vars(var), git_diff=git_diff, compare_ref=compare_ref)
    try:
        evaluation = TriggerEvaluator(spec).evaluate(trigger)
        graph = build_graph(spec, evaluation.included) if evaluation is not None else None
    except ConfigError as e:
        console.print_error("Invalid pipeline", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(1)

    if graph is None or not graph.jobs:
        console.print_no_run(trigger.event, trigger.branch)
        return
    console.print_plan(plan_levels(graph), evaluation.excluded)
    for name in graph.order:
        decision = evaluation.decisions[name]
        console.print_info(f"  {name}: when={decision.when.value} ({decision.reason})")


@cli.command()
@click.option("--workflow", default=None, help="Default workflow for POST /runs without an inline pipeline")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--workers", default=None, type=int, help="Maximum concurrently running jobs per run")
def serve(workflow, host, port, workers):
    """Serve the run/gate HTTP API."""
    import uvicorn

    from .api import create_app

    spec: Optional[PipelineSpec] = None
    if workflow or settings.WORKFLOW or find_workflow_files():
        _, spec = _load_spec(workflow)

    app = create_app(spec, executor_factory=lambda: ShellExecutor(source="."), max_workers=workers)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
