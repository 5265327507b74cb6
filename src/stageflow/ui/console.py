"""Console output formatting utilities for stageflow."""

from __future__ import annotations

import sys
from typing import Dict, Iterable, List, Optional, Tuple


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        repository: str,
        workflow: str,
        event: str,
        branch: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run: {run_id}")
        print(f"Repository: {repository}")
        print(f"Workflow: {workflow}")
        print(f"Trigger: {event} on {branch}")
        print(f"Jobs: {job_count}")
        print()

    def print_no_run(self, event: str, branch: str) -> None:
        """Print the message shown when the workflow rules admit nothing."""
        print(f"\nNO PIPELINE: no workflow rule matched {event} on {branch}")

    def print_plan(self, levels: Iterable[Tuple[int, List[str]]], excluded: Iterable[str]) -> None:
        """Print the execution plan: one line per topological level."""
        self.print_header("PLAN")
        for n, names in levels:
            print(f"  {n}. {', '.join(names)}")
        excluded = list(excluded)
        if excluded:
            print(f"  excluded by rules: {', '.join(excluded)}")

    def print_job_start(self, name: str, attempt: int = 1) -> None:
        """Print job start message."""
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        print(f"\nJOB STARTED: {name}{suffix}")

    def print_success(self, name: str, environment_url: Optional[str] = None) -> None:
        """Print success message."""
        print(f"JOB SUCCEEDED: {name}")
        if environment_url:
            print(f"Environment: {environment_url}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        print(f"JOB FAILED: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split('\n')[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_logs(self, logs: str, limit: int = 40) -> None:
        """Print captured job output; only the tail unless debug is on."""
        lines = logs.rstrip("\n").splitlines()
        if not lines:
            return
        if not self.debug and len(lines) > limit:
            print(f"  ... ({len(lines) - limit} lines hidden, use --debug to see all)")
            lines = lines[-limit:]
        for line in lines:
            print(f"  | {line}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        print(f"\nJOB SKIPPED: {name} ({reason})")

    def print_job_canceled(self, name: str, reason: str) -> None:
        print(f"\nJOB CANCELED: {name} ({reason})")

    def print_waiting_for_approval(self, name: str) -> None:
        """Print manual gate message."""
        print(f"\nWAITING FOR APPROVAL: {name}")
        print(f"  approve with: stageflow run --approve {name} (or POST .../jobs/{name}/approve)")

    def print_results(self, status: str, jobs: Dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print(f"RESULTS: {status.upper()}")
        print("=" * 40)
        for job, state in jobs.items():
            print(f"  {job}: {state.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
