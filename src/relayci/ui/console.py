"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
from typing import Any, Dict, List, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, show_logs: bool = True):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_logs: If True, print the captured log tail of failed steps
        """
        self.debug = debug
        self.show_logs = show_logs

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, run_id: str, workflow: str, job_count: int) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run: {run_id}")
        print(f"Workflow: {workflow}")
        print(f"Jobs: {job_count}")
        print()

    def print_job_start(self, name: str, runner: Optional[str] = None) -> None:
        """Print job start message."""
        suffix = f" (runner: {runner})" if runner else ""
        print(f"\nJOB STARTED: {name}{suffix}")

    def print_gate_waiting(self, name: str, environment: str, gate: Optional[Dict[str, Any]] = None) -> None:
        print(f"\nJOB WAITING: {name} (environment: {environment})")
        if gate:
            missing = max(0, gate["required_approvals"] - len(gate["approvals"]))
            if missing:
                print(f"Approvals needed: {missing}")
            if gate.get("remaining_wait_seconds"):
                print(f"Wait timer: {gate['remaining_wait_seconds']:.0f}s")

    def print_success(self, name: str) -> None:
        """Print success message."""
        print(f"JOB SUCCEEDED: {name}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        log: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            log: Captured output tail of the failed step
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        print(f"{prefix}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")
        if log and self.show_logs:
            print(log.rstrip())

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print cancelled/skipped job message."""
        print(f"JOB CANCELLED: {name} ({reason})")

    def print_plan_stage(self, index: int, jobs: List[str]) -> None:
        print(f"  stage {index}: {', '.join(jobs)}")

    def print_results(self, status: str, results: Dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print(f"RESULTS ({status.upper()})")
        print("=" * 40)
        for job, state in results.items():
            print(f"  {job}: {state.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
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

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
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
