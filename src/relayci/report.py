# report.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .model import JobState, RunStatus
from .ui.console import Console, get_console


def compute_run_status(states: Iterable[JobState], cancelled: bool = False) -> RunStatus:
    """
    Pure function of job states:
      - explicitly cancelled             -> CANCELLED
      - any job FAILED                   -> FAILED
      - every job SUCCEEDED              -> SUCCEEDED
      - all terminal, not all succeeded  -> FAILED (e.g. a rejected gate)
      - anything past PENDING            -> RUNNING
      - otherwise                        -> PENDING
    """
    states = list(states)
    if cancelled:
        return RunStatus.CANCELLED
    if any(s is JobState.FAILED for s in states):
        return RunStatus.FAILED
    if all(s is JobState.SUCCEEDED for s in states):
        return RunStatus.SUCCEEDED
    if all(s.is_terminal for s in states):
        return RunStatus.FAILED
    if any(s is not JobState.PENDING for s in states):
        return RunStatus.RUNNING
    return RunStatus.PENDING


@dataclass
class StepReport:
    name: str
    status: str = "pending"                 # pending | running | succeeded | failed | skipped
    exit_status: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    log: str = ""
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "exit_status": self.exit_status,
            "attempts": self.attempts,
            "error": self.error,
            "log": self.log,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class JobReport:
    name: str
    state: JobState
    needs: Tuple[str, ...] = ()
    environment: Optional[str] = None
    runner: Optional[str] = None
    reason: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    coverage: Optional[float] = None
    artifacts: List[Dict[str, Any]] = field(default_factory=list)
    steps: List[StepReport] = field(default_factory=list)
    queued_at: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def exit_statuses(self) -> List[Optional[int]]:
        return [s.exit_status for s in self.steps]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "needs": list(self.needs),
            "environment": self.environment,
            "runner": self.runner,
            "reason": self.reason,
            "outputs": dict(self.outputs),
            "coverage": self.coverage,
            "artifacts": list(self.artifacts),
            "exit_statuses": self.exit_statuses,
            "steps": [s.to_dict() for s in self.steps],
            "queued_at": self.queued_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class RunReport:
    """Snapshot of a Run. Safe to hand to other threads; nothing here is live."""
    run_id: str
    workflow: str
    version: str
    status: RunStatus
    event: Dict[str, Any]
    inputs: Dict[str, Any]
    jobs: Dict[str, JobReport]
    gates: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "version": self.version,
            "status": self.status.value,
            "event": dict(self.event),
            "inputs": dict(self.inputs),
            "jobs": {name: j.to_dict() for name, j in self.jobs.items()},
            "gates": list(self.gates),
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


class StatusReporter:
    """
    Receives incremental snapshots after every job state transition and one
    final snapshot when the run becomes terminal.
    """

    def publish(self, report: RunReport) -> None:
        pass

    def finalize(self, report: RunReport) -> None:
        self.publish(report)


class ConsoleReporter(StatusReporter):
    """Prints job transitions through the console, once per transition."""

    def __init__(self, console: Console | None = None):
        self.console = console or get_console()
        self._lock = threading.Lock()
        self._seen: Dict[Tuple[str, str], JobState] = {}
        self._started: set = set()

    def publish(self, report: RunReport) -> None:
        with self._lock:
            if report.run_id not in self._started:
                self._started.add(report.run_id)
                self.console.print_run_started(report.run_id, report.workflow, len(report.jobs))

            for name, job in report.jobs.items():
                key = (report.run_id, name)
                if self._seen.get(key) is job.state:
                    continue
                self._seen[key] = job.state
                if job.state is JobState.PENDING:
                    continue
                if job.state is JobState.WAITING_ON_GATE:
                    gate = next((g for g in report.gates if g["environment"] == job.environment), None)
                    self.console.print_gate_waiting(name, job.environment or "", gate)
                elif job.state is JobState.RUNNING:
                    self.console.print_job_start(name, job.runner)
                elif job.state is JobState.SUCCEEDED:
                    self.console.print_success(name)
                elif job.state is JobState.FAILED:
                    failed = next((s for s in job.steps if s.status == "failed"), None)
                    self.console.print_failure(
                        failed.name if failed else name,
                        job.reason or "failed",
                        exit_code=failed.exit_status if failed else None,
                        log=failed.log if failed else None,
                        is_job=failed is None,
                    )
                else:
                    self.console.print_job_skipped(name, job.reason or "cancelled")

    def finalize(self, report: RunReport) -> None:
        self.publish(report)
        with self._lock:
            self.console.print_results(report.status.value, {n: j.state.value for n, j in report.jobs.items()})
            for name in report.jobs:
                self._seen.pop((report.run_id, name), None)
            self._started.discard(report.run_id)
