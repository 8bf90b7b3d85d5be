# scheduler.py
from __future__ import annotations

import math
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .artifacts import ArtifactStore
from .errors import (
    GateRejected,
    JobCancelled,
    RunActiveError,
    RunNotFoundError,
    RunnerUnavailable,
    StepFailure,
)
from .executor import StepContext, StepExecutor
from .gates import GateManager, GateState
from .model import EnvironmentSpec, JobSpec, JobState, RunStatus, WorkflowDefinition
from .report import JobReport, RunReport, StatusReporter, StepReport, compute_run_status
from .runners import Reservation, Runner, RunnerPool
from .triggers import TriggerEvent
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

@dataclass
class JobExecution:
    spec: JobSpec
    state: JobState = JobState.PENDING
    dispatched: bool = False
    runner: Optional[str] = None
    reason: Optional[str] = None
    failure: Optional[BaseException] = None
    outputs: Mapping[str, str] = field(default_factory=dict)
    coverage: Optional[float] = None
    artifacts: List[Dict[str, Any]] = field(default_factory=list)
    steps: List[StepReport] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    reservation: Optional[Reservation] = None
    acquire_timer: Optional[threading.Timer] = None
    queued_at: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.spec.name


class Run:
    """
    One execution of a workflow definition for one event.

    Status is never stored: it is derived from job states (plus the explicit
    cancelled flag) every time it is read.
    """

    def __init__(self, definition: WorkflowDefinition, event: TriggerEvent, inputs: Mapping[str, Any],
                 run_id: str | None = None):
        self.id = run_id or uuid.uuid4().hex[:16]
        self.definition = definition
        self.event = event
        self.inputs = dict(inputs)
        self.jobs: Dict[str, JobExecution] = {name: JobExecution(spec) for name, spec in definition.jobs.items()}
        self.cancelled = False
        self.created_at = time.time()
        self.finished_at: Optional[float] = None
        self.lock = threading.RLock()
        self.publish_lock = threading.Lock()
        self.done = threading.Event()
        self.finalized = False

    @property
    def status(self) -> RunStatus:
        with self.lock:
            return compute_run_status((j.state for j in self.jobs.values()), self.cancelled)

    @property
    def is_terminal(self) -> bool:
        with self.lock:
            return all(j.state.is_terminal for j in self.jobs.values())


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

EnvironmentLookup = Callable[[WorkflowDefinition, str], Optional[EnvironmentSpec]]


def _definition_environment(definition: WorkflowDefinition, name: str) -> Optional[EnvironmentSpec]:
    return definition.environments.get(name)


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class RunScheduler:
    """
    Walks each Run's job graph and dispatches ready jobs.

    Every state change (job completion, gate decision, timer expiry) calls
    wake(run), which recomputes the ready set under the run's lock. A ready job
    (dependencies succeeded, gate satisfied) reserves a runner from the pool;
    its body is handed to the thread pool only once the runner is granted, so
    queued jobs hold neither a runner nor a thread.

    Lock order: run.publish_lock, then run.lock, then the pool's lock.
    Reporters are never called with run.lock held.
    """

    def __init__(
        self,
        pool: RunnerPool,
        executor: StepExecutor,
        artifacts: ArtifactStore,
        *,
        gates: GateManager | None = None,
        reporters: Sequence[StatusReporter] = (),
        environments: EnvironmentLookup = _definition_environment,
        max_workers: int | None = None,
        log_tail: int = 4000,
        acquire_timeout: float | None = None,
        console: Console | None = None,
    ):
        self.pool = pool
        self.executor = executor
        self.artifacts = artifacts
        self.gates = gates or GateManager()
        self.reporters = list(reporters)
        self.environments = environments
        self.log_tail = log_tail
        self.acquire_timeout = acquire_timeout
        self.console = console or get_console()

        self._threads = ThreadPoolExecutor(max_workers=max_workers or _default_workers(),
                                           thread_name_prefix="relayci-job")
        self._runs: Dict[str, Run] = {}
        self._runs_lock = threading.Lock()
        self._timers: Dict[Tuple[str, str], threading.Timer] = {}
        self._timers_lock = threading.Lock()
        self._closed = False

    # ---- run registry ----

    def start(self, run: Run) -> Run:
        with self._runs_lock:
            self._runs[run.id] = run
        self.console.print_debug(f"run {run.id} created for workflow '{run.definition.name}'")
        self.wake(run)
        return run

    def get(self, run_id: str) -> Run:
        with self._runs_lock:
            try:
                return self._runs[run_id]
            except KeyError:
                raise RunNotFoundError(f"Unknown run '{run_id}'") from None

    def runs(self) -> List[Run]:
        with self._runs_lock:
            return list(self._runs.values())

    def active_runs(self) -> List[Run]:
        return [r for r in self.runs() if not r.finalized]

    # ---- state transitions ----

    def wake(self, run: Run) -> None:
        """Recompute the ready set, then publish and finalize as needed."""
        if not self._closed:
            with run.lock:
                self._reconcile(run)
        self._publish(run)

    def _environment_for(self, run: Run, job: JobSpec) -> Optional[EnvironmentSpec]:
        if not job.environment:
            return None
        return self.environments(run.definition, job.environment)

    def _reconcile(self, run: Run) -> None:
        if run.cancelled or run.finalized:
            return
        graph = run.definition.graph
        order = graph.order if graph is not None else list(run.jobs)

        for name in order:
            job = run.jobs[name]
            if job.state.is_terminal or job.dispatched:
                continue

            deps = [run.jobs[d] for d in job.spec.needs]
            broken = next((d for d in deps if d.state in (JobState.FAILED, JobState.CANCELLED)), None)
            if broken is not None:
                self._terminate(run, job, JobState.CANCELLED, f"dependency '{broken.name}' {broken.state.value}")
                continue
            if not all(d.state is JobState.SUCCEEDED for d in deps):
                continue

            env = self._environment_for(run, job.spec)
            if env is not None and env.is_protected:
                gate = self.gates.open(run.id, env)
                if gate.state is GateState.REJECTED:
                    err = GateRejected(run.id, env.name, gate.rejected_by or "")
                    self._terminate(run, job, JobState.CANCELLED, str(err), err)
                    continue
                if gate.state is GateState.PENDING:
                    if job.state is not JobState.WAITING_ON_GATE:
                        job.state = JobState.WAITING_ON_GATE
                        self.console.print_debug(f"run {run.id}: {name} waiting on '{env.name}'")
                    self._arm_timer(run, env.name, gate.remaining_wait(self.gates.clock()))
                    continue

            self._dispatch(run, job)

    def _dispatch(self, run: Run, job: JobExecution) -> None:
        """Queue the job for a runner. Caller holds run.lock."""
        job.dispatched = True
        job.queued_at = time.time()
        if self.pool.can_satisfy(job.spec.runs_on):
            self.console.print_debug(f"run {run.id}: dispatching {job.name}")
        else:
            labels = ",".join(sorted(job.spec.runs_on)) or "<any>"
            self.console.print_debug(f"run {run.id}: {job.name} queued; no runner advertises [{labels}] yet")

        job.reservation = self.pool.reserve(
            job.spec.runs_on,
            holder=f"{run.id}/{job.name}",
            on_grant=lambda runner: self._granted(run, job, runner),
        )
        if self.acquire_timeout is not None and not job.reservation.granted:
            timer = threading.Timer(self.acquire_timeout, self._acquire_expired, args=(run, job))
            timer.daemon = True
            job.acquire_timer = timer
            timer.start()

    def _granted(self, run: Run, job: JobExecution, runner: Runner) -> None:
        # called by the pool without its lock held, possibly from another run's thread
        if job.acquire_timer is not None:
            job.acquire_timer.cancel()
        try:
            self._threads.submit(self._run_job, run, job, runner)
        except RuntimeError:
            # thread pool already shut down
            self.pool.release(runner)

    def _acquire_expired(self, run: Run, job: JobExecution) -> None:
        with run.lock:
            reservation = job.reservation
            if job.state.is_terminal or reservation is None or not self.pool.withdraw(reservation):
                return
            err = RunnerUnavailable(job.spec.runs_on)
            self._terminate(run, job, JobState.FAILED, str(err), err)
        self.wake(run)

    def _withdraw(self, job: JobExecution) -> None:
        if job.acquire_timer is not None:
            job.acquire_timer.cancel()
        if job.reservation is not None:
            self.pool.withdraw(job.reservation)

    def _terminate(self, run: Run, job: JobExecution, state: JobState, reason: str,
                   failure: BaseException | None = None) -> None:
        """Move a job to a terminal state; failures cascade to every dependent. Caller holds run.lock."""
        if job.state.is_terminal:
            return
        job.state = state
        job.reason = reason
        job.failure = failure
        job.finished_at = time.time()
        if state is JobState.SUCCEEDED:
            # frozen: dependents only ever see copies
            job.outputs = MappingProxyType(dict(job.outputs))
            return
        job.cancel_event.set()
        self._withdraw(job)

        graph = run.definition.graph
        dependents = graph.transitive_dependents(job.name) if graph is not None else []
        for dep_name in dependents:
            dep = run.jobs[dep_name]
            if not dep.state.is_terminal:
                dep.state = JobState.CANCELLED
                dep.reason = f"dependency '{job.name}' {state.value}"
                dep.finished_at = job.finished_at
                dep.cancel_event.set()

    def _finish(self, run: Run, job: JobExecution, state: JobState, reason: str | None = None,
                failure: BaseException | None = None) -> None:
        with run.lock:
            self._terminate(run, job, state, reason or state.value, failure)
        self.wake(run)

    # ---- gates ----

    def _arm_timer(self, run: Run, environment: str, remaining: float) -> None:
        key = (run.id, environment)
        with self._timers_lock:
            if remaining <= 0 or key in self._timers or self._closed:
                return
            timer = threading.Timer(remaining + 0.05, self._timer_fired, args=(run.id, environment))
            timer.daemon = True
            self._timers[key] = timer
        timer.start()

    def _timer_fired(self, run_id: str, environment: str) -> None:
        with self._timers_lock:
            self._timers.pop((run_id, environment), None)
        try:
            run = self.get(run_id)
        except RunNotFoundError:
            return
        self.wake(run)

    def approve(self, run_id: str, environment: str, reviewer: str):
        run = self.get(run_id)
        gate = self.gates.approve(run_id, environment, reviewer)
        self.wake(run)
        return gate

    def reject(self, run_id: str, environment: str, reviewer: str):
        run = self.get(run_id)
        gate = self.gates.reject(run_id, environment, reviewer)
        if gate.state is GateState.REJECTED:
            err = GateRejected(run_id, environment, gate.rejected_by or reviewer)
            with run.lock:
                for job in run.jobs.values():
                    if job.spec.environment == environment and not job.state.is_terminal:
                        self._terminate(run, job, JobState.CANCELLED, str(err), err)
        self.wake(run)
        return gate

    def tick(self) -> None:
        """Re-evaluate every active run (gate timers under an injected clock)."""
        for run in self.active_runs():
            self.wake(run)

    # ---- cancellation ----

    def cancel(self, run_id: str) -> Run:
        run = self.get(run_id)
        with run.lock:
            if not run.finalized:
                run.cancelled = True
                for job in run.jobs.values():
                    if not job.state.is_terminal:
                        job.state = JobState.CANCELLED
                        job.reason = "run cancelled"
                        job.finished_at = time.time()
                        job.cancel_event.set()
                        self._withdraw(job)
        self.wake(run)
        return run

    def forget(self, run_id: str) -> RunReport:
        """Drop a finalized run, its gates and timers. Returns the last report."""
        run = self.get(run_id)
        if not run.finalized:
            raise RunActiveError(f"Run {run_id} is still {run.status.value}")
        report = self.report(run)
        with self._runs_lock:
            self._runs.pop(run_id, None)
        self.gates.discard(run_id)
        return report

    # ---- job body (runs on the thread pool) ----

    def _run_job(self, run: Run, job: JobExecution, runner: Runner) -> None:
        """Job body. Runs on the thread pool while holding `runner`."""
        outcome: Optional[Tuple[JobState, Optional[str], Optional[BaseException]]] = None
        try:
            with run.lock:
                if job.state.is_terminal:
                    return
                job.state = JobState.RUNNING
                job.runner = runner.name
                job.started_at = time.time()
                job.steps = [StepReport(name=s.name) for s in job.spec.steps]
            self._publish(run)

            failure = self._run_steps(run, job, runner)
            if failure is None:
                failure = self._check_coverage(job)

            if failure is None:
                outcome = (JobState.SUCCEEDED, None, None)
            elif isinstance(failure, JobCancelled):
                outcome = (JobState.CANCELLED, str(failure), failure)
            else:
                outcome = (JobState.FAILED, str(failure), failure)
        except Exception as e:
            # an executor or store blew up; the job fails, the coordinator doesn't
            self.console.print_debug(f"run {run.id}: {job.name} crashed: {e!r}")
            self._abort_steps(run, job, f"internal error: {e}")
            err = StepFailure(job=job.name, step=None, exit_code=None, reason=f"internal error: {e}")
            outcome = (JobState.FAILED, str(err), err)
        finally:
            self.pool.release(runner)
        self._finish(run, job, *outcome)

    def _abort_steps(self, run: Run, job: JobExecution, error: str) -> None:
        now = time.time()
        with run.lock:
            for record in job.steps:
                if record.status == "running":
                    record.status = "failed"
                    record.error = error
                    record.finished_at = now
                elif record.status == "pending":
                    record.status = "skipped"

    def _expressions(self, run: Run, job: JobExecution, runner: Runner) -> Dict[str, Any]:
        with run.lock:
            needs = {
                dep: {"outputs": dict(run.jobs[dep].outputs), "result": run.jobs[dep].state.value}
                for dep in job.spec.needs
            }
        return {
            "inputs": dict(run.inputs),
            "needs": needs,
            "run": {"id": run.id, "workflow": run.definition.name},
            "event": run.event.to_dict(),
            "job": {"name": job.name, "runner": runner.name},
        }

    def _run_steps(self, run: Run, job: JobExecution, runner: Runner) -> Optional[BaseException]:
        ctx = StepContext(
            run_id=run.id,
            job=job.spec,
            runner=runner,
            workspace=self.executor.workspace_for(run.id, job.name),
            env=dict(job.spec.env),
            expressions=self._expressions(run, job, runner),
            cancelled=job.cancel_event,
            log_tail=self.log_tail,
        )
        outputs: Dict[str, str] = {}

        for index, step in enumerate(job.spec.steps):
            record = job.steps[index]
            record.status = "running"
            record.started_at = time.time()

            attempts = max(1, step.retry)
            for attempt in range(1, attempts + 1):
                if job.cancel_event.is_set():
                    return JobCancelled(f"{job.name} cancelled")
                record.attempts = attempt
                result = self.executor.execute(step, ctx)
                if result.ok or attempt == attempts:
                    break
                self.console.print_debug(f"run {run.id}: {job.name}/{step.name} attempt {attempt} failed, retrying")

            record.exit_status = result.exit_status
            record.error = result.error
            record.log = result.log
            record.finished_at = time.time()

            for art_name, blob in result.artifacts.items():
                ref = self.artifacts.put(run.id, job.name, blob, art_name)
                job.artifacts.append({"name": art_name, "ref": ref, "size": len(blob)})
            outputs.update(result.outputs)
            ctx.env.update(result.env)
            with run.lock:
                job.outputs = dict(outputs)

            if job.cancel_event.is_set():
                record.status = "failed" if not result.ok else "succeeded"
                return JobCancelled(f"{job.name} cancelled")

            if not result.ok:
                record.status = "failed"
                for rest in job.steps[index + 1:]:
                    rest.status = "skipped"
                reason = result.error or f"exit status {result.exit_status}"
                return StepFailure(
                    job=job.name,
                    step=step.name,
                    exit_code=result.exit_status,
                    reason=reason,
                    details={"attempts": record.attempts},
                )

            record.status = "succeeded"
            self._publish(run)
        return None

    def _check_coverage(self, job: JobExecution) -> Optional[StepFailure]:
        raw = job.outputs.get("coverage")
        if raw is not None:
            try:
                value = float(str(raw).strip().rstrip("%"))
            except ValueError:
                value = math.nan
            # nan and inf count as not reported
            job.coverage = value if math.isfinite(value) else None

        threshold = job.spec.coverage_threshold
        if threshold is None:
            return None
        if job.coverage is None:
            return StepFailure(job=job.name, step=None, exit_code=None,
                               reason=f"coverage not reported (threshold {threshold:g}%)")
        if job.coverage < threshold:
            return StepFailure(
                job=job.name,
                step=None,
                exit_code=None,
                reason=f"coverage {job.coverage:g}% is below threshold {threshold:g}%",
                details={"coverage": job.coverage, "threshold": threshold},
            )
        return None

    # ---- reporting ----

    def report(self, run: Run) -> RunReport:
        now = self.gates.clock()
        with run.lock:
            jobs = {
                name: JobReport(
                    name=name,
                    state=j.state,
                    needs=tuple(j.spec.needs),
                    environment=j.spec.environment,
                    runner=j.runner,
                    reason=j.reason,
                    outputs=dict(j.outputs),
                    coverage=j.coverage,
                    artifacts=[dict(a) for a in j.artifacts],
                    steps=[StepReport(**vars(s)) for s in j.steps],
                    queued_at=j.queued_at,
                    started_at=j.started_at,
                    finished_at=j.finished_at,
                )
                for name, j in run.jobs.items()
            }
            return RunReport(
                run_id=run.id,
                workflow=run.definition.name,
                version=run.definition.version,
                status=compute_run_status((j.state for j in run.jobs.values()), run.cancelled),
                event=run.event.to_dict(),
                inputs=dict(run.inputs),
                jobs=jobs,
                gates=[g.to_dict(now) for g in self.gates.gates_for(run.id)],
                created_at=run.created_at,
                finished_at=run.finished_at,
            )

    def _publish(self, run: Run) -> None:
        # serialized per run; other runs publish concurrently
        with run.publish_lock:
            with run.lock:
                if run.finalized:
                    return
                final = run.is_terminal
                if final:
                    run.finalized = True
                    run.finished_at = time.time()
            report = self.report(run)
            for reporter in self.reporters:
                try:
                    if final:
                        reporter.finalize(report)
                    else:
                        reporter.publish(report)
                except Exception as e:
                    self.console.print_error("Status reporter failed", f"{type(reporter).__name__}: {e}")
        if final:
            with self._timers_lock:
                stale = [self._timers.pop(k) for k in list(self._timers) if k[0] == run.id]
            for timer in stale:
                timer.cancel()
            run.done.set()

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        with self._timers_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        for run in self.active_runs():
            self.cancel(run.id)
        self._threads.shutdown(wait=wait)
