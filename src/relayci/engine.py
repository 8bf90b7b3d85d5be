# engine.py
from __future__ import annotations

import dataclasses
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .artifacts import ArtifactStore, FileSystemArtifactStore, InMemoryArtifactStore
from .executor import StepExecutor, SubprocessStepExecutor
from .gates import Gate, GateManager
from .loader import Source, build, finalize
from .model import EnvironmentSpec, EventKind, WorkflowDefinition
from .report import ConsoleReporter, RunReport, StatusReporter
from .runners import RunnerPool, default_runners
from .scheduler import Run, RunScheduler
from .settings import Settings
from .triggers import TriggerEvaluator, TriggerEvent
from .ui.console import Console, get_console


class Engine:
    """
    Long-lived coordinator: owns the registered definitions, the runner pool,
    the gates and every Run, and is the single entry point for events,
    reviewer decisions, cancellation and status queries.
    """

    def __init__(
        self,
        pool: RunnerPool | None = None,
        executor: StepExecutor | None = None,
        artifacts: ArtifactStore | None = None,
        *,
        reporters: Sequence[StatusReporter] = (),
        environments: Union[Mapping[str, EnvironmentSpec], Iterable[EnvironmentSpec]] = (),
        clock: Callable[[], float] = time.monotonic,
        max_workers: int | None = None,
        log_tail: int = 4000,
        acquire_timeout: float | None = None,
        console: Console | None = None,
    ):
        self.console = console or get_console()
        self.pool = pool if pool is not None else RunnerPool(default_runners())
        self.executor = executor if executor is not None else SubprocessStepExecutor()
        self.artifacts = artifacts if artifacts is not None else InMemoryArtifactStore()
        if isinstance(environments, Mapping):
            environments = environments.values()
        self.environments: Dict[str, EnvironmentSpec] = {e.name: e for e in environments}
        self.gates = GateManager(clock)
        self.triggers = TriggerEvaluator()
        self._versions: Dict[str, WorkflowDefinition] = {}
        self._lock = threading.Lock()
        self.scheduler = RunScheduler(
            self.pool,
            self.executor,
            self.artifacts,
            gates=self.gates,
            reporters=reporters,
            environments=self._environment,
            max_workers=max_workers,
            log_tail=log_tail,
            acquire_timeout=acquire_timeout,
            console=self.console,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        reporters: Sequence[StatusReporter] = (),
        console: Console | None = None,
        **kwargs: Any,
    ) -> "Engine":
        """Wire the default collaborators from configuration."""
        console = console or get_console()
        all_reporters: List[StatusReporter] = [ConsoleReporter(console), *reporters]
        if settings.database_url:
            from .persistence import SqlRunStore
            all_reporters.append(SqlRunStore(settings.database_url))
        if settings.redis_url:
            from .redis_status import RedisStatusReporter
            all_reporters.append(RedisStatusReporter.from_url(settings.redis_url, channel=settings.status_channel))

        artifacts: ArtifactStore
        if settings.artifact_dir:
            artifacts = FileSystemArtifactStore(settings.artifact_dir)
        else:
            artifacts = InMemoryArtifactStore()

        return cls(
            RunnerPool(settings.runners),
            SubprocessStepExecutor(settings.workspace_dir, isolate=settings.isolate_workspaces),
            artifacts,
            reporters=all_reporters,
            max_workers=settings.max_workers,
            log_tail=settings.log_tail,
            console=console,
            **kwargs,
        )

    # ---- definitions ----

    def _environment(self, definition: WorkflowDefinition, name: str) -> Optional[EnvironmentSpec]:
        # the definition's own declaration wins over engine-level configuration
        return definition.environments.get(name) or self.environments.get(name)

    def add_environment(self, environment: EnvironmentSpec) -> None:
        self.environments[environment.name] = environment

    def register(self, source: Union[Source, WorkflowDefinition], *, name: str | None = None) -> WorkflowDefinition:
        """
        Build (if needed) and register a definition. The graph is built once per
        definition version; re-registering an identical version reuses it.
        """
        if isinstance(source, WorkflowDefinition):
            definition = source
            if definition.graph is None or not definition.version:
                definition = finalize(definition.name, definition.triggers, definition.jobs.values(),
                                      definition.environments)
        else:
            definition = build(source, name=name)

        with self._lock:
            definition = self._versions.setdefault(definition.version, definition)
            self.triggers.register(definition)
        self.console.print_debug(f"registered workflow '{definition.name}' version {definition.version[:12]}")
        return definition

    def unregister(self, name: str) -> None:
        with self._lock:
            self.triggers.unregister(name)

    def workflows(self) -> List[WorkflowDefinition]:
        with self._lock:
            return self.triggers.workflows

    def workflow(self, name: str) -> WorkflowDefinition:
        with self._lock:
            return self.triggers.get(name)

    # ---- events ----

    def submit(self, event: Union[TriggerEvent, Mapping[str, Any]]) -> List[Run]:
        """
        Evaluate an event and start one Run per matching workflow.

        Raises ValidationError / WorkflowNotFoundError before any Run exists.
        """
        if not isinstance(event, TriggerEvent):
            event = TriggerEvent.from_dict(event)
        if event.kind == EventKind.SCHEDULE and event.timestamp is None:
            event = dataclasses.replace(event, timestamp=datetime.now(timezone.utc))
        with self._lock:
            seeds = self.triggers.evaluate(event)
        runs = [Run(seed.workflow, seed.event, seed.inputs) for seed in seeds]
        for run in runs:
            self.scheduler.start(run)
        return runs

    def dispatch(self, workflow: str, inputs: Optional[Mapping[str, Any]] = None, *,
                 ref: str = "", actor: str = "") -> Run:
        """Manual dispatch of one named workflow; ref filters apply only to push and pull_request."""
        event = TriggerEvent(kind=EventKind.MANUAL, ref=ref, actor=actor, inputs=dict(inputs or {}),
                             workflow=workflow)
        return self.submit(event)[0]

    # ---- gates ----

    def approve(self, run_id: str, environment: str, reviewer: str) -> Gate:
        return self.scheduler.approve(run_id, environment, reviewer)

    def reject(self, run_id: str, environment: str, reviewer: str) -> Gate:
        return self.scheduler.reject(run_id, environment, reviewer)

    def tick(self) -> None:
        """Re-evaluate gate wait timers (background timers do this too)."""
        self.scheduler.tick()

    # ---- runs ----

    def cancel(self, run_id: str) -> RunReport:
        run = self.scheduler.cancel(run_id)
        return self.scheduler.report(run)

    def get_run(self, run_id: str) -> Run:
        return self.scheduler.get(run_id)

    def runs(self) -> List[Run]:
        return self.scheduler.runs()

    def report(self, run_id: str) -> RunReport:
        return self.scheduler.report(self.scheduler.get(run_id))

    def forget(self, run_id: str) -> RunReport:
        """Drop a finished run and its gates; returns its last report."""
        return self.scheduler.forget(run_id)

    def wait(self, run_id: str, timeout: float | None = None) -> RunReport:
        """Block until the run is terminal. Raises TimeoutError if `timeout` elapses first."""
        run = self.scheduler.get(run_id)
        if not run.done.wait(timeout):
            raise TimeoutError(f"Run {run_id} still {run.status.value} after {timeout}s")
        return self.scheduler.report(run)

    def shutdown(self, wait: bool = True) -> None:
        self.scheduler.shutdown(wait=wait)

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
