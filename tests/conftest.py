# tests/conftest.py
"""
Shared fixtures: a scripted step executor, a manual clock and engine wiring.

Nothing here spawns processes; end-to-end subprocess behaviour is covered in
test_executor.py against real shell commands.
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from relayci.artifacts import InMemoryArtifactStore
from relayci.engine import Engine
from relayci.executor import StepContext, StepExecutor, StepResult
from relayci.model import StepSpec
from relayci.runners import Runner, RunnerPool
from relayci.ui.console import Console, set_console

Scripted = Union[StepResult, Callable[[StepSpec, StepContext], StepResult]]


class ScriptedExecutor(StepExecutor):
    """
    Returns canned results keyed by "job/step" or by step name; everything
    else exits 0. Records every call and flags runner double-occupancy.
    """

    def __init__(self, script: Optional[Dict[str, Scripted]] = None, workspace: Optional[Path] = None):
        self.script = dict(script or {})
        self.workspace = workspace or Path(".")
        self.calls: List[Tuple[str, str, str]] = []   # (job, step, runner)
        self.overlaps: List[Tuple[str, str, str]] = []
        self._busy: Dict[str, str] = {}
        self._lock = threading.Lock()

    def workspace_for(self, run_id: str, job: str) -> Path:
        return self.workspace

    def jobs_called(self) -> List[str]:
        with self._lock:
            seen: List[str] = []
            for job, _, _ in self.calls:
                if job not in seen:
                    seen.append(job)
            return seen

    def execute(self, step: StepSpec, ctx: StepContext) -> StepResult:
        runner = ctx.runner.name
        with self._lock:
            self.calls.append((ctx.job.name, step.name, runner))
            holder = self._busy.get(runner)
            if holder is not None and holder != ctx.job.name:
                self.overlaps.append((runner, holder, ctx.job.name))
            self._busy[runner] = ctx.job.name
        try:
            action = self.script.get(f"{ctx.job.name}/{step.name}", self.script.get(step.name))
            if action is None:
                return StepResult(exit_status=0)
            if callable(action):
                return action(step, ctx)
            return action
        finally:
            with self._lock:
                if self._busy.get(runner) == ctx.job.name:
                    del self._busy[runner]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(debug=False, show_logs=False)
    set_console(console)
    yield console


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def linux_runner() -> Runner:
    return Runner("linux-1", frozenset({"linux", "self-hosted"}))


@pytest.fixture
def make_engine(clock, tmp_path):
    engines: List[Engine] = []

    def _make(executor: Optional[StepExecutor] = None, runners: Optional[List[Runner]] = None, **kwargs) -> Engine:
        pool = RunnerPool(runners or [Runner("linux-1", frozenset({"linux", "self-hosted"}))])
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("max_workers", 4)
        engine = Engine(
            pool,
            executor or ScriptedExecutor(workspace=tmp_path),
            kwargs.pop("artifacts", None) or InMemoryArtifactStore(),
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.shutdown(wait=True)


BASIC_YAML = """
name: ci
on:
  push:
    branches: [main]
jobs:
  build:
    runs-on: linux
    steps:
      - run: make build
"""
