# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .loader import finalize
from .model import (
    ActionStep,
    CommandStep,
    EnvironmentSpec,
    EventKind,
    InputSpec,
    JobSpec,
    StepSpec,
    TriggerRule,
    TriggerSpec,
    WorkflowDefinition,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    retry: int = 1,
    timeout_minutes: float | None = None,
) -> CommandStep:
    """Create a shell step."""
    return CommandStep(
        name=name,
        run=cmd,
        cwd=cwd,
        env=dict(env or {}),
        retry=retry,
        timeout_minutes=timeout_minutes,
    )


def uses(action: str, *, name: str | None = None, retry: int = 1, **params: Any) -> ActionStep:
    """Create a reusable-action step: uses("relayci/coverage@v1", path="coverage.json")."""
    return ActionStep(
        name=name or action,
        uses=action,
        params={k: str(v) for k, v in params.items()},
        retry=retry,
    )


# ---------------------------------------------------------------------
# Functional Job helper (nice DX)
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepSpec]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    runs_on: Union[str, Iterable[str]] = "self-hosted",
    environment: str | None = None,
    env: Optional[Dict[str, str]] = None,
    coverage_threshold: float | None = None,
    cwd: str | None = None,  # default cwd applied to command steps missing cwd
) -> JobSpec:
    steps_final: List[StepSpec] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            replace(s, cwd=cwd) if isinstance(s, CommandStep) and s.cwd is None else s
            for s in steps_final
        ]

    labels = [runs_on] if isinstance(runs_on, str) else list(runs_on)
    return JobSpec(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        runs_on=frozenset(labels),
        environment=environment,
        env={k: str(v) for k, v in (env or {}).items()},
        coverage_threshold=coverage_threshold,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepSpec] = []
        self._labels: list[str] = []
        self._env: dict[str, str] = {}
        self._environment: str | None = None
        self._threshold: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, *labels: str):
        self._labels.extend(labels)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, retry: int = 1):
        self._steps.append(sh(name, run, cwd=cwd, retry=retry))
        return self

    def use_action(self, action: str, name: str | None = None, **params: Any):
        self._steps.append(uses(action, name=name, **params))
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def deploy_to(self, environment: str):
        self._environment = environment
        return self

    def require_coverage(self, percent: float):
        self._threshold = float(percent)
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            runs_on=self._labels or "self-hosted",
            environment=self._environment,
            env=self._env,
            coverage_threshold=self._threshold,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Triggers / environments
# ---------------------------------------------------------------------

def on_push(*branches: str, tags: Iterable[str] = ()) -> TriggerRule:
    return TriggerRule(kind=EventKind.PUSH, branches=tuple(branches), tags=tuple(tags))


def on_pull_request(*branches: str, types: Iterable[str] = ()) -> TriggerRule:
    return TriggerRule(kind=EventKind.PULL_REQUEST, branches=tuple(branches), types=tuple(types))


def on_dispatch() -> TriggerRule:
    return TriggerRule(kind=EventKind.MANUAL)


def on_schedule() -> TriggerRule:
    return TriggerRule(kind=EventKind.SCHEDULE)


def choice(name: str, *options: str, required: bool = True, description: str = "") -> InputSpec:
    return InputSpec(name=name, type="choice", required=required, options=tuple(options), description=description)


def environment(
    name: str,
    *,
    approvals: int = 0,
    wait_minutes: float = 0,
    reviewers: Iterable[str] = (),
) -> EnvironmentSpec:
    reviewers = frozenset(reviewers)
    if approvals > len(reviewers):
        raise ValueError(f"environment({name!r}) needs {approvals} approvals but has {len(reviewers)} reviewers")
    return EnvironmentSpec(
        name=name,
        required_approvals=approvals,
        wait_seconds=float(wait_minutes) * 60.0,
        reviewers=reviewers,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11","3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobSpec]) -> List[JobSpec]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Union[JobSpec, List[JobSpec]],
    on: Iterable[TriggerRule] = (),
    schedules: Iterable[str] = (),
    inputs: Iterable[InputSpec] = (),
    environments: Iterable[EnvironmentSpec] = (),
) -> WorkflowDefinition:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf("ci", job(...), job(...)).

    Lists (e.g. from matrix(...).jobs(...)) are flattened.
    """
    flat: List[JobSpec] = []
    for j in jobs:
        flat.extend(j if isinstance(j, list) else [j])

    rules = list(on)
    schedules, inputs = tuple(schedules), tuple(inputs)
    kinds = {r.kind for r in rules}
    if schedules and EventKind.SCHEDULE not in kinds:
        rules.append(on_schedule())
    if inputs and EventKind.MANUAL not in kinds:
        rules.append(on_dispatch())

    triggers = TriggerSpec(
        rules=tuple(rules),
        schedules=schedules,
        inputs={i.name: i for i in inputs},
    )
    envs: Mapping[str, EnvironmentSpec] = {e.name: e for e in environments}
    return finalize(name, triggers, flat, envs)


workflow = wf  # alias (avoid naming your function workflow if you use it)
