# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, Mapping, Optional, Tuple, Union

if TYPE_CHECKING:
    from .dag import WorkflowGraph


class JobState(str, Enum):
    PENDING = "pending"
    WAITING_ON_GATE = "waiting_on_gate"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "workflow_dispatch"
    SCHEDULE = "schedule"


# ---------------------------------------------------------------------
# Steps (closed variant: command | action)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CommandStep:
    """A shell command executed inside the job's workspace."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    retry: int = 1                          # max attempts
    timeout_minutes: float | None = None


@dataclass(frozen=True)
class ActionStep:
    """A reference to a reusable action plus its keyed parameters."""
    name: str
    uses: str
    params: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    retry: int = 1
    timeout_minutes: float | None = None

    @property
    def action(self) -> str:
        # "relayci/coverage@v1" -> "relayci/coverage"
        return self.uses.split("@", 1)[0]


StepSpec = Union[CommandStep, ActionStep]


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobSpec:
    """
    A CI job: ordered steps + dependencies + placement constraints.

    `needs` lists job ids that must all reach SUCCEEDED before this job is
    schedulable. `runs_on` is the capability requirement matched against
    runner labels (the runner must advertise every label).
    """
    name: str
    steps: Tuple[StepSpec, ...]
    needs: Tuple[str, ...] = ()
    runs_on: FrozenSet[str] = frozenset()
    environment: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    coverage_threshold: Optional[float] = None


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class InputSpec:
    """Declared manual-dispatch input."""
    name: str
    type: str = "string"                    # string | boolean | number | choice
    required: bool = False
    default: object = None
    options: Tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class TriggerRule:
    """
    One `on:` entry. Empty filter tuples mean "no filter".

    `types` only applies to pull_request events.
    """
    kind: EventKind
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    types: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TriggerSpec:
    rules: Tuple[TriggerRule, ...] = ()
    schedules: Tuple[str, ...] = ()         # cron expressions
    inputs: Mapping[str, InputSpec] = field(default_factory=dict)

    def rule_for(self, kind: EventKind) -> Optional[TriggerRule]:
        for rule in self.rules:
            if rule.kind == kind:
                return rule
        return None


# ---------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class EnvironmentSpec:
    """Named deployment target and its gate configuration."""
    name: str
    required_approvals: int = 0
    wait_seconds: float = 0.0
    reviewers: FrozenSet[str] = frozenset()

    @property
    def is_protected(self) -> bool:
        return self.required_approvals > 0 or self.wait_seconds > 0


# ---------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class WorkflowDefinition:
    """
    Immutable, validated workflow. `jobs` preserves declaration order, which
    is also the dispatch order among simultaneously ready jobs.
    """
    name: str
    triggers: TriggerSpec
    jobs: Mapping[str, JobSpec]
    environments: Mapping[str, EnvironmentSpec] = field(default_factory=dict)
    version: str = ""
    # built once per version by the loader/DSL and shared by every Run
    graph: Optional["WorkflowGraph"] = field(default=None, compare=False, repr=False)
