# triggers.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from croniter import croniter

from .errors import ValidationError, WorkflowNotFoundError
from .model import EventKind, InputSpec, TriggerRule, WorkflowDefinition

DEFAULT_PR_TYPES = ("opened", "synchronize", "reopened")

_KIND_ALIASES = {
    "manual": EventKind.MANUAL,
    "dispatch": EventKind.MANUAL,
    "pull-request": EventKind.PULL_REQUEST,
    "pr": EventKind.PULL_REQUEST,
    "scheduled": EventKind.SCHEDULE,
    "tick": EventKind.SCHEDULE,
}


def parse_event_kind(value: str | EventKind) -> EventKind:
    if isinstance(value, EventKind):
        return value
    key = str(value).strip().lower()
    if key in _KIND_ALIASES:
        return _KIND_ALIASES[key]
    try:
        return EventKind(key)
    except ValueError:
        known = sorted({k.value for k in EventKind} | set(_KIND_ALIASES))
        raise ValueError(f"Unknown event kind {value!r}. Known kinds: {known}") from None


@dataclass(frozen=True)
class TriggerEvent:
    """An incoming event from the hosting system (or a schedule tick)."""
    kind: EventKind
    ref: str = ""
    actor: str = ""
    inputs: Mapping[str, Any] = field(default_factory=dict)
    workflow: Optional[str] = None          # manual dispatch target
    action: Optional[str] = None            # pull_request activity type
    timestamp: Optional[datetime] = None    # schedule tick time
    sha: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TriggerEvent":
        ts = data.get("timestamp")
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts)
        return cls(
            kind=parse_event_kind(data["kind"]),
            ref=data.get("ref") or "",
            actor=data.get("actor") or "",
            inputs=dict(data.get("inputs") or {}),
            workflow=data.get("workflow"),
            action=data.get("action"),
            timestamp=ts,
            sha=data.get("sha"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "ref": self.ref,
            "actor": self.actor,
            "inputs": dict(self.inputs),
            "workflow": self.workflow,
            "action": self.action,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "sha": self.sha,
        }


@dataclass(frozen=True)
class RunSeed:
    """What the evaluator hands to the engine: one Run to create."""
    workflow: WorkflowDefinition
    event: TriggerEvent
    inputs: Mapping[str, Any] = field(default_factory=dict)


# ----------------------------------------------------------------------
# Ref matching
# ----------------------------------------------------------------------

def normalize_ref(ref: str) -> Tuple[str, str]:
    """
    Returns (ref_type, short_name):
      refs/heads/main -> ("branch", "main")
      refs/tags/v1.0  -> ("tag", "v1.0")
      main            -> ("branch", "main")
    """
    if ref.startswith("refs/heads/"):
        return "branch", ref[len("refs/heads/"):]
    if ref.startswith("refs/tags/"):
        return "tag", ref[len("refs/tags/"):]
    return "branch", ref


def _matches_any(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(name, p) for p in patterns)


def rule_matches(rule: TriggerRule, event: TriggerEvent) -> bool:
    if rule.kind != event.kind:
        return False

    if rule.kind == EventKind.PULL_REQUEST:
        types = rule.types or DEFAULT_PR_TYPES
        if event.action and event.action not in types:
            return False

    if rule.kind in (EventKind.MANUAL, EventKind.SCHEDULE):
        return True

    ref_type, name = normalize_ref(event.ref)
    has_branch_filter = bool(rule.branches or rule.branches_ignore)

    if ref_type == "tag":
        if rule.tags:
            return _matches_any(name, rule.tags)
        # only branch filters declared -> tag refs don't trigger
        return not has_branch_filter

    if rule.branches:
        return _matches_any(name, rule.branches)
    if rule.branches_ignore:
        return not _matches_any(name, rule.branches_ignore)
    # only tag filters declared -> branch refs don't trigger
    return not rule.tags


def schedule_matches(schedules: Iterable[str], when: Optional[datetime]) -> bool:
    when = when or datetime.now(timezone.utc)
    return any(croniter.match(expr, when) for expr in schedules)


# ----------------------------------------------------------------------
# Manual dispatch inputs
# ----------------------------------------------------------------------

def coerce_input(spec: InputSpec, value: Any) -> Any:
    """Convert a raw input value to the declared type. Raises ValueError."""
    if spec.type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise ValueError(f"expected boolean, got {value!r}")

    if spec.type == "number":
        if isinstance(value, bool):
            raise ValueError(f"expected number, got {value!r}")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                try:
                    return float(value)
                except ValueError:
                    pass
        raise ValueError(f"expected number, got {value!r}")

    text = value if isinstance(value, str) else str(value)
    # exact literal comparison, no trimming or case folding
    if spec.options and text not in spec.options:
        raise ValueError(f"{text!r} is not one of {list(spec.options)}")
    return text


def validate_inputs(definition: WorkflowDefinition, provided: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Validate manual-dispatch inputs against the workflow's declared schema.

    Returns the resolved inputs (defaults applied, values coerced).
    Raises ValidationError listing every problem found.
    """
    declared = definition.triggers.inputs
    provided = dict(provided or {})
    errors: List[str] = []

    for key in sorted(set(provided) - set(declared)):
        errors.append(f"unexpected input '{key}'")

    resolved: Dict[str, Any] = {}
    for name, spec in declared.items():
        value = provided.get(name)
        if value is not None and value != "":
            try:
                resolved[name] = coerce_input(spec, value)
            except ValueError as e:
                errors.append(f"input '{name}': {e}")
        elif spec.default is not None:
            resolved[name] = spec.default
        elif spec.required:
            errors.append(f"missing required input '{name}'")
        else:
            resolved[name] = None

    if errors:
        raise ValidationError(definition.name, errors)
    return resolved


# ----------------------------------------------------------------------
# Evaluator
# ----------------------------------------------------------------------

class TriggerEvaluator:
    """
    Matches events against the trigger predicates of registered workflows.

    Holds one definition per workflow name (the latest registered version).
    """

    def __init__(self, workflows: Iterable[WorkflowDefinition] = ()):
        self._workflows: Dict[str, WorkflowDefinition] = {}
        for wf in workflows:
            self.register(wf)

    def register(self, definition: WorkflowDefinition) -> None:
        self._workflows[definition.name] = definition

    def unregister(self, name: str) -> None:
        self._workflows.pop(name, None)

    def get(self, name: str) -> WorkflowDefinition:
        try:
            return self._workflows[name]
        except KeyError:
            raise WorkflowNotFoundError(f"Unknown workflow '{name}'. Known: {sorted(self._workflows)}") from None

    @property
    def workflows(self) -> List[WorkflowDefinition]:
        return list(self._workflows.values())

    def matches(self, definition: WorkflowDefinition, event: TriggerEvent) -> bool:
        rule = definition.triggers.rule_for(event.kind)
        if rule is None:
            return False
        if event.kind == EventKind.SCHEDULE:
            return schedule_matches(definition.triggers.schedules, event.timestamp)
        return rule_matches(rule, event)

    def evaluate(self, event: TriggerEvent) -> List[RunSeed]:
        """
        Returns one RunSeed per matching workflow.

        Manual dispatch inputs are validated for every matching workflow
        before any seed is returned, so a ValidationError leaves no partial
        result behind.
        """
        targeted = event.kind == EventKind.MANUAL and event.workflow
        if targeted:
            definition = self.get(event.workflow)
            if definition.triggers.rule_for(EventKind.MANUAL) is None:
                raise ValidationError(definition.name, ["workflow does not accept manual dispatch"])
            candidates = [definition] if self.matches(definition, event) else []
        else:
            candidates = [wf for wf in self._workflows.values() if self.matches(wf, event)]

        resolved = []
        for wf in candidates:
            inputs = validate_inputs(wf, event.inputs) if event.kind == EventKind.MANUAL else {}
            resolved.append(RunSeed(workflow=wf, event=event, inputs=inputs))
        return resolved
