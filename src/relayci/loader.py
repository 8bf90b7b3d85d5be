# loader.py
"""
Workflow definition loading.

`build(source)` turns a definition source into a validated, immutable
WorkflowDefinition carrying its dependency graph. Sources:

  - path to a .yml / .yaml / .json file
  - path to a .py file defining workflow() (or WORKFLOW) via the DSL
  - YAML/JSON text
  - an already-loaded mapping

Everything malformed is rejected here with ParseError (or the graph errors
from dag.py) so no scheduling state ever exists for a bad definition.
"""
from __future__ import annotations

import dataclasses
import hashlib
import json
import re
import runpy
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml
from croniter import croniter

from .dag import build_dag
from .errors import DefinitionError, ParseError
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
from .triggers import coerce_input

WORKFLOW_SUFFIXES = (".yml", ".yaml", ".json")
JOB_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
INPUT_TYPES = ("string", "boolean", "number", "choice")

_TOP_KEYS = {"name", "on", "jobs", "environments", "env"}
_JOB_KEYS = {"name", "runs-on", "needs", "environment", "env", "steps", "coverage-threshold"}
_STEP_KEYS = {"id", "name", "run", "uses", "with", "env", "working-directory", "retry", "timeout-minutes"}
_FILTER_KEYS = {"branches", "branches-ignore", "tags", "types"}

Source = Union[str, Path, Mapping[str, Any]]


# ---------------------------------------------------------------------
# Versioning
# ---------------------------------------------------------------------

def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _canonical(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            f.name: _canonical(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
            if f.compare
        }
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Mapping):
        return {str(k): _canonical(v) for k, v in obj.items()}
    if isinstance(obj, (set, frozenset)):
        return sorted(_canonical(v) for v in obj)
    if isinstance(obj, (list, tuple)):
        return [_canonical(v) for v in obj]
    return obj


def definition_version(name: str, triggers: TriggerSpec, jobs: Mapping[str, JobSpec],
                       environments: Mapping[str, EnvironmentSpec]) -> str:
    payload = {
        "v": 1,  # bump this if the definition model changes shape
        "name": name,
        "triggers": _canonical(triggers),
        "jobs": [_canonical(j) for j in jobs.values()],
        "environments": _canonical(environments),
    }
    return _sha256_str(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def finalize(
    name: str,
    triggers: TriggerSpec,
    jobs: Iterable[JobSpec],
    environments: Optional[Mapping[str, EnvironmentSpec]] = None,
) -> WorkflowDefinition:
    """Resolve the dependency graph and stamp the version. Shared by the YAML path and the DSL."""
    by_name: Dict[str, JobSpec] = {}
    for job in jobs:
        if job.name in by_name:
            raise ParseError(f"Duplicate job id '{job.name}'", "jobs")
        by_name[job.name] = job
    if not by_name:
        raise ParseError("workflow defines no jobs", "jobs")

    envs = dict(environments or {})
    graph = build_dag(by_name)
    return WorkflowDefinition(
        name=name,
        triggers=triggers,
        jobs=by_name,
        environments=envs,
        version=definition_version(name, triggers, by_name, envs),
        graph=graph,
    )


# ---------------------------------------------------------------------
# Small typed readers
# ---------------------------------------------------------------------

def _scalar_str(value: Any, loc: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ParseError(f"expected a scalar value, got {type(value).__name__}", loc)


def _str_list(value: Any, loc: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list):
        return tuple(_scalar_str(v, f"{loc}[{i}]") for i, v in enumerate(value))
    raise ParseError(f"expected a string or list of strings, got {type(value).__name__}", loc)


def _env_map(value: Any, loc: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ParseError("expected a mapping of variables", loc)
    return {str(k): _scalar_str(v, f"{loc}.{k}") for k, v in value.items()}


def _number(value: Any, loc: str, *, minimum: float | None = None, maximum: float | None = None,
            strict_min: bool = False) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"expected a number, got {value!r}", loc)
    if minimum is not None and (value <= minimum if strict_min else value < minimum):
        raise ParseError(f"must be {'>' if strict_min else '>='} {minimum}, got {value}", loc)
    if maximum is not None and value > maximum:
        raise ParseError(f"must be <= {maximum}, got {value}", loc)
    return value


def _int(value: Any, loc: str, *, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseError(f"expected an integer, got {value!r}", loc)
    if value < minimum:
        raise ParseError(f"must be >= {minimum}, got {value}", loc)
    return value


def _mapping(value: Any, loc: str, *, allow_none: bool = True) -> Mapping[str, Any]:
    if value is None and allow_none:
        return {}
    if not isinstance(value, Mapping):
        raise ParseError(f"expected a mapping, got {type(value).__name__}", loc)
    return value


def _reject_unknown(value: Mapping[str, Any], allowed: set, loc: str) -> None:
    unknown = sorted(str(k) for k in value if k not in allowed)
    if unknown:
        raise ParseError(f"unknown key(s) {unknown}; allowed: {sorted(allowed)}", loc)


# ---------------------------------------------------------------------
# on:
# ---------------------------------------------------------------------

def _parse_inputs(value: Any, loc: str) -> Dict[str, InputSpec]:
    inputs: Dict[str, InputSpec] = {}
    for name, raw in _mapping(value, loc).items():
        iloc = f"{loc}.{name}"
        raw = _mapping(raw, iloc)
        _reject_unknown(raw, {"description", "required", "type", "default", "options"}, iloc)

        itype = raw.get("type", "string")
        if itype not in INPUT_TYPES:
            raise ParseError(f"unknown input type {itype!r}; expected one of {list(INPUT_TYPES)}", iloc)
        options = _str_list(raw.get("options"), f"{iloc}.options")
        if itype == "choice" and not options:
            raise ParseError("choice inputs must declare options", iloc)
        required = raw.get("required", False)
        if not isinstance(required, bool):
            raise ParseError("required must be true or false", f"{iloc}.required")

        spec = InputSpec(
            name=str(name),
            type=itype,
            required=required,
            options=options,
            description=str(raw.get("description") or ""),
        )
        if raw.get("default") is not None:
            try:
                spec = dataclasses.replace(spec, default=coerce_input(spec, raw["default"]))
            except ValueError as e:
                raise ParseError(f"invalid default: {e}", f"{iloc}.default") from None
        inputs[spec.name] = spec
    return inputs


def _parse_filters(kind: EventKind, value: Any, loc: str) -> TriggerRule:
    raw = _mapping(value, loc)
    _reject_unknown(raw, _FILTER_KEYS, loc)
    if "types" in raw and kind != EventKind.PULL_REQUEST:
        raise ParseError("'types' is only valid for pull_request", loc)
    if "branches" in raw and "branches-ignore" in raw:
        raise ParseError("use either 'branches' or 'branches-ignore', not both", loc)
    return TriggerRule(
        kind=kind,
        branches=_str_list(raw.get("branches"), f"{loc}.branches"),
        branches_ignore=_str_list(raw.get("branches-ignore"), f"{loc}.branches-ignore"),
        tags=_str_list(raw.get("tags"), f"{loc}.tags"),
        types=_str_list(raw.get("types"), f"{loc}.types"),
    )


def _parse_on(value: Any) -> TriggerSpec:
    if value is None:
        return TriggerSpec()
    if isinstance(value, str):
        value = {value: None}
    elif isinstance(value, list):
        value = {_scalar_str(v, f"on[{i}]"): None for i, v in enumerate(value)}
    elif not isinstance(value, Mapping):
        raise ParseError("expected an event name, list or mapping", "on")

    rules: List[TriggerRule] = []
    schedules: List[str] = []
    inputs: Dict[str, InputSpec] = {}

    for key, raw in value.items():
        loc = f"on.{key}"
        try:
            kind = EventKind(key)
        except ValueError:
            known = [k.value for k in EventKind]
            raise ParseError(f"unknown event {key!r}; expected one of {known}", "on") from None

        if kind == EventKind.SCHEDULE:
            if not isinstance(raw, list) or not raw:
                raise ParseError("expected a list of {cron: ...} entries", loc)
            for i, entry in enumerate(raw):
                eloc = f"{loc}[{i}]"
                entry = _mapping(entry, eloc, allow_none=False)
                expr = entry.get("cron")
                if not isinstance(expr, str) or not croniter.is_valid(expr):
                    raise ParseError(f"invalid cron expression {expr!r}", eloc)
                schedules.append(expr)
            rules.append(TriggerRule(kind=kind))
        elif kind == EventKind.MANUAL:
            raw = _mapping(raw, loc)
            _reject_unknown(raw, {"inputs"}, loc)
            inputs = _parse_inputs(raw.get("inputs"), f"{loc}.inputs")
            rules.append(TriggerRule(kind=kind))
        else:
            rules.append(_parse_filters(kind, raw, loc))

    return TriggerSpec(rules=tuple(rules), schedules=tuple(schedules), inputs=inputs)


# ---------------------------------------------------------------------
# environments:
# ---------------------------------------------------------------------

def parse_environment(name: str, value: Any, loc: str) -> EnvironmentSpec:
    raw = _mapping(value, loc)
    _reject_unknown(raw, {"required-approvals", "wait-timer", "reviewers"}, loc)
    required = _int(raw.get("required-approvals", 0), f"{loc}.required-approvals", minimum=0)
    wait_minutes = _number(raw.get("wait-timer", 0), f"{loc}.wait-timer", minimum=0)
    reviewers = frozenset(_str_list(raw.get("reviewers"), f"{loc}.reviewers"))
    if required > len(reviewers):
        raise ParseError(
            f"requires {required} approval(s) but only {len(reviewers)} reviewer(s) are configured", loc
        )
    return EnvironmentSpec(
        name=name,
        required_approvals=required,
        wait_seconds=float(wait_minutes) * 60.0,
        reviewers=reviewers,
    )


def _parse_environments(value: Any) -> Dict[str, EnvironmentSpec]:
    return {
        str(name): parse_environment(str(name), raw, f"environments.{name}")
        for name, raw in _mapping(value, "environments").items()
    }


# ---------------------------------------------------------------------
# jobs:
# ---------------------------------------------------------------------

def _parse_step(value: Any, loc: str) -> StepSpec:
    raw = _mapping(value, loc, allow_none=False)
    _reject_unknown(raw, _STEP_KEYS, loc)

    has_run, has_uses = "run" in raw, "uses" in raw
    if has_run == has_uses:
        raise ParseError("a step needs exactly one of 'run' or 'uses'", loc)

    env = _env_map(raw.get("env"), f"{loc}.env")
    retry = _int(raw.get("retry", 1), f"{loc}.retry", minimum=1)
    timeout = raw.get("timeout-minutes")
    if timeout is not None:
        timeout = float(_number(timeout, f"{loc}.timeout-minutes", minimum=0, strict_min=True))

    if has_run:
        if "with" in raw:
            raise ParseError("'with' is only valid together with 'uses'", loc)
        run = raw["run"]
        if not isinstance(run, str) or not run.strip():
            raise ParseError("'run' must be a non-empty command string", f"{loc}.run")
        cwd = raw.get("working-directory")
        if cwd is not None and not isinstance(cwd, str):
            raise ParseError("expected a path string", f"{loc}.working-directory")
        name = raw.get("name") or run.strip().splitlines()[0][:60]
        return CommandStep(name=str(name), run=run, cwd=cwd, env=env, retry=retry, timeout_minutes=timeout)

    if "working-directory" in raw:
        raise ParseError("'working-directory' is only valid together with 'run'", loc)
    uses = raw["uses"]
    if not isinstance(uses, str) or not uses.strip():
        raise ParseError("'uses' must be an action reference", f"{loc}.uses")
    params = _env_map(raw.get("with"), f"{loc}.with")
    return ActionStep(
        name=str(raw.get("name") or uses),
        uses=uses.strip(),
        params=params,
        env=env,
        retry=retry,
        timeout_minutes=timeout,
    )


def _parse_job(job_id: str, value: Any) -> JobSpec:
    loc = f"jobs.{job_id}"
    if not JOB_ID_RE.match(job_id):
        raise ParseError("job ids must start with a letter or '_' and contain only [A-Za-z0-9_-]", loc)
    raw = _mapping(value, loc, allow_none=False)
    _reject_unknown(raw, _JOB_KEYS, loc)

    runs_on = frozenset(_str_list(raw.get("runs-on"), f"{loc}.runs-on"))
    if not runs_on:
        raise ParseError("missing 'runs-on'", loc)

    env_binding = raw.get("environment")
    if isinstance(env_binding, Mapping):
        env_binding = env_binding.get("name")
    if env_binding is not None and (not isinstance(env_binding, str) or not env_binding):
        raise ParseError("expected an environment name", f"{loc}.environment")

    threshold = raw.get("coverage-threshold")
    if threshold is not None:
        threshold = float(_number(threshold, f"{loc}.coverage-threshold", minimum=0, maximum=100))

    steps_raw = raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ParseError("a job needs a non-empty 'steps' list", loc)
    steps = tuple(_parse_step(s, f"{loc}.steps[{i}]") for i, s in enumerate(steps_raw))

    return JobSpec(
        name=job_id,
        steps=steps,
        needs=_str_list(raw.get("needs"), f"{loc}.needs"),
        runs_on=runs_on,
        environment=env_binding,
        env=_env_map(raw.get("env"), f"{loc}.env"),
        coverage_threshold=threshold,
    )


def parse_definition(raw: Any, *, default_name: str | None = None) -> WorkflowDefinition:
    """Validate a loaded YAML/JSON document and build the definition."""
    if not isinstance(raw, Mapping):
        raise ParseError(f"workflow root must be a mapping, got {type(raw).__name__}")

    # YAML 1.1 loads an unquoted `on:` key as boolean True
    raw = {("on" if k is True else k): v for k, v in raw.items()}
    _reject_unknown(raw, _TOP_KEYS, "<root>")

    name = raw.get("name") or default_name or "workflow"
    if not isinstance(name, str):
        raise ParseError("expected a string", "name")

    jobs_raw = raw.get("jobs")
    if not isinstance(jobs_raw, Mapping) or not jobs_raw:
        raise ParseError("a workflow needs a non-empty 'jobs' mapping", "jobs")

    workflow_env = _env_map(raw.get("env"), "env")
    jobs = []
    for job_id, value in jobs_raw.items():
        job = _parse_job(str(job_id), value)
        if workflow_env:
            job = dataclasses.replace(job, env={**workflow_env, **job.env})
        jobs.append(job)

    return finalize(
        name,
        _parse_on(raw.get("on")),
        jobs,
        _parse_environments(raw.get("environments")),
    )


# ---------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------

def _looks_like_path(source: Union[str, Path]) -> bool:
    if isinstance(source, Path):
        return True
    return "\n" not in source and Path(source).suffix.lower() in WORKFLOW_SUFFIXES + (".py",)


def load_python_workflow(path: Union[str, Path]) -> WorkflowDefinition:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> WorkflowDefinition
      - WORKFLOW = WorkflowDefinition
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ParseError(f"Workflow file not found: {wf_path}")

    module_name = f"relayci_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except DefinitionError:
        raise
    except Exception as e:
        raise ParseError(f"could not execute workflow file: {e}", str(wf_path)) from e

    definition = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            definition = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise ParseError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from relayci.dsl import wf, job, sh` then "
                    "`def workflow(): return wf('name', job(...), ...)`",
                    str(wf_path),
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        definition = globals_dict["WORKFLOW"]

    if not isinstance(definition, WorkflowDefinition):
        raise ParseError(
            "Workflow must return/define a WorkflowDefinition. "
            "Define workflow() -> WorkflowDefinition or WORKFLOW = wf(...).",
            str(wf_path),
        )
    return definition


def _read_document(source: Union[str, Path]) -> Tuple[Any, Optional[str]]:
    if _looks_like_path(source):
        path = Path(source).expanduser()
        if not path.exists():
            raise ParseError(f"Workflow file not found: {path}")
        text = path.read_text(encoding="utf-8")
        default_name = path.stem
        loc = str(path)
    else:
        text, default_name, loc = str(source), None, None

    try:
        if loc and loc.endswith(".json"):
            return json.loads(text), default_name
        return yaml.safe_load(text), default_name
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ParseError(f"malformed document: {e}", loc) from None


def build(source: Source, *, name: str | None = None) -> WorkflowDefinition:
    """
    Build a WorkflowDefinition from a path, YAML/JSON text or a mapping.

    Raises ParseError, UnknownDependencyError or CyclicDependencyError.
    """
    if isinstance(source, Mapping):
        return parse_definition(source, default_name=name)
    if _looks_like_path(source) and Path(source).suffix.lower() == ".py":
        return load_python_workflow(source)
    raw, default_name = _read_document(source)
    return parse_definition(raw, default_name=name or default_name)
